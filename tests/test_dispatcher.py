import pytest

from conftest import RecordingDeliverer, make_release
from models.subscription import QueryMatch
from services.notification_service import (
    DeliveryRouter,
    DeliveryTarget,
    NotificationDispatcher,
    split_owner,
)


def test_split_owner():
    assert split_owner("guild1:user1") == ("guild1", "user1")
    assert split_owner("user1") == (None, "user1")


@pytest.mark.asyncio
async def test_one_call_per_target_with_union_of_owners(dispatcher, deliverer):
    release = make_release("Foo.Bar.Baz-GRP")
    report = await dispatcher.dispatch(release, [
        QueryMatch(query="foo bar", owners=["u1", "u2"]),
        QueryMatch(query="bar baz", owners=["u2", "u3"]),
    ])

    # everyone routes to the default channel: a single call
    assert len(deliverer.calls) == 1
    call = deliverer.calls[0]
    assert call["target"] == DeliveryTarget("channel", "alerts")
    assert call["owners"] == ["u1", "u2", "u3"]
    assert call["queries"] == ["foo bar", "bar baz"]
    assert report.delivered == [DeliveryTarget("channel", "alerts")]
    assert report.notified_queries == ["foo bar", "bar baz"]


@pytest.mark.asyncio
async def test_owners_split_by_community_alerts_channel(dispatcher, deliverer, router):
    await router.set_alerts_channel("g1", "c1")
    await router.set_alerts_channel("g2", "c2")

    await dispatcher.dispatch(make_release("Foo.Bar"), [
        QueryMatch(query="foo bar", owners=["g1:u1", "g2:u2", "g1:u3", "u4"]),
    ])

    by_target = {str(c["target"]): c["owners"] for c in deliverer.calls}
    assert by_target == {
        "channel:c1": ["g1:u1", "g1:u3"],
        "channel:c2": ["g2:u2"],
        "channel:alerts": ["u4"],
    }


@pytest.mark.asyncio
async def test_dm_mode_targets_each_user(store, last_seen):
    deliverer = RecordingDeliverer()
    dispatcher = NotificationDispatcher(last_seen, DeliveryRouter(store, mode="dm"), deliverer)

    await dispatcher.dispatch(make_release("Foo.Bar"), [
        QueryMatch(query="foo bar", owners=["g1:u1", "g2:u1", "u2"]),
    ])

    by_target = {str(c["target"]): c["owners"] for c in deliverer.calls}
    assert by_target == {"user:u1": ["g1:u1", "g2:u1"], "user:u2": ["u2"]}


@pytest.mark.asyncio
async def test_unroutable_owners_are_skipped(store, last_seen):
    deliverer = RecordingDeliverer()
    dispatcher = NotificationDispatcher(last_seen, DeliveryRouter(store, mode="channel"), deliverer)

    report = await dispatcher.dispatch(make_release("Foo.Bar"), [QueryMatch(query="foo bar", owners=["g9:u1"])])
    assert deliverer.calls == []
    assert report.unroutable_owners == ["g9:u1"]


@pytest.mark.asyncio
async def test_already_seen_query_is_skipped(dispatcher, deliverer, last_seen):
    release = make_release("Foo.Bar", pre_at=100)
    await last_seen.set_watermark("foo bar", release)

    report = await dispatcher.dispatch(release, [
        QueryMatch(query="foo bar", owners=["u1"]),
        QueryMatch(query="bar", owners=["u2"]),
    ])
    assert report.skipped_queries == ["foo bar"]
    assert deliverer.calls[0]["owners"] == ["u2"]
    assert deliverer.calls[0]["queries"] == ["bar"]


@pytest.mark.asyncio
async def test_bypass_flag_ignores_watermark(dispatcher, deliverer, last_seen):
    release = make_release("Foo.Bar", pre_at=100)
    await last_seen.set_watermark("foo bar", release)

    await dispatcher.dispatch(release, [QueryMatch(query="foo bar", owners=["u1"])], bypass_dedup=True)
    assert len(deliverer.calls) == 1


@pytest.mark.asyncio
async def test_dispatch_updates_watermark(dispatcher, last_seen):
    await dispatcher.dispatch(make_release("Foo.Bar", id=5, pre_at=300), [QueryMatch(query="foo bar", owners=["u1"])])
    mark = await last_seen.get_watermark("foo bar")
    assert (mark.id, mark.preAt) == (5, 300)


@pytest.mark.asyncio
async def test_failing_target_does_not_block_others(store, last_seen):
    deliverer = RecordingDeliverer(fail_targets={"channel:c1"})
    router = DeliveryRouter(store, mode="channel")
    await router.set_alerts_channel("g1", "c1")
    await router.set_alerts_channel("g2", "c2")
    dispatcher = NotificationDispatcher(last_seen, router, deliverer)

    report = await dispatcher.dispatch(make_release("Foo.Bar"), [
        QueryMatch(query="foo bar", owners=["g1:u1", "g2:u2"]),
    ])
    assert len(deliverer.calls) == 2
    assert report.failed == [DeliveryTarget("channel", "c1")]
    assert report.delivered == [DeliveryTarget("channel", "c2")]


def test_unknown_mode_is_rejected(store):
    with pytest.raises(ValueError):
        DeliveryRouter(store, mode="carrier-pigeon")
