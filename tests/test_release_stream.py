import asyncio
import json

import pytest

from conftest import make_release
from infra.release_stream import StreamIngest
from models.release import ReleaseEvent, parse_release_event


def _message(action="insert", **row):
    body = {"id": 1, "name": "Foo.Bar-GRP", "team": "GRP", "cat": "TV", "preAt": 100}
    body.update(row)
    return json.dumps({"action": action, "row": body})


def test_parse_valid_event():
    event = parse_release_event(_message(size=1024, nuke=None))
    assert event.action == "insert"
    assert event.row.name == "Foo.Bar-GRP"
    assert event.row.size == 1024


def test_parse_event_with_nuke():
    nuke = {"id": 3, "typeId": 1, "type": "nuke", "preId": 1, "reason": "dupe", "net": "NET", "nukeAt": 200}
    event = parse_release_event(_message(action="nuke", nuke=nuke))
    assert event.row.nuke.reason == "dupe"


@pytest.mark.parametrize("raw", [
    "not json",
    json.dumps({"action": "insert"}),
    json.dumps({"action": "explode", "row": {"id": 1, "name": "x", "preAt": 1}}),
    json.dumps({"action": "insert", "row": {"id": "abc", "name": "x", "preAt": 1}}),
    json.dumps({"action": "insert", "row": {"id": 1, "preAt": 1}}),
    json.dumps([1, 2, 3]),
])
def test_malformed_payloads_are_dropped(raw):
    assert parse_release_event(raw) is None


class StopIngest(Exception):
    pass


class ScriptedSource:
    """Each call opens the next scripted 'connection'."""

    def __init__(self, sessions):
        self.sessions = list(sessions)
        self.opened = 0

    def __call__(self):
        self.opened += 1
        session = self.sessions.pop(0)

        async def events():
            for item in session:
                if isinstance(item, Exception):
                    raise item
                yield item
        return events()


def _stop_after(n):
    delays = []

    async def sleep(delay):
        delays.append(delay)
        if len(delays) >= n:
            raise StopIngest()
    return sleep, delays


@pytest.mark.asyncio
async def test_only_inserts_are_forwarded():
    received = []

    async def handler(event):
        received.append(event)

    events = [
        ReleaseEvent(action="update", row=make_release(id=1)),
        ReleaseEvent(action="insert", row=make_release(id=2)),
        ReleaseEvent(action="nuke", row=make_release(id=3)),
        ReleaseEvent(action="insert", row=make_release(id=4)),
    ]
    sleep, _ = _stop_after(1)
    ingest = StreamIngest("ws://test/ws", handler, source=ScriptedSource([events]), sleep=sleep)

    with pytest.raises(StopIngest):
        await ingest.run()
    assert [e.row.id for e in received] == [2, 4]
    assert ingest.events_forwarded == 2


@pytest.mark.asyncio
async def test_reconnects_after_close_and_error_with_fixed_delay():
    received = []

    async def handler(event):
        received.append(event.row.id)

    source = ScriptedSource([
        [ReleaseEvent(action="insert", row=make_release(id=1))],
        [ConnectionResetError("peer reset")],
        [ReleaseEvent(action="insert", row=make_release(id=2))],
    ])
    sleep, delays = _stop_after(3)
    ingest = StreamIngest("ws://test/ws", handler, reconnect_delay_sec=5, source=source, sleep=sleep)

    with pytest.raises(StopIngest):
        await ingest.run()
    assert source.opened == 3
    assert delays == [5, 5, 5]
    assert received == [1, 2]


@pytest.mark.asyncio
async def test_handler_failure_does_not_drop_connection():
    seen = []

    async def handler(event):
        seen.append(event.row.id)
        if event.row.id == 1:
            raise RuntimeError("boom")

    source = ScriptedSource([[
        ReleaseEvent(action="insert", row=make_release(id=1)),
        ReleaseEvent(action="insert", row=make_release(id=2)),
    ]])
    sleep, _ = _stop_after(1)
    ingest = StreamIngest("ws://test/ws", handler, source=source, sleep=sleep)

    with pytest.raises(StopIngest):
        await ingest.run()
    assert seen == [1, 2]
    assert source.opened == 1


@pytest.mark.asyncio
async def test_cancellation_stops_ingest():
    async def handler(event):
        pass

    async def never_ending():
        await asyncio.Event().wait()
        yield  # pragma: no cover

    ingest = StreamIngest("ws://test/ws", handler, source=never_ending)
    task = asyncio.create_task(ingest.run())
    await asyncio.sleep(0)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task


@pytest.mark.asyncio
async def test_unexpected_error_still_reconnects():
    received = []

    async def handler(event):
        received.append(event.row.id)

    source = ScriptedSource([
        [ValueError("bad frame")],
        [ReleaseEvent(action="insert", row=make_release(id=7))],
    ])
    sleep, delays = _stop_after(2)
    ingest = StreamIngest("ws://test/ws", handler, reconnect_delay_sec=5, source=source, sleep=sleep)

    with pytest.raises(StopIngest):
        await ingest.run()
    assert source.opened == 2
    assert received == [7]
