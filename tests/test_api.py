import httpx
import pytest
import pytest_asyncio

from conftest import RecordingDeliverer
from config.settings import Settings
from core import singleton
from infra.memory_store import InMemoryStore
from infra.release_api import ReleaseApiClient
from main import create_app


def _upstream(request):
    if request.url.path == "/stats":
        return httpx.Response(200, json={"status": "success", "data": {"total": 1000}})
    return httpx.Response(200, json={"data": {"rows": []}})


@pytest_asyncio.fixture()
async def services():
    settings = Settings(
        STORE_BACKEND="memory",
        STREAM_ENABLED=False,
        POLLING_ENABLED=False,
        NOTIFICATION_MODE="channel",
        NOTIFICATION_CHANNEL="alerts",
        MAX_SUBSCRIPTIONS_PER_USER=2,
    )
    upstream = httpx.AsyncClient(transport=httpx.MockTransport(_upstream), base_url="http://upstream.test")
    container = singleton.build_services(
        settings,
        store=InMemoryStore(),
        deliverer=RecordingDeliverer(),
        api=ReleaseApiClient("http://upstream.test", client=upstream),
    )
    yield container
    await upstream.aclose()


@pytest_asyncio.fixture()
async def client(services):
    app = create_app(services)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


@pytest.mark.asyncio
async def test_subscribe_list_and_delete(client):
    r = await client.post("/subscriptions", json={"owner_id": "g1:u1", "query": "Foo Bar"})
    assert r.status_code == 201
    body = r.json()
    assert body["ok"] is True
    assert body["data"]["created"] is True
    sub_id = body["data"]["subscription"]["id"]

    listed = (await client.get("/subscriptions", params={"owner_id": "g1:u1"})).json()["data"]
    assert [s["query"] for s in listed] == ["Foo Bar"]

    r = await client.delete(f"/subscriptions/{sub_id}", params={"owner_id": "g1:u1"})
    assert r.status_code == 200
    assert r.json()["data"] == {"deleted_query": "Foo Bar"}


@pytest.mark.asyncio
async def test_error_codes_map_to_http_status(client):
    await client.post("/subscriptions", json={"owner_id": "u1", "query": "foo bar"})

    dup = await client.post("/subscriptions", json={"owner_id": "u1", "query": "FOO BAR", "confirm": True})
    assert dup.status_code == 409
    assert dup.json()["error"]["code"] == "duplicate"

    await client.post("/subscriptions", json={"owner_id": "u1", "query": "second one", "confirm": True})
    limit = await client.post("/subscriptions", json={"owner_id": "u1", "query": "third one", "confirm": True})
    assert limit.status_code == 403
    assert limit.json()["error"]["code"] == "limit_exceeded"

    missing = await client.delete("/subscriptions/nope", params={"owner_id": "u1"})
    assert missing.status_code == 404
    assert missing.json()["error"]["code"] == "not_found"


@pytest.mark.asyncio
async def test_short_query_is_rejected(client):
    r = await client.post("/subscriptions", json={"owner_id": "u1", "query": "abc"})
    assert r.status_code == 422


@pytest.mark.asyncio
async def test_similar_subscription_needs_confirmation(client):
    await client.post("/subscriptions", json={"owner_id": "u1", "query": "ubuntu server"})

    r = await client.post("/subscriptions", json={"owner_id": "u1", "query": "Ubuntu.Server.LTS"})
    assert r.status_code == 200
    assert r.json()["data"]["created"] is False
    assert [s["query"] for s in r.json()["data"]["similar"]] == ["ubuntu server"]

    r = await client.post("/subscriptions", json={"owner_id": "u1", "query": "Ubuntu.Server.LTS", "confirm": True})
    assert r.status_code == 201


@pytest.mark.asyncio
async def test_unsubscribe_by_query(client):
    await client.post("/subscriptions", json={"owner_id": "u1", "query": "foo bar"})
    r = await client.post("/unsubscribe", json={"owner_id": "u1", "query": "Foo  Bar"})
    assert r.status_code == 200
    r = await client.post("/unsubscribe", json={"owner_id": "u1", "query": "foo bar"})
    assert r.status_code == 404


@pytest.mark.asyncio
async def test_alerts_channel_roundtrip(client):
    assert (await client.get("/alerts-channel/g1")).status_code == 404
    r = await client.put("/alerts-channel/g1", json={"channel_id": "c42"})
    assert r.status_code == 200
    r = await client.get("/alerts-channel/g1")
    assert r.json()["data"] == {"community_id": "g1", "channel_id": "c42"}


@pytest.mark.asyncio
async def test_test_release_routes_to_community_channel(client, services):
    await client.put("/alerts-channel/g1", json={"channel_id": "c42"})
    await client.post("/subscriptions", json={"owner_id": "g1:u1", "query": "foo bar"})
    await client.post("/subscriptions", json={"owner_id": "u2", "query": "foo bar"})

    r = await client.post("/test-release", json={"name": "Foo.Bar.S01E01-GRP"})
    assert r.status_code == 200
    data = r.json()["data"]
    assert sorted(data["delivered"]) == ["channel:alerts", "channel:c42"]
    assert data["matched_queries"] == ["foo bar"]

    calls = services.dispatcher.deliverer.calls
    assert {str(c["target"]): c["owners"] for c in calls} == {"channel:c42": ["g1:u1"], "channel:alerts": ["u2"]}


@pytest.mark.asyncio
async def test_health_reports_upstream_and_feeds(client):
    r = await client.get("/health")
    assert r.status_code == 200
    data = r.json()["data"]
    assert data["upstream_healthy"] is True
    assert data["stream"]["enabled"] is False
    assert data["polling"]["ticks"] == 0


@pytest.mark.asyncio
async def test_every_response_carries_request_id(client):
    first = await client.get("/health")
    second = await client.get("/health")
    assert len(first.headers["X-Request-ID"]) == 36
    assert first.headers["X-Request-ID"] != second.headers["X-Request-ID"]
