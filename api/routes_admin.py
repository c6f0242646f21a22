# api/routes_admin.py
import logging

from fastapi import APIRouter, HTTPException, Request

from core.response import ok
from infra.redis_client import StoreError
from models.schemas import AlertsChannelRequest, SimulateReleaseRequest

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/health")
async def health(request: Request):
    """Liveness plus upstream API health and the state of both feeds."""
    services = request.app.state.services
    upstream = await services.api.check_health()
    poll = services.poller.last_report
    return ok({
        "status": "ok",
        "upstream_healthy": upstream,
        "stream": {
            "enabled": services.settings.STREAM_ENABLED,
            "connected": services.stream.connected,
            "connections": services.stream.connections,
            "disconnects": services.stream.disconnects,
        },
        "polling": {
            "enabled": services.settings.POLLING_ENABLED,
            "ticks": services.poller.ticks,
            "last_query_count": poll.query_count if poll else None,
            "last_interval_sec": poll.interval_sec if poll else None,
        },
    })


@router.get("/alerts-channel/{community_id}")
async def get_alerts_channel(community_id: str, request: Request):
    try:
        channel_id = await request.app.state.services.router.get_alerts_channel(community_id)
    except StoreError as e:
        logger.error("[api] alerts channel lookup failed for %s: %s", community_id, e)
        raise HTTPException(status_code=503, detail="Store unavailable")
    if channel_id is None:
        raise HTTPException(status_code=404, detail="No alerts channel set")
    return ok({"community_id": community_id, "channel_id": channel_id})


@router.put("/alerts-channel/{community_id}")
async def set_alerts_channel(community_id: str, payload: AlertsChannelRequest, request: Request):
    try:
        await request.app.state.services.router.set_alerts_channel(community_id, payload.channel_id)
    except StoreError as e:
        logger.error("[api] alerts channel update failed for %s: %s", community_id, e)
        raise HTTPException(status_code=503, detail="Store unavailable")
    return ok({"community_id": community_id, "channel_id": payload.channel_id})


@router.post("/test-release")
async def test_release(payload: SimulateReleaseRequest, request: Request):
    """Simulate a release through the matching pipeline (dedup bypassed)."""
    report = await request.app.state.services.processor.simulate_release(payload.name)
    if report is None:
        raise HTTPException(status_code=500, detail="Failed to process simulated release")
    return ok({
        "release_id": report.release_id,
        "delivered": [str(t) for t in report.delivered],
        "failed": [str(t) for t in report.failed],
        "matched_queries": report.notified_queries,
    })
