# api/routes_subscriptions.py
from fastapi import APIRouter, HTTPException, Query, Request
from fastapi.responses import JSONResponse

from core.response import STATUS_BY_CODE, error_code, ok
from models.schemas import SubscribeRequest, UnsubscribeRequest

router = APIRouter()


def _services(request: Request):
    return request.app.state.services


def _raise_for(result: dict):
    """Turn a service error envelope into an HTTPException."""
    code = error_code(result)
    raise HTTPException(status_code=STATUS_BY_CODE.get(code, 500), detail=result["error"])


@router.post("/subscriptions", status_code=201)
async def subscribe(payload: SubscribeRequest, request: Request):
    """
    Create a subscription.

    Without confirm=true, similar existing subscriptions of the same owner
    are returned first (status 200, created=false) so the caller can ask
    the user before creating a near-duplicate.
    """
    subs = _services(request).subscriptions
    if not payload.confirm:
        similar = await subs.similarity_check(payload.owner_id, payload.query)
        if not similar["ok"]:
            _raise_for(similar)
        if similar["data"]:
            return JSONResponse(
                status_code=200,
                content=ok({
                    "created": False,
                    "similar": [s.model_dump() for s in similar["data"]],
                }),
            )

    result = await subs.create(payload.owner_id, payload.query)
    if not result["ok"]:
        _raise_for(result)
    return ok({"created": True, "subscription": result["data"].model_dump()})


@router.get("/subscriptions")
async def list_subscriptions(request: Request, owner_id: str = Query(..., min_length=1)):
    result = await _services(request).subscriptions.list_by_owner(owner_id)
    if not result["ok"]:
        _raise_for(result)
    return ok([s.model_dump() for s in result["data"]])


@router.delete("/subscriptions/{subscription_id}")
async def delete_subscription(subscription_id: str, request: Request, owner_id: str = Query(..., min_length=1)):
    result = await _services(request).subscriptions.delete(owner_id, subscription_id)
    if not result["ok"]:
        _raise_for(result)
    return ok(result["data"])


@router.post("/unsubscribe")
async def unsubscribe(payload: UnsubscribeRequest, request: Request):
    result = await _services(request).subscriptions.unsubscribe(payload.owner_id, payload.query)
    if not result["ok"]:
        _raise_for(result)
    return ok(result["data"])
