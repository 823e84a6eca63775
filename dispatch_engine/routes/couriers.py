import uuid

from fastapi import APIRouter, Body, Depends, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from dispatch_engine.engine import DispatchEngine
from dispatch_engine.errors import Forbidden
from dispatch_engine.identity import get_actor
from dispatch_engine.models import ActorContext, ShiftStatus
from dispatch_engine.routes.orders import get_engine

router = APIRouter(tags=["couriers"])


class ShiftBody(BaseModel):
    shift_status: ShiftStatus


@router.post("/courier/location")
async def update_location(
    payload: dict = Body(...),
    actor: ActorContext = Depends(get_actor),
    engine: DispatchEngine = Depends(get_engine),
) -> JSONResponse:
    """
    Append one GPS sample for the calling courier.
    Range errors -> 400 INVALID_COORDINATES, offline -> 403 COURIER_OFFLINE,
    over the per-courier rate limit -> 429 with Retry-After.
    """
    if actor.courier_id is None:
        raise Forbidden("Couriers may only report their own location")
    ping = await engine.ingest_location(actor.courier_id, payload, actor)
    return JSONResponse(
        status_code=200,
        content={
            "success": True,
            "data": {
                "id": ping.id,
                "timestamp": ping.created_at.isoformat(),
                "position": {"type": "Point", "coordinates": [ping.lng, ping.lat]},
            },
        },
    )


@router.put("/courier/shift")
async def set_shift(
    body: ShiftBody,
    actor: ActorContext = Depends(get_actor),
    engine: DispatchEngine = Depends(get_engine),
) -> JSONResponse:
    courier = await engine.set_shift_status(actor, body.shift_status)
    return JSONResponse(status_code=200, content={"courier": courier.model_dump(mode="json")})


@router.get("/vendor/couriers/available")
async def available_couriers(
    vendor_id: uuid.UUID | None = Query(default=None),
    vehicle_type: str | None = Query(default=None),
    actor: ActorContext = Depends(get_actor),
    engine: DispatchEngine = Depends(get_engine),
) -> JSONResponse:
    couriers = await engine.available_couriers(actor, vendor_id, vehicle_type)
    return JSONResponse(
        status_code=200,
        content={
            "couriers": [c.model_dump(mode="json") for c in couriers],
            "total_count": len(couriers),
            "filters": {"vendor_id": str(vendor_id) if vendor_id else None, "vehicle_type": vehicle_type},
        },
    )
