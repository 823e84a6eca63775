import uuid

from fastapi import APIRouter, Depends, Header, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from dispatch_engine.engine import DispatchEngine
from dispatch_engine.identity import get_actor
from dispatch_engine.models import ActorContext, NewOrder, Order, OrderItem

router = APIRouter(tags=["orders"])


def get_engine(request: Request) -> DispatchEngine:
    return request.app.state.engine


class TransitionBody(BaseModel):
    status: str = Field(..., description="Requested order status")
    reason: str | None = Field(default=None, max_length=500, description="Required for REJECTED / CANCELED_BY_VENDOR")


class AssignCourierBody(BaseModel):
    courier_id: uuid.UUID


def order_body(order: Order, items: list[OrderItem] | None = None) -> dict:
    body = {"order": order.model_dump(mode="json")}
    if items is not None:
        body["items"] = [i.model_dump(mode="json") for i in items]
    return body


@router.post("/orders")
async def create_order(
    body: NewOrder,
    actor: ActorContext = Depends(get_actor),
    engine: DispatchEngine = Depends(get_engine),
    idempotency_key: str | None = Header(default=None),
) -> JSONResponse:
    """Create an order with its item snapshots. Same Idempotency-Key -> same order."""
    order = await engine.create_order(body, actor, idempotency_key=idempotency_key)
    _, items = await engine.get_order(order.id, actor)
    return JSONResponse(status_code=201, content=order_body(order, items))


@router.get("/orders/{order_id}")
async def get_order(
    order_id: uuid.UUID,
    actor: ActorContext = Depends(get_actor),
    engine: DispatchEngine = Depends(get_engine),
) -> JSONResponse:
    order, items = await engine.get_order(order_id, actor)
    return JSONResponse(status_code=200, content=order_body(order, items))


@router.get("/orders/{order_id}/history")
async def get_history(
    order_id: uuid.UUID,
    actor: ActorContext = Depends(get_actor),
    engine: DispatchEngine = Depends(get_engine),
) -> JSONResponse:
    history = await engine.get_history(order_id, actor)
    return JSONResponse(status_code=200, content={"history": [h.model_dump(mode="json") for h in history]})


@router.post("/orders/{order_id}/transition")
async def transition_order(
    order_id: uuid.UUID,
    body: TransitionBody,
    actor: ActorContext = Depends(get_actor),
    engine: DispatchEngine = Depends(get_engine),
) -> JSONResponse:
    order = await engine.request_transition(order_id, body.status, actor, reason=body.reason)
    return JSONResponse(status_code=200, content=order_body(order))


@router.post("/vendor/orders/{order_id}/assign-courier")
async def assign_courier(
    order_id: uuid.UUID,
    body: AssignCourierBody,
    actor: ActorContext = Depends(get_actor),
    engine: DispatchEngine = Depends(get_engine),
) -> JSONResponse:
    """Bind a courier. 409 ALREADY_ASSIGNED when another assignment won; re-fetch and decide."""
    order = await engine.assign_courier(order_id, body.courier_id, actor)
    return JSONResponse(status_code=200, content=order_body(order))


@router.delete("/vendor/orders/{order_id}/assign-courier")
async def unassign_courier(
    order_id: uuid.UUID,
    actor: ActorContext = Depends(get_actor),
    engine: DispatchEngine = Depends(get_engine),
) -> JSONResponse:
    order = await engine.unassign_courier(order_id, actor)
    return JSONResponse(status_code=200, content=order_body(order))


@router.get("/orders/{order_id}/location")
async def latest_location(
    order_id: uuid.UUID,
    actor: ActorContext = Depends(get_actor),
    engine: DispatchEngine = Depends(get_engine),
) -> JSONResponse:
    ping = await engine.latest_location(order_id, actor)
    return JSONResponse(status_code=200, content={"location": ping.model_dump(mode="json") if ping else None})


@router.get("/orders/{order_id}/trajectory")
async def trajectory(
    order_id: uuid.UUID,
    actor: ActorContext = Depends(get_actor),
    engine: DispatchEngine = Depends(get_engine),
) -> JSONResponse:
    pings = await engine.trajectory(order_id, actor)
    return JSONResponse(status_code=200, content={"pings": [p.model_dump(mode="json") for p in pings]})
