"""Lifecycle event ingest API router."""

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from courier_engine.common.security import require_api_key
from courier_engine.dispatch.schemas import LifecycleEvent

router = APIRouter(dependencies=[Depends(require_api_key)])


class EventAcceptedResponse(BaseModel):
    event_id: str
    event_type: str
    delivery_ids: list[str] = []


def _get_dispatcher():
    from courier_engine.deps import get_dispatcher
    return get_dispatcher()


@router.post("/events", response_model=EventAcceptedResponse, status_code=202)
async def ingest_event(body: LifecycleEvent):
    """Fan an out-of-process lifecycle event out to subscribed endpoints."""
    deliveries = await _get_dispatcher().on_lifecycle_event(body)
    return EventAcceptedResponse(
        event_id=body.event_id,
        event_type=body.event_type,
        delivery_ids=[d.id for d in deliveries],
    )
