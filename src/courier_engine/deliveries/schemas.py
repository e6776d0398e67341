"""Pydantic schemas for delivery records."""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel


class WebhookDeliveryResponse(BaseModel):
    id: str
    endpoint_id: str
    tenant_id: str
    event_type: str
    event_id: str
    payload: dict[str, Any] = {}
    status: str
    attempt_count: int
    max_attempts: int
    first_attempt_at: Optional[datetime] = None
    last_attempt_at: Optional[datetime] = None
    next_attempt_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    response_status: Optional[int] = None
    response_body: Optional[str] = None
    response_time_ms: Optional[float] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}
