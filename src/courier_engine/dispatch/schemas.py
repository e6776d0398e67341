"""Inbound lifecycle event contract."""

import hashlib
from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field

from courier_engine.common.models import utcnow
from courier_engine.deliveries.signing import serialize_body
from courier_engine.endpoints.registry import event_name


class EventContext(BaseModel):
    tenant_id: str = Field(..., alias="tenantId", min_length=1)
    user_id: Optional[str] = Field(None, alias="userId")
    user_role: Optional[str] = Field(None, alias="userRole")
    request_id: str = Field(..., alias="requestId", min_length=1)
    timestamp: datetime = Field(default_factory=utcnow)
    source: str = "api"

    model_config = {"populate_by_name": True}


class LifecycleEvent(BaseModel):
    """Notification emitted by the business layer around an entity operation."""

    id: Optional[str] = None
    event: str = Field(..., min_length=1)
    model: str = Field(..., min_length=1)
    data: dict[str, Any] = {}
    previous: Optional[dict[str, Any]] = None
    context: EventContext

    model_config = {"populate_by_name": True, "protected_namespaces": ()}

    @property
    def event_type(self) -> str:
        """Outbound type string, e.g. ``user.created``."""
        return f"{self.model.strip().lower()}.{event_name(self.event)}"

    @property
    def event_id(self) -> str:
        """Explicit id, or one derived from the event's identifying fields.

        The derived id is stable across upstream re-deliveries of the same
        event, which is what delivery de-duplication keys on. ``data`` and
        ``previous`` are part of it so distinct entities touched by one
        request do not collapse. ``timestamp`` only counts when the emitter
        supplied it; the receive-time default differs on every re-delivery.
        """
        if self.id:
            return self.id
        parts = [
            self.model.strip().lower(),
            event_name(self.event),
            self.context.request_id,
        ]
        if "timestamp" in self.context.model_fields_set:
            parts.append(self.context.timestamp.isoformat())
        parts.append(serialize_body(self.data))
        if self.previous is not None:
            parts.append(serialize_body(self.previous))
        return hashlib.sha256("|".join(parts).encode()).hexdigest()
