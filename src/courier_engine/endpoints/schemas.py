"""Pydantic schemas for webhook endpoint configuration."""

from datetime import datetime
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field, model_validator

DEFAULT_RETRY_ON_STATUS: tuple[int, ...] = (408, 429, 500, 502, 503, 504)


class RetryPolicy(BaseModel):
    """Per-endpoint retry configuration. Delays are in milliseconds."""

    max_attempts: int = Field(3, ge=1, le=25)
    backoff_strategy: Literal["linear", "exponential"] = "exponential"
    initial_delay: int = Field(1000, ge=0)
    max_delay: int = Field(60000, ge=0)
    jitter: bool = True
    retry_on_status: list[int] = Field(default_factory=lambda: list(DEFAULT_RETRY_ON_STATUS))

    @model_validator(mode="after")
    def _check_delays(self) -> "RetryPolicy":
        if self.max_delay < self.initial_delay:
            raise ValueError("max_delay must be >= initial_delay")
        for code in self.retry_on_status:
            if not 100 <= code <= 599:
                raise ValueError(f"retry_on_status contains invalid HTTP status: {code}")
        return self


class WebhookEndpointCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    url: str = Field(..., max_length=2048)
    method: Literal["POST", "PUT", "PATCH"] = "POST"
    headers: dict[str, str] = {}
    triggers: dict[str, dict[str, bool]]
    conditions: Optional[Any] = None
    description: str = ""
    active: bool = True
    retry_policy: RetryPolicy = Field(default_factory=RetryPolicy)
    timeout_seconds: Optional[float] = Field(None, gt=0, le=120)


class WebhookEndpointUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    url: Optional[str] = Field(None, max_length=2048)
    method: Optional[Literal["POST", "PUT", "PATCH"]] = None
    headers: Optional[dict[str, str]] = None
    triggers: Optional[dict[str, dict[str, bool]]] = None
    conditions: Optional[Any] = None
    description: Optional[str] = None
    active: Optional[bool] = None
    retry_policy: Optional[RetryPolicy] = None
    timeout_seconds: Optional[float] = Field(None, gt=0, le=120)


class WebhookEndpointResponse(BaseModel):
    id: str
    tenant_id: str
    name: str
    description: str
    url: str
    method: str
    headers: dict[str, str] = {}
    triggers: dict[str, dict[str, bool]] = {}
    conditions: Optional[Any] = None
    active: bool
    retry_policy: RetryPolicy
    timeout_seconds: Optional[float] = None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class WebhookEndpointSecretResponse(WebhookEndpointResponse):
    """Returned only on create and secret rotation."""
    secret: str
