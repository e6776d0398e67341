"""Pydantic schemas for delivery analytics."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel


class ResponseTimeStats(BaseModel):
    avg: Optional[float] = None
    median: Optional[float] = None
    p95: Optional[float] = None


class ErrorCount(BaseModel):
    error_code: str
    count: int


class DeliveryStatsResponse(BaseModel):
    total: int
    finished: int
    success_rate: Optional[float] = None
    status_breakdown: dict[str, int]
    response_time_ms: ResponseTimeStats
    top_errors: list[ErrorCount] = []
    since: Optional[datetime] = None
    until: Optional[datetime] = None


class EndpointHealthResponse(BaseModel):
    endpoint_id: str
    window_hours: int
    status: str
    consecutive_failures: int
    last_success_at: Optional[datetime] = None
    last_failure_at: Optional[datetime] = None
    stats: DeliveryStatsResponse
