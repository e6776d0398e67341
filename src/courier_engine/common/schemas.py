"""Shared Pydantic schemas for Courier-Engine."""

from pydantic import BaseModel


class HealthResponse(BaseModel):
    status: str = "ok"
    version: str = "0.1.0"
    service: str = "courier-engine"
    database: str = "ok"
