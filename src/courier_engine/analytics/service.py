"""Delivery analytics — aggregates derived directly from the delivery store."""

import math
import statistics
from datetime import datetime, timedelta
from typing import Any, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from courier_engine.common.config import CourierSettings
from courier_engine.common.models import as_utc, utcnow
from courier_engine.deliveries.models import (
    DELIVERY_STATUSES,
    SUCCESS,
    TERMINAL_STATUSES,
    WebhookDeliveryModel,
)


def percentile(values: list[float], pct: float) -> Optional[float]:
    """Nearest-rank percentile; ``None`` for an empty list."""
    if not values:
        return None
    ordered = sorted(values)
    rank = max(1, math.ceil(pct / 100 * len(ordered)))
    return ordered[rank - 1]


def classify_health(success_rate: Optional[float]) -> str:
    """
    Label an endpoint from its terminal success rate.

    >= 0.95 → "healthy", >= 0.5 → "degraded", else "failing";
    no finished deliveries → "unknown".
    """
    if success_rate is None:
        return "unknown"
    if success_rate >= 0.95:
        return "healthy"
    if success_rate >= 0.5:
        return "degraded"
    return "failing"


class AnalyticsService:
    """Read-only aggregation over ``webhook_deliveries``. Never cached."""

    def __init__(self, settings: CourierSettings, top_errors_limit: int = 5):
        self.settings = settings
        self.top_errors_limit = top_errors_limit

    @staticmethod
    def _window(query, tenant_id, endpoint_id, since, until):
        if tenant_id is not None:
            query = query.where(WebhookDeliveryModel.tenant_id == tenant_id)
        if endpoint_id is not None:
            query = query.where(WebhookDeliveryModel.endpoint_id == endpoint_id)
        if since is not None:
            query = query.where(WebhookDeliveryModel.created_at >= since)
        if until is not None:
            query = query.where(WebhookDeliveryModel.created_at < until)
        return query

    async def get_delivery_stats(
        self,
        session: AsyncSession,
        tenant_id: str | None = None,
        endpoint_id: str | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> dict[str, Any]:
        """Success rate, status breakdown, latency and top errors for a window."""
        breakdown = {status: 0 for status in sorted(DELIVERY_STATUSES)}
        result = await session.execute(
            self._window(
                select(WebhookDeliveryModel.status, func.count(WebhookDeliveryModel.id)),
                tenant_id, endpoint_id, since, until,
            ).group_by(WebhookDeliveryModel.status)
        )
        for status, count in result.all():
            breakdown[status] = count
        total = sum(breakdown.values())
        finished = sum(breakdown[s] for s in TERMINAL_STATUSES)
        success_rate = round(breakdown[SUCCESS] / finished, 4) if finished else None

        result = await session.execute(
            self._window(
                select(WebhookDeliveryModel.response_time_ms),
                tenant_id, endpoint_id, since, until,
            ).where(WebhookDeliveryModel.response_time_ms.is_not(None))
        )
        latencies = [row[0] for row in result.all()]

        result = await session.execute(
            self._window(
                select(WebhookDeliveryModel.error_code, func.count(WebhookDeliveryModel.id).label("n")),
                tenant_id, endpoint_id, since, until,
            )
            .where(WebhookDeliveryModel.error_code.is_not(None))
            .group_by(WebhookDeliveryModel.error_code)
            .order_by(func.count(WebhookDeliveryModel.id).desc(), WebhookDeliveryModel.error_code)
            .limit(self.top_errors_limit)
        )
        top_errors = [{"error_code": code, "count": n} for code, n in result.all()]

        return {
            "total": total,
            "finished": finished,
            "success_rate": success_rate,
            "status_breakdown": breakdown,
            "response_time_ms": {
                "avg": round(statistics.fmean(latencies), 2) if latencies else None,
                "median": statistics.median(latencies) if latencies else None,
                "p95": percentile(latencies, 95),
            },
            "top_errors": top_errors,
            "since": since,
            "until": until,
        }

    async def get_endpoint_health(
        self,
        session: AsyncSession,
        endpoint_id: str,
        window_hours: int = 24,
    ) -> dict[str, Any]:
        """Stats for one endpoint over the last ``window_hours`` plus recent streaks."""
        since = utcnow() - timedelta(hours=window_hours)
        stats = await self.get_delivery_stats(session, endpoint_id=endpoint_id, since=since)

        result = await session.execute(
            select(WebhookDeliveryModel.status, WebhookDeliveryModel.completed_at)
            .where(
                WebhookDeliveryModel.endpoint_id == endpoint_id,
                WebhookDeliveryModel.status.in_(TERMINAL_STATUSES),
                WebhookDeliveryModel.completed_at.is_not(None),
            )
            .order_by(WebhookDeliveryModel.completed_at.desc())
            .limit(100)
        )
        consecutive_failures = 0
        last_success_at = None
        last_failure_at = None
        streak_open = True
        for status, completed_at in result.all():
            if status == SUCCESS:
                streak_open = False
                last_success_at = last_success_at or as_utc(completed_at)
            else:
                if streak_open:
                    consecutive_failures += 1
                last_failure_at = last_failure_at or as_utc(completed_at)
            if last_success_at and last_failure_at:
                break

        return {
            "endpoint_id": endpoint_id,
            "window_hours": window_hours,
            "status": classify_health(stats["success_rate"]),
            "consecutive_failures": consecutive_failures,
            "last_success_at": last_success_at,
            "last_failure_at": last_failure_at,
            "stats": stats,
        }
