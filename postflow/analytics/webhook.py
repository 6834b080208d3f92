"""
Metric push webhook (FastAPI).

``POST /metrics/push`` accepts one metric event and hands it to
:meth:`AnalyticsCollector.ingest_push`.  Callers authenticate with the
shared secret in the ``X-Webhook-Secret`` header; with no secret
configured every push is refused.

Responses:
    202  stored (body carries the metric id)
    401  missing or wrong secret
    404  unknown job
    409  job not published yet
    422  malformed event
    503  no secret configured
"""

import hmac
import logging
from datetime import datetime
from typing import Dict, Optional

from fastapi import APIRouter, FastAPI, Header, HTTPException, status
from pydantic import BaseModel, Field

from postflow.analytics.collector import AnalyticsCollector, MetricPush
from postflow.exceptions import InvalidStateError, JobNotFoundError, ValidationError
from postflow.models import RawCounts

logger = logging.getLogger(__name__)


class CountsIn(BaseModel):
    impressions: Optional[int] = Field(default=None, ge=0)
    likes: int = Field(default=0, ge=0)
    comments: int = Field(default=0, ge=0)
    shares: int = Field(default=0, ge=0)
    clicks: Optional[int] = Field(default=None, ge=0)


class MetricPushIn(BaseModel):
    job_id: Optional[str] = None
    platform: Optional[str] = None
    platform_post_id: Optional[str] = None
    counts: CountsIn
    captured_at: Optional[datetime] = None


class MetricPushOut(BaseModel):
    metric_id: str
    status: str = "accepted"


def create_app(collector: AnalyticsCollector, secret: str) -> FastAPI:
    """Build the webhook app around *collector*."""
    if not secret:
        logger.warning("[WEBHOOK] No webhook secret configured; pushes will be refused")

    router = APIRouter()

    @router.get("/healthz")
    async def healthz() -> Dict[str, str]:
        return {"status": "ok"}

    @router.post(
        "/metrics/push",
        response_model=MetricPushOut,
        status_code=status.HTTP_202_ACCEPTED,
    )
    async def push_metrics(
        payload: MetricPushIn,
        x_webhook_secret: Optional[str] = Header(default=None),
    ) -> MetricPushOut:
        if not secret:
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="webhook secret not configured",
            )
        if not x_webhook_secret or not hmac.compare_digest(x_webhook_secret, secret):
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid secret")

        event = MetricPush(
            counts=RawCounts(**payload.counts.model_dump()),
            captured_at=payload.captured_at,
            job_id=payload.job_id,
            platform=payload.platform,
            platform_post_id=payload.platform_post_id,
        )
        try:
            metric_id = await collector.ingest_push(event)
        except ValidationError as exc:
            raise HTTPException(status_code=422, detail=str(exc)) from exc
        except JobNotFoundError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
        except InvalidStateError as exc:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc

        return MetricPushOut(metric_id=metric_id)

    app = FastAPI(title="postflow metrics webhook")
    app.include_router(router)
    return app


__all__ = ["CountsIn", "MetricPushIn", "MetricPushOut", "create_app"]
