"""REST API endpoints for the data service.

Provides:
- GET /health: Cached broker status
- GET /health/broker: Fresh passive broker check
- POST /api/v1/events/log: Publish a log event with the caller's request context

Publishing is best-effort: the log endpoint answers 202 whether or not the
broker accepted the event and reports the outcome in `published`.
"""

import logging
from typing import Any, Literal, Optional

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from src.common.health import BrokerHealthProbe
from src.common.protocol import generate_correlation_id
from src.data_service.publisher import EventPublisher
from src.data_service.request_context import snapshot_request

logger = logging.getLogger(__name__)

router = APIRouter(tags=["events"])


class LogEventRequest(BaseModel):
    """Log event submitted over HTTP."""

    model_config = ConfigDict(validate_by_name=True)

    level: Literal["debug", "info", "warn", "error"] = Field(description="Log level")
    message: str = Field(min_length=1, description="Human-readable message")
    metadata: dict[str, Any] = Field(default_factory=dict, description="Open key-value data")
    correlation_id: Optional[str] = Field(default=None, alias="correlationId")


class PublishResponse(BaseModel):
    """Outcome of a best-effort publish."""

    model_config = ConfigDict(validate_by_name=True)

    published: bool
    correlation_id: str = Field(alias="correlationId")


def get_publisher() -> EventPublisher:
    """Get the event publisher.

    Actual implementation is injected in main.py via app.dependency_overrides.
    """
    raise RuntimeError("Event publisher not initialized")


def get_health_probe() -> BrokerHealthProbe:
    """Get the broker health probe (injected in main.py)."""
    raise RuntimeError("Health probe not initialized")


@router.get("/health")
async def health(probe: BrokerHealthProbe = Depends(get_health_probe)) -> dict:
    """Return the cached broker status without a broker round-trip."""
    current = await probe.get_status()
    return {"service": "data-service", "broker": current.to_response()}


@router.get("/health/broker")
async def broker_health(probe: BrokerHealthProbe = Depends(get_health_probe)) -> JSONResponse:
    """Run a fresh passive check; 503 when the broker is down."""
    current = await probe.check_health()
    code = status.HTTP_200_OK if current.status == "up" else status.HTTP_503_SERVICE_UNAVAILABLE
    return JSONResponse(status_code=code, content=current.to_response())


@router.post(
    "/api/v1/events/log",
    response_model=PublishResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def publish_log_event(
    req: LogEventRequest,
    request: Request,
    publisher: EventPublisher = Depends(get_publisher),
) -> PublishResponse:
    """Publish a log event carrying a sanitized snapshot of this request.

    Args:
        req: Level, message and metadata to publish
        request: Incoming request, captured as the event's httpRequest
        publisher: Event publisher

    Returns:
        PublishResponse with the publish outcome and the correlation id used
    """
    snapshot = snapshot_request(request, body=req.model_dump(by_alias=True))
    correlation_id = (
        req.correlation_id or snapshot.header("x-request-id") or generate_correlation_id()
    )

    published = await publisher.publish_log_with_request(
        req.level,
        req.message,
        snapshot,
        metadata=req.metadata,
        correlation_id=correlation_id,
    )

    if not published:
        logger.warning(
            "Log event accepted but not published",
            extra={"correlation_id": correlation_id, "level": req.level},
        )
    return PublishResponse(published=published, correlation_id=correlation_id)
