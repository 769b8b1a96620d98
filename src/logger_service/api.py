"""REST API endpoints for the logger service.

Provides:
- GET /health: Cached broker status
- GET /health/broker: Fresh passive broker check
- GET /api/v1/logs/day?date=YYYY-MM-DD: Events of one day
- GET /api/v1/logs/range?startDate=&endDate=: Events of an inclusive day range
- GET /api/v1/logs/type?type=: Events of one type (or log level)

Query responses use {success, data, count, ...}; storage failures come back as
success=false with the error text, invalid dates as 400.
"""

import logging
from typing import Any

from fastapi import APIRouter, Depends, Query, status
from fastapi.responses import JSONResponse

from src.common.exceptions import StorageError
from src.common.health import BrokerHealthProbe
from src.logger_service.store import LogStore

logger = logging.getLogger(__name__)

router = APIRouter(tags=["logs"])


def get_log_store() -> LogStore:
    """Get the log store (injected in main.py via app.dependency_overrides)."""
    raise RuntimeError("Log store not initialized")


def get_health_probe() -> BrokerHealthProbe:
    """Get the broker health probe (injected in main.py)."""
    raise RuntimeError("Health probe not initialized")


def _bad_request(message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"error": "Bad Request", "message": message},
    )


def _result(data: list[dict[str, Any]], **query: Any) -> dict[str, Any]:
    return {"success": True, "data": data, "count": len(data), **query}


def _failure(error: StorageError, **query: Any) -> dict[str, Any]:
    return {"success": False, "data": [], "count": 0, **query, "error": error.message}


@router.get("/health")
async def health(probe: BrokerHealthProbe = Depends(get_health_probe)) -> dict:
    """Return the cached broker status without a broker round-trip."""
    current = await probe.get_status()
    return {"service": "logger-service", "broker": current.to_response()}


@router.get("/health/broker")
async def broker_health(probe: BrokerHealthProbe = Depends(get_health_probe)) -> JSONResponse:
    """Run a fresh passive check; 503 when the broker is down."""
    current = await probe.check_health()
    code = status.HTTP_200_OK if current.status == "up" else status.HTTP_503_SERVICE_UNAVAILABLE
    return JSONResponse(status_code=code, content=current.to_response())


@router.get("/api/v1/logs/day")
async def logs_by_day(
    date: str = Query(..., description="Day in YYYY-MM-DD format"),
    store: LogStore = Depends(get_log_store),
):
    """Return every event stored for one UTC calendar day."""
    try:
        data = store.query_by_day(date)
    except ValueError:
        return _bad_request(f"Invalid date: {date}. Use YYYY-MM-DD")
    except StorageError as e:
        logger.error(f"Day query failed for {date}: {e}")
        return _failure(e, date=date)

    logger.info(f"Day query: {date} -> {len(data)} events")
    return _result(data, date=date)


@router.get("/api/v1/logs/range")
async def logs_by_range(
    start_date: str = Query(..., alias="startDate", description="First day, YYYY-MM-DD"),
    end_date: str = Query(..., alias="endDate", description="Last day, YYYY-MM-DD"),
    store: LogStore = Depends(get_log_store),
):
    """Return events from the start of startDate through the end of endDate."""
    try:
        data = store.query_by_range(start_date, end_date)
    except ValueError as e:
        return _bad_request(f"Invalid date range {start_date}..{end_date}: {e}")
    except StorageError as e:
        logger.error(f"Range query failed for {start_date}..{end_date}: {e}")
        return _failure(e, startDate=start_date, endDate=end_date)

    logger.info(f"Range query: {start_date}..{end_date} -> {len(data)} events")
    return _result(data, startDate=start_date, endDate=end_date)


@router.get("/api/v1/logs/type")
async def logs_by_type(
    event_type: str = Query(..., alias="type", description="Event type or log level"),
    limit: int = Query(default=0, ge=0, description="Maximum results, 0 for all"),
    store: LogStore = Depends(get_log_store),
):
    """Return events of one type, oldest first."""
    try:
        data = store.query_by_type(event_type, limit=limit or None)
    except StorageError as e:
        logger.error(f"Type query failed for {event_type}: {e}")
        return _failure(e, type=event_type)

    return _result(data, type=event_type)
