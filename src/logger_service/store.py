"""Time-indexed log store backed by SQLAlchemy.

Writes are idempotent on (correlation id, timestamp) because the consumer
delivers at least once. Day boundaries are UTC calendar days.
"""

import logging
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Callable, Optional, Union

from sqlalchemy import and_, or_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from src.common.database import SessionLocal
from src.common.exceptions import StorageError
from src.common.models import EventLog
from src.common.protocol import EventEnvelope, event_type_of, generate_correlation_id

logger = logging.getLogger(__name__)

DateInput = Union[date, str]


def parse_day(value: DateInput) -> date:
    """Accept a date or a YYYY-MM-DD string.

    Raises:
        ValueError: If the string is not a valid calendar date
    """
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value).strip())


def _to_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _day_start(day: date) -> datetime:
    return datetime.combine(day, time.min)


class LogStore:
    """Stores consumed events and answers day, range and type queries."""

    def __init__(self, session_factory: Callable[[], Session] = SessionLocal):
        self._session_factory = session_factory

    def store_event(
        self,
        event: EventEnvelope,
        *,
        level: Optional[str] = None,
        message: Optional[str] = None,
    ) -> bool:
        """Persist an event unless the same (correlation id, timestamp) exists.

        Args:
            event: Validated envelope (sanitized for structured events)
            level: Severity to index by; defaults to the event's own level
            message: Display message; defaults to the event's own message

        Returns:
            True if a new row was written, False for a repeated delivery

        Raises:
            StorageError: If the database write fails
        """
        if not event.correlation_id:
            event = event.model_copy(update={"correlation_id": generate_correlation_id()})

        timestamp = _to_naive_utc(event.timestamp)
        row = EventLog(
            correlation_id=event.correlation_id,
            timestamp=timestamp,
            day=timestamp.strftime("%Y-%m-%d"),
            service=event.service,
            level=level or getattr(event, "level", None) or "info",
            event_type=event_type_of(event),
            message=message if message is not None else getattr(event, "message", None),
            event_metadata=event.metadata,
            http_request=(
                event.http_request.model_dump(mode="json") if event.http_request else None
            ),
            payload=event.to_wire(),
        )

        session = self._session_factory()
        try:
            existing = (
                session.query(EventLog.id)
                .filter_by(correlation_id=row.correlation_id, timestamp=timestamp)
                .first()
            )
            if existing is not None:
                logger.debug(
                    "Event already stored", extra={"correlation_id": row.correlation_id}
                )
                return False

            session.add(row)
            session.commit()
            logger.debug(
                "Event stored",
                extra={"correlation_id": row.correlation_id, "event_type": row.event_type},
            )
            return True

        except IntegrityError:
            # Another writer stored the same event between the check and the insert.
            session.rollback()
            return False
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Failed to store event: {e}", exc_info=True)
            raise StorageError(
                f"Failed to store event: {e}", context={"correlation_id": row.correlation_id}
            ) from e
        finally:
            session.close()

    def query_by_day(self, day: DateInput) -> list[dict[str, Any]]:
        """All events of one UTC calendar day, oldest first."""
        target = parse_day(day)
        return self._query(EventLog.day == target.isoformat())

    def query_by_range(self, start_date: DateInput, end_date: DateInput) -> list[dict[str, Any]]:
        """Events from the start of start_date through the end of end_date.

        Raises:
            ValueError: If a date is invalid or start_date is after end_date
        """
        start, end = parse_day(start_date), parse_day(end_date)
        if start > end:
            raise ValueError("startDate must not be after endDate")
        return self._query(
            and_(
                EventLog.timestamp >= _day_start(start),
                EventLog.timestamp < _day_start(end + timedelta(days=1)),
            )
        )

    def query_by_type(self, event_type: str, limit: Optional[int] = None) -> list[dict[str, Any]]:
        """Events of one type; log events also match on their level."""
        wanted = event_type.strip().lower()
        return self._query(
            or_(
                EventLog.event_type == wanted,
                and_(EventLog.event_type == "log", EventLog.level == wanted),
            ),
            limit=limit,
        )

    def _query(self, condition: Any, limit: Optional[int] = None) -> list[dict[str, Any]]:
        session = self._session_factory()
        try:
            query = session.query(EventLog).filter(condition).order_by(
                EventLog.timestamp.asc(), EventLog.id.asc()
            )
            if limit:
                query = query.limit(limit)
            return [self._to_record(row) for row in query.all()]
        except SQLAlchemyError as e:
            logger.error(f"Log query failed: {e}", exc_info=True)
            raise StorageError(f"Log query failed: {e}") from e
        finally:
            session.close()

    @staticmethod
    def _to_record(row: EventLog) -> dict[str, Any]:
        record = dict(row.payload or {})
        record["message"] = row.message
        record["id"] = row.id
        record["day"] = row.day
        record["level"] = row.level
        record["eventType"] = row.event_type
        return record
