"""Tests for the SQLAlchemy log store."""

from datetime import date, datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest
from sqlalchemy.exc import OperationalError

from src.common.exceptions import StorageError
from src.common.models import EventLog
from src.common.protocol import ErrorEvent, LogEvent, RequestEvent
from src.logger_service.store import LogStore, parse_day


def log(message, ts, level="info", correlation_id=None, **kwargs):
    return LogEvent(level=level, message=message, timestamp=ts, correlation_id=correlation_id, **kwargs)


def row_count(session_factory):
    session = session_factory()
    try:
        return session.query(EventLog).count()
    finally:
        session.close()


class TestParseDay:
    def test_string(self):
        assert parse_day("2024-05-17") == date(2024, 5, 17)

    def test_date_and_datetime(self):
        assert parse_day(date(2024, 5, 17)) == date(2024, 5, 17)
        assert parse_day(datetime(2024, 5, 17, 23, 0)) == date(2024, 5, 17)

    @pytest.mark.parametrize("value", ["2024-13-01", "yesterday", ""])
    def test_invalid(self, value):
        with pytest.raises(ValueError):
            parse_day(value)


class TestStoreEvent:
    def test_new_event_is_stored(self, log_store, session_factory, fixed_time):
        assert log_store.store_event(log("hello", fixed_time, correlation_id="c-1")) is True
        assert row_count(session_factory) == 1

    def test_repeated_delivery_is_skipped(self, log_store, session_factory, fixed_time):
        event = log("hello", fixed_time, correlation_id="c-1")

        assert log_store.store_event(event) is True
        assert log_store.store_event(event) is False
        assert row_count(session_factory) == 1

    def test_same_correlation_different_time_kept(self, log_store, session_factory, fixed_time):
        log_store.store_event(log("started", fixed_time, correlation_id="c-1"))
        log_store.store_event(log("done", fixed_time + timedelta(seconds=3), correlation_id="c-1"))

        assert row_count(session_factory) == 2

    def test_missing_correlation_id_is_generated(self, log_store, fixed_time):
        log_store.store_event(log("anonymous", fixed_time))

        [record] = log_store.query_by_day("2024-05-17")
        assert record["correlationId"].startswith("corr-")

    def test_record_shape(self, log_store, fixed_time):
        log_store.store_event(
            log("City processing completed", fixed_time, correlation_id="c-9", metadata={"totalCities": 100})
        )

        [record] = log_store.query_by_day(date(2024, 5, 17))
        assert record["message"] == "City processing completed"
        assert record["metadata"] == {"totalCities": 100}
        assert record["correlationId"] == "c-9"
        assert record["level"] == "info"
        assert record["eventType"] == "log"
        assert record["day"] == "2024-05-17"
        assert record["service"] == "data-service-a"
        assert isinstance(record["id"], int)

    def test_structured_event_with_explicit_level_and_message(self, log_store, fixed_time):
        event = RequestEvent(endpoint="/cities", method="GET", timestamp=fixed_time, correlation_id="r-1")

        log_store.store_event(event, level="debug", message="Received GET request to /cities")

        [record] = log_store.query_by_type("request")
        assert record["message"] == "Received GET request to /cities"
        assert record["level"] == "debug"
        assert record["endpoint"] == "/cities"

    def test_database_failure_raises_storage_error(self, fixed_time):
        session = MagicMock()
        session.query.return_value.filter_by.return_value.first.return_value = None
        session.commit.side_effect = OperationalError("INSERT", {}, Exception("disk I/O error"))
        store = LogStore(lambda: session)

        with pytest.raises(StorageError) as exc_info:
            store.store_event(log("m", fixed_time, correlation_id="c-1"))

        assert exc_info.value.error_code == 6007
        session.rollback.assert_called_once()
        session.close.assert_called_once()


class TestQueries:
    @pytest.fixture
    def populated(self, log_store):
        utc = timezone.utc
        plus_two = timezone(timedelta(hours=2))
        events = [
            log("late on the 16th", datetime(2024, 5, 16, 23, 59, 59, tzinfo=utc), correlation_id="a"),
            log("start of the 17th", datetime(2024, 5, 17, 0, 0, 0, tzinfo=utc), correlation_id="b"),
            # 01:00 at +02:00 is still the 16th in UTC
            log("offset", datetime(2024, 5, 17, 1, 0, 0, tzinfo=plus_two), correlation_id="c"),
            log("failed", datetime(2024, 5, 17, 9, 0, 0, tzinfo=utc), level="error", correlation_id="d"),
            log("end of the 17th", datetime(2024, 5, 17, 23, 59, 59, tzinfo=utc), correlation_id="e"),
            log("the 18th", datetime(2024, 5, 18, 0, 0, 0, tzinfo=utc), correlation_id="f"),
        ]
        for event in events:
            log_store.store_event(event)
        log_store.store_event(
            ErrorEvent(message="boom", timestamp=datetime(2024, 5, 17, 10, 0, tzinfo=utc), correlation_id="g"),
            level="error",
            message="Error in GET request to /cities: boom",
        )
        return log_store

    def test_by_day_uses_utc_calendar_day(self, populated):
        messages = [r["message"] for r in populated.query_by_day("2024-05-17")]

        assert messages == [
            "start of the 17th",
            "failed",
            "Error in GET request to /cities: boom",
            "end of the 17th",
        ]

    def test_by_day_offset_event_lands_on_utc_day(self, populated):
        messages = [r["message"] for r in populated.query_by_day("2024-05-16")]
        assert messages == ["offset", "late on the 16th"]

    def test_by_day_empty(self, populated):
        assert populated.query_by_day("2023-01-01") == []

    def test_by_day_invalid(self, populated):
        with pytest.raises(ValueError):
            populated.query_by_day("2024-02-30")

    def test_by_range_includes_whole_end_day(self, populated):
        records = populated.query_by_range("2024-05-17", "2024-05-18")
        assert [r["correlationId"] for r in records] == ["b", "d", "g", "e", "f"]

    def test_by_range_single_day(self, populated):
        assert len(populated.query_by_range("2024-05-16", "2024-05-16")) == 2

    def test_by_range_rejects_inverted_dates(self, populated):
        with pytest.raises(ValueError):
            populated.query_by_range("2024-05-18", "2024-05-17")

    def test_by_type_matches_structured_type_and_log_level(self, populated):
        records = populated.query_by_type("error")
        assert [r["correlationId"] for r in records] == ["d", "g"]

    def test_by_type_is_case_insensitive(self, populated):
        assert len(populated.query_by_type(" ERROR ")) == 2

    def test_by_type_limit(self, populated):
        assert len(populated.query_by_type("info", limit=2)) == 2
        assert len(populated.query_by_type("info")) == 5

    def test_by_type_log(self, populated):
        assert len(populated.query_by_type("log")) == 6
