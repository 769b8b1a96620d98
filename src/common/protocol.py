"""
Event envelope models for the eventrelay pipeline.
Defines the JSON wire format shared by the data service (producer) and the
logger service (consumer), plus the helpers that normalize, sanitize and
enrich loosely-typed inbound events.
"""

import logging
import secrets
import string
import time
from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Annotated, Any, Literal, Optional, TypeVar, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    ValidationError,
    field_validator,
)

from src.common.exceptions import EventValidationError

logger = logging.getLogger(__name__)

DEFAULT_SERVICE = "data-service-a"
REDACTED = "[REDACTED]"

# Redacted at snapshot construction (exact names, case-insensitive)
SENSITIVE_HEADERS = frozenset({"authorization", "cookie", "set-cookie", "proxy-authorization"})
SENSITIVE_BODY_FIELDS = frozenset({"password", "token", "secret"})

# Redacted by sanitize() (substring match on body keys)
SENSITIVE_BODY_PATTERNS = ("password", "token", "secret", "key", "apikey", "credit_card")

CRITICAL_ERROR_PATTERNS = (
    "database connection",
    "out of memory",
    "connection refused",
    "critical",
    "fatal",
    "security breach",
    "unauthorized access",
)

MAX_LIST_ITEMS = 10

_BASE36 = string.digits + string.ascii_lowercase


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _epoch_millis() -> int:
    return int(time.time() * 1000)


def _token(length: int) -> str:
    return "".join(secrets.choice(_BASE36) for _ in range(length))


def generate_message_id() -> str:
    """Return a message id of the form {epochMillis}-{8 base36 chars}."""
    return f"{_epoch_millis()}-{_token(8)}"


def generate_correlation_id() -> str:
    """Return a correlation id of the form corr-{epochMillis}-{6 base36 chars}."""
    return f"corr-{_epoch_millis()}-{_token(6)}"


def redact_headers(headers: Mapping[str, Any]) -> dict[str, Any]:
    """Replace deny-listed header values with the redaction marker."""
    return {
        name: REDACTED if str(name).lower() in SENSITIVE_HEADERS else value
        for name, value in headers.items()
    }


def _redact_fields(value: Any, names: frozenset[str]) -> Any:
    if isinstance(value, Mapping):
        return {
            key: REDACTED if str(key).lower() in names else _redact_fields(item, names)
            for key, item in value.items()
        }
    if isinstance(value, list):
        return [_redact_fields(item, names) for item in value]
    return value


def _redact_matching(value: Any, patterns: tuple[str, ...]) -> Any:
    if isinstance(value, Mapping):
        redacted = {}
        for key, item in value.items():
            lowered = str(key).lower()
            if isinstance(item, (Mapping, list)):
                redacted[key] = _redact_matching(item, patterns)
            elif item is not None and any(pattern in lowered for pattern in patterns):
                redacted[key] = REDACTED
            else:
                redacted[key] = item
        return redacted
    if isinstance(value, list):
        return [_redact_matching(item, patterns) for item in value]
    return value


class HttpRequestSnapshot(BaseModel):
    """Sanitized snapshot of the HTTP call that triggered an event.

    Sensitive headers and body fields are replaced by the redaction marker
    while the model is constructed, so an unredacted snapshot never exists.
    """

    model_config = ConfigDict(validate_by_name=True)

    method: str = Field(default="GET", description="HTTP method")
    path: str = Field(default="/", description="Request path")
    query: dict[str, Any] = Field(default_factory=dict, description="Query string parameters")
    params: dict[str, Any] = Field(default_factory=dict, description="Path parameters")
    body: Any = Field(default=None, description="Request body (redacted)")
    headers: dict[str, Any] = Field(default_factory=dict, description="Request headers (redacted)")
    ip: Optional[str] = Field(default=None, description="Client address")

    @field_validator("headers")
    @classmethod
    def redact_sensitive_headers(cls, v: dict[str, Any]) -> dict[str, Any]:
        return redact_headers(v)

    @field_validator("body")
    @classmethod
    def redact_sensitive_body(cls, v: Any) -> Any:
        return _redact_fields(v, SENSITIVE_BODY_FIELDS)

    def header(self, name: str) -> Optional[Any]:
        """Case-insensitive header lookup."""
        wanted = name.lower()
        for key, value in self.headers.items():
            if str(key).lower() == wanted:
                return value
        return None


class EventEnvelope(BaseModel):
    """Fields common to every message on the wire."""

    model_config = ConfigDict(
        validate_by_name=True,
        use_enum_values=True,
    )

    service: str = Field(default=DEFAULT_SERVICE, min_length=1, description="Producer name")
    correlation_id: Optional[str] = Field(
        default=None, alias="correlationId", description="Id joining producer and consumer logs"
    )
    timestamp: datetime = Field(default_factory=_utcnow, description="Event time (UTC)")
    metadata: dict[str, Any] = Field(default_factory=dict, description="Open key-value data")
    http_request: Optional[HttpRequestSnapshot] = Field(
        default=None, alias="httpRequest", description="Triggering request, redacted"
    )

    @field_validator("timestamp")
    @classmethod
    def ensure_timezone(cls, v: datetime) -> datetime:
        """Treat naive timestamps as UTC."""
        if v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v

    @field_validator("metadata", mode="before")
    @classmethod
    def default_metadata(cls, v: Any) -> Any:
        return {} if v is None else v

    def to_wire(self) -> dict[str, Any]:
        """JSON-compatible dict with camelCase keys."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)

    def to_json(self) -> str:
        """Serialize to JSON string with ISO 8601 timestamps."""
        return self.model_dump_json(by_alias=True, exclude_none=True)

    def header(self, name: str) -> Optional[Any]:
        if self.http_request is not None:
            return self.http_request.header(name)
        return None


class LogEvent(EventEnvelope):
    """Plain log line published by a service."""

    level: Literal["debug", "info", "warn", "error"] = Field(description="Log level")
    message: str = Field(min_length=1, description="Human-readable message")


class StructuredEvent(EventEnvelope):
    """Fields shared by the request/response/error/notice events."""

    service_id: Optional[str] = Field(default=None, alias="serviceId")
    endpoint: str = Field(default="", description="Endpoint the event concerns")
    method: str = Field(default="", description="HTTP method of that endpoint")
    headers: dict[str, Any] = Field(default_factory=dict, description="Headers of the call")

    def header(self, name: str) -> Optional[Any]:
        wanted = name.lower()
        for key, value in self.headers.items():
            if str(key).lower() == wanted:
                return value
        return super().header(name)


class RequestEvent(StructuredEvent):
    event_type: Literal["request"] = Field(default="request", alias="eventType")
    request_body: Any = Field(default_factory=dict, alias="requestBody")


class ResponseEvent(StructuredEvent):
    event_type: Literal["response"] = Field(default="response", alias="eventType")
    status_code: int = Field(default=200, alias="statusCode")
    execution_time: float = Field(default=0, alias="executionTime")
    response_body: Any = Field(default_factory=dict, alias="responseBody")


class ErrorEvent(StructuredEvent):
    event_type: Literal["error"] = Field(default="error", alias="eventType")
    status_code: int = Field(default=500, alias="statusCode")
    message: str = Field(min_length=1, description="Error message")
    name: str = Field(default="Error", description="Error class name")
    stack: Optional[str] = Field(default=None, description="Stack trace")
    details: Any = Field(default_factory=dict, description="Additional error details")


class NoticeEvent(StructuredEvent):
    event_type: Literal["info", "warning", "debug"] = Field(default="info", alias="eventType")
    message: Optional[str] = Field(default=None)


AnyStructuredEvent = Annotated[
    Union[RequestEvent, ResponseEvent, ErrorEvent, NoticeEvent],
    Field(discriminator="event_type"),
]
AnyEvent = Union[LogEvent, RequestEvent, ResponseEvent, ErrorEvent, NoticeEvent]

_EVENT_VARIANTS = (LogEvent, RequestEvent, ResponseEvent, ErrorEvent, NoticeEvent)

EventT = TypeVar("EventT", bound=EventEnvelope)

_structured_adapter: TypeAdapter = TypeAdapter(AnyStructuredEvent)


def event_type_of(event: EventEnvelope) -> str:
    """Storage type of an event: 'log' for log lines, eventType otherwise."""
    return getattr(event, "event_type", "log")


def parse_event(raw: Mapping[str, Any]) -> AnyEvent:
    """Build the right envelope variant from a decoded wire payload.

    Payloads carrying `level` are log events; payloads carrying `eventType`
    are structured events.

    Raises:
        EventValidationError: If the payload matches no variant.
    """
    if not isinstance(raw, Mapping):
        raise EventValidationError(
            "Event payload must be an object", context={"type": type(raw).__name__}
        )
    try:
        if "level" in raw:
            return LogEvent.model_validate(raw)
        if "eventType" in raw:
            return _structured_adapter.validate_python(dict(raw))
    except ValidationError as e:
        raise EventValidationError(
            "Event failed validation", context={"errors": e.errors(include_url=False)}
        ) from e
    raise EventValidationError(
        "Event has neither level nor eventType", context={"keys": sorted(map(str, raw))}
    )


def validate_event(event: Union[EventEnvelope, Mapping[str, Any]]) -> AnyEvent:
    """Re-check an envelope (or raw mapping) against its schema.

    Models built with model_construct() or mutated after construction are
    validated again here.

    Raises:
        EventValidationError: If required fields are missing or out of range.
    """
    if isinstance(event, EventEnvelope):
        if not isinstance(event, _EVENT_VARIANTS):
            raise EventValidationError(
                "Event has neither level nor eventType",
                context={"type": type(event).__name__},
            )
        try:
            return type(event).model_validate(event.model_dump(by_alias=True))
        except ValidationError as e:
            raise EventValidationError(
                "Event failed validation", context={"errors": e.errors(include_url=False)}
            ) from e
    return parse_event(event)


def _first(data: Mapping[str, Any], *keys: str, default: Any = None) -> Any:
    for key in keys:
        value = data.get(key)
        if value:
            return value
    return default


def normalize(raw: Mapping[str, Any], event_type_hint: str) -> StructuredEvent:
    """Map loosely-typed event data onto a canonical structured event.

    Unknown hints become an `info` notice. Never raises: if the variant cannot
    be built, a minimal ErrorEvent describing the failure is returned instead.
    """
    try:
        data = dict(raw or {})
        base: dict[str, Any] = {
            "timestamp": data.get("timestamp") or _utcnow(),
            "serviceId": data.get("serviceId") or "unknown",
            "endpoint": data.get("endpoint") or "",
            "method": data.get("method") or "",
            "correlationId": data.get("correlationId") or None,
            "headers": data.get("headers") or {},
            "metadata": data.get("metadata") or {},
        }
        if data.get("service"):
            base["service"] = data["service"]
        if data.get("httpRequest"):
            base["httpRequest"] = data["httpRequest"]

        hint = (event_type_hint or "").lower()
        if hint == "request":
            return RequestEvent.model_validate(
                {**base, "requestBody": _first(data, "request", "requestBody", default={})}
            )
        if hint == "response":
            return ResponseEvent.model_validate(
                {
                    **base,
                    "statusCode": data.get("statusCode") or 200,
                    "executionTime": data.get("executionTime") or 0,
                    "responseBody": _first(data, "response", "responseBody", default={}),
                }
            )
        if hint == "error":
            return ErrorEvent.model_validate(
                {
                    **base,
                    "statusCode": data.get("statusCode") or 500,
                    "message": data.get("message") or "Unknown error",
                    "name": data.get("name") or "Error",
                    "stack": data.get("stack"),
                    "details": _first(data, "details", "error", default={}),
                }
            )

        notice_type = hint if hint in ("info", "warning", "debug") else "info"
        message = data.get("message")
        return NoticeEvent.model_validate(
            {
                **base,
                "eventType": notice_type,
                "message": str(message) if message is not None else None,
            }
        )

    except (ValidationError, TypeError, ValueError) as e:
        logger.error(f"Error normalizing {event_type_hint!r} event: {e}")
        original = raw if isinstance(raw, (Mapping, list, str)) else repr(raw)
        return ErrorEvent(
            service_id="event-processor",
            endpoint="/events",
            message=f"Error processing event: {e}",
            details={"originalEvent": original},
        )


def sanitize(event: EventT) -> EventT:
    """Redact sensitive headers and request-body fields before persistence."""
    updates: dict[str, Any] = {}
    if isinstance(event, StructuredEvent) and event.headers:
        updates["headers"] = redact_headers(event.headers)
    if isinstance(event, RequestEvent) and event.request_body:
        updates["request_body"] = _redact_matching(event.request_body, SENSITIVE_BODY_PATTERNS)
    if not updates:
        return event
    return event.model_copy(update=updates)


def enrich(event: EventT) -> EventT:
    """Fill correlation id and service id from context and stamp processedAt."""
    updates: dict[str, Any] = {}
    if not event.correlation_id:
        correlation_id = event.header("x-correlation-id") or event.header("x-request-id")
        if correlation_id:
            updates["correlation_id"] = str(correlation_id)
    if isinstance(event, StructuredEvent) and not event.service_id:
        updates["service_id"] = "service-a"

    metadata = dict(event.metadata or {})
    metadata["processedAt"] = _utcnow().isoformat()
    updates["metadata"] = metadata
    return event.model_copy(update=updates)


def event_severity(event: EventEnvelope) -> str:
    """Severity (debug, info, warn, error, critical) derived from type and content."""
    if isinstance(event, LogEvent):
        return event.level
    if isinstance(event, ResponseEvent):
        if event.status_code >= 500:
            return "error"
        if event.status_code >= 400:
            return "warn"
        return "debug"
    if isinstance(event, RequestEvent):
        return "debug"
    if isinstance(event, ErrorEvent):
        message = event.message.lower()
        if any(pattern in message for pattern in CRITICAL_ERROR_PATTERNS):
            return "critical"
        return "error"
    if isinstance(event, NoticeEvent):
        return {"warning": "warn", "debug": "debug"}.get(event.event_type, "info")
    return "info"


def _truncate_value(value: Any, max_len: int) -> Any:
    if isinstance(value, str):
        return value[:max_len] + "..." if len(value) > max_len else value
    if isinstance(value, Mapping):
        return {key: _truncate_value(item, max_len) for key, item in value.items()}
    if isinstance(value, list):
        if len(value) > MAX_LIST_ITEMS:
            extra = len(value) - MAX_LIST_ITEMS
            return [*value[:MAX_LIST_ITEMS], f"...and {extra} more items"]
        return [_truncate_value(item, max_len) for item in value]
    return value


def truncate_event(event: EventT, max_len: int = 1000) -> EventT:
    """Bound the size of bodies, error details and stack traces."""
    updates: dict[str, Any] = {}
    if isinstance(event, RequestEvent):
        updates["request_body"] = _truncate_value(event.request_body, max_len)
    elif isinstance(event, ResponseEvent):
        updates["response_body"] = _truncate_value(event.response_body, max_len)
    elif isinstance(event, ErrorEvent):
        updates["details"] = _truncate_value(event.details, max_len)
        if event.stack and len(event.stack) > max_len:
            updates["stack"] = event.stack[:max_len] + "..."
    if not updates:
        return event
    return event.model_copy(update=updates)


def extract_correlation_info(event: EventEnvelope) -> dict[str, Any]:
    """Collect correlation, trace and span ids from the event and its headers."""
    info: dict[str, Any] = {}
    correlation_id = (
        event.correlation_id or event.header("x-correlation-id") or event.header("x-request-id")
    )
    if correlation_id:
        info["correlationId"] = correlation_id
    for header, key in (
        ("x-trace-id", "traceId"),
        ("x-span-id", "spanId"),
        ("x-parent-span-id", "parentSpanId"),
    ):
        value = event.header(header)
        if value:
            info[key] = value
    return info
