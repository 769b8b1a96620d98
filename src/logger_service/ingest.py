"""Consumer callback that turns delivered payloads into stored log entries."""

import logging
from typing import Any

from src.common.protocol import (
    ErrorEvent,
    NoticeEvent,
    RequestEvent,
    ResponseEvent,
    StructuredEvent,
    enrich,
    event_severity,
    normalize,
    parse_event,
    sanitize,
    truncate_event,
)
from src.logger_service.consumer import Delivery
from src.logger_service.store import LogStore

logger = logging.getLogger("logger_service.ingest")


def describe_event(event: StructuredEvent) -> str:
    """One-line message for a structured event."""
    if isinstance(event, RequestEvent):
        return f"Received {event.method} request to {event.endpoint}"
    if isinstance(event, ResponseEvent):
        return (
            f"Completed {event.method} request to {event.endpoint} "
            f"with status {event.status_code}"
        )
    if isinstance(event, ErrorEvent):
        return f"Error in {event.method} request to {event.endpoint}: {event.message}"
    if isinstance(event, NoticeEvent) and event.message:
        return event.message
    return f"Event of type {getattr(event, 'event_type', 'info')}"


def with_delivery_defaults(payload: dict[str, Any], delivery: Delivery) -> dict[str, Any]:
    """Fill a missing correlationId and timestamp from the message properties.

    Keeps a redelivered payload mapped to the same (correlation id, timestamp)
    storage key.
    """
    filled = dict(payload)
    if not filled.get("correlationId"):
        fallback = delivery.correlation_id or delivery.message_id
        if fallback:
            filled["correlationId"] = fallback
    if not filled.get("timestamp") and delivery.timestamp is not None:
        filled["timestamp"] = delivery.timestamp
    return filled


class EventIngestor:
    """Stores each payload delivered by the consumer.

    Raises from __call__ (validation or StorageError) so the consumer applies
    its retry and dead-letter policy.
    """

    def __init__(self, store: LogStore):
        self.store = store

    async def __call__(self, payload: dict[str, Any], delivery: Delivery) -> None:
        payload = with_delivery_defaults(payload, delivery)
        if "level" in payload:
            event = enrich(parse_event(payload))
            stored = self.store.store_event(event, level=event.level, message=event.message)
        else:
            event_type = payload.get("eventType") or delivery.routing_key.rsplit(".", 1)[-1]
            event = truncate_event(sanitize(enrich(normalize(payload, event_type))))
            stored = self.store.store_event(
                event, level=event_severity(event), message=describe_event(event)
            )

        logger.info(
            "Event ingested" if stored else "Duplicate event skipped",
            extra={
                "correlation_id": event.correlation_id,
                "routing_key": delivery.routing_key,
                "event_type": getattr(event, "event_type", "log"),
            },
        )
