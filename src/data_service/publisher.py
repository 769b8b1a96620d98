"""Best-effort event publisher for the data service.

Publishing is a side effect of business operations and must never fail them:
every method returns True when the event reached the broker (confirmed by the
broker in confirm mode) and False otherwise. Broker problems are logged, not
raised. There is no local buffering or retry of failed publishes.
"""

import asyncio
import logging
from collections.abc import Mapping
from datetime import datetime
from typing import Any, Optional, Union

import aio_pika
from aio_pika import DeliveryMode
from aio_pika.exceptions import DeliveryError
from pamqp.commands import Basic

from src.common.config import Config
from src.common.connection import BrokerConnectionManager
from src.common.exceptions import EventValidationError, PublishRejectedError
from src.common.protocol import (
    DEFAULT_SERVICE,
    AnyEvent,
    EventEnvelope,
    HttpRequestSnapshot,
    generate_correlation_id,
    generate_message_id,
    validate_event,
)

logger = logging.getLogger("data_service.publisher")

EventInput = Union[EventEnvelope, Mapping[str, Any]]


class EventPublisher:
    """Publishes envelopes to the topic exchange owned by a connection manager."""

    def __init__(
        self,
        manager: BrokerConnectionManager,
        *,
        routing_key: str,
        service_name: str = DEFAULT_SERVICE,
        publish_timeout: float = 5.0,
    ):
        """Initialize the publisher.

        Args:
            manager: Producer-side connection manager (confirm channel)
            routing_key: Routing key every event is published with
            service_name: Value of the x-service header and default envelope service
            publish_timeout: Seconds to wait for the send (and confirm)
        """
        self.manager = manager
        self.routing_key = routing_key
        self.service_name = service_name
        self.publish_timeout = publish_timeout

    @classmethod
    def from_config(cls, config: Config, manager: BrokerConnectionManager) -> "EventPublisher":
        return cls(
            manager,
            routing_key=config.RABBITMQ_ROUTING_KEY,
            service_name=config.SERVICE_NAME,
            publish_timeout=config.RABBITMQ_PUBLISH_TIMEOUT,
        )

    async def publish(self, event: EventInput, correlation_id: Optional[str] = None) -> bool:
        """Publish one event.

        Correlation id priority: explicit argument, then the envelope's own
        field, then a freshly generated `corr-...` id.

        Args:
            event: Envelope model or raw mapping in wire form
            correlation_id: Optional caller-supplied correlation id

        Returns:
            True if the event was sent (and confirmed in confirm mode);
            False on validation failure, no connection, send failure, nack
            or confirm timeout
        """
        try:
            envelope = validate_event(event)
        except EventValidationError as e:
            logger.warning(f"Event not published, validation failed: {e}")
            return False

        if not self.manager.is_connected or self.manager.topology is None:
            logger.warning(
                "Event not published, broker not connected",
                extra={"state": self.manager.state.value},
            )
            return False

        resolved = correlation_id or envelope.correlation_id or generate_correlation_id()
        if envelope.correlation_id != resolved:
            envelope = envelope.model_copy(update={"correlation_id": resolved})

        message_id = generate_message_id()
        message = self._build_message(envelope, message_id)

        try:
            await self._send(message)
        except PublishRejectedError as e:
            logger.warning(
                f"Event not published: {e}",
                extra={"correlation_id": resolved, "message_id": message_id},
            )
            return False

        logger.debug(
            "Event published",
            extra={
                "correlation_id": resolved,
                "message_id": message_id,
                "routing_key": self.routing_key,
                "confirmed": self.manager.confirm_mode,
            },
        )
        return True

    async def publish_log(
        self,
        level: str,
        message: str,
        *,
        metadata: Optional[dict[str, Any]] = None,
        timestamp: Optional[datetime] = None,
        correlation_id: Optional[str] = None,
        http_request: Optional[HttpRequestSnapshot] = None,
    ) -> bool:
        """Publish a log line; invalid levels or empty messages return False."""
        event: dict[str, Any] = {
            "service": self.service_name,
            "level": level,
            "message": message,
            "metadata": metadata or {},
        }
        if timestamp is not None:
            event["timestamp"] = timestamp
        if http_request is not None:
            event["httpRequest"] = http_request
        return await self.publish(event, correlation_id)

    async def publish_with_request(
        self,
        event: EventInput,
        request: HttpRequestSnapshot,
        correlation_id: Optional[str] = None,
    ) -> bool:
        """Attach the (already redacted) request snapshot and publish.

        The correlation id falls back to the request's x-request-id header
        before a new one is generated.
        """
        if isinstance(event, EventEnvelope):
            resolved = correlation_id or event.correlation_id or request.header("x-request-id")
            event = event.model_copy(update={"http_request": request})
        else:
            resolved = (
                correlation_id or event.get("correlationId") or request.header("x-request-id")
            )
            event = {**event, "httpRequest": request}
        return await self.publish(event, str(resolved) if resolved else None)

    async def publish_log_with_request(
        self,
        level: str,
        message: str,
        request: HttpRequestSnapshot,
        *,
        metadata: Optional[dict[str, Any]] = None,
        correlation_id: Optional[str] = None,
    ) -> bool:
        event = {
            "service": self.service_name,
            "level": level,
            "message": message,
            "metadata": metadata or {},
        }
        return await self.publish_with_request(event, request, correlation_id)

    def _build_message(self, envelope: AnyEvent, message_id: str) -> aio_pika.Message:
        return aio_pika.Message(
            body=envelope.to_json().encode("utf-8"),
            content_type="application/json",
            content_encoding="utf-8",
            delivery_mode=DeliveryMode.PERSISTENT,
            message_id=message_id,
            correlation_id=envelope.correlation_id,
            timestamp=envelope.timestamp,
            headers={"x-service": self.service_name},
        )

    async def _send(self, message: aio_pika.Message) -> None:
        """Send one message and wait for the broker confirm when enabled.

        Raises:
            PublishRejectedError: On nack, confirm timeout or local send failure
        """
        context = {"message_id": message.message_id, "routing_key": self.routing_key}
        exchange = self.manager.topology.exchange
        try:
            confirmation = await exchange.publish(
                message,
                routing_key=self.routing_key,
                timeout=self.publish_timeout,
            )
        except DeliveryError as e:
            raise PublishRejectedError("Broker rejected the message", context=context) from e
        except asyncio.TimeoutError as e:
            raise PublishRejectedError("Timed out waiting for broker confirm", context=context) from e
        except (aio_pika.exceptions.AMQPError, ConnectionError, OSError, RuntimeError) as e:
            raise PublishRejectedError(f"Send failed: {e}", context=context) from e

        if isinstance(confirmation, Basic.Nack):
            raise PublishRejectedError("Broker nacked the message", context=context)
