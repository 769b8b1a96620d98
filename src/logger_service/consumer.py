"""Durable event consumer for the logger service.

Per-message policy:
- body not UTF-8 JSON object: reject without requeue (dead-lettered at once)
- every callback succeeded: ack
- a callback raised on first delivery: nack with requeue (one retry)
- a callback raised on a redelivery: nack without requeue (dead-lettered)

Known limitations:
- Callbacks run without a timeout. A hung callback holds its message unacked
  and the prefetch window bounds how many such messages can pile up.
- "Already retried" is inferred from the broker's redelivered flag, which is
  also set when a delivery is repeated after a connection loss before ack.
  Such a message gets no application-level retry before dead-lettering.
"""

import json
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

import aio_pika
from aio_pika.abc import AbstractIncomingMessage

from src.common.connection import BrokerConnectionManager
from src.common.exceptions import MalformedMessageError, ProcessingError
from src.common.rabbitmq import TopologyResult

logger = logging.getLogger("logger_service.consumer")

MessageCallback = Callable[[dict[str, Any], "Delivery"], Awaitable[None]]

_SETTLE_ERRORS = (aio_pika.exceptions.AMQPError, ConnectionError, RuntimeError)


@dataclass(frozen=True)
class Delivery:
    """Broker-side properties of one delivery, passed to every callback.

    The publisher always sets correlation_id, message_id and timestamp, so
    callbacks can key idempotent writes on them when the body lacks ids.
    """

    routing_key: str
    correlation_id: Optional[str] = None
    message_id: Optional[str] = None
    timestamp: Optional[datetime] = None
    redelivered: bool = False

    @classmethod
    def from_message(cls, message: AbstractIncomingMessage) -> "Delivery":
        return cls(
            routing_key=message.routing_key or "",
            correlation_id=message.correlation_id,
            message_id=message.message_id,
            timestamp=message.timestamp,
            redelivered=bool(message.redelivered),
        )


class MessageOutcome(str, Enum):
    ACKED = "acked"
    REQUEUED = "requeued"
    DEAD_LETTERED = "dead_lettered"


def decode_body(body: bytes) -> dict[str, Any]:
    """Decode a message body as a UTF-8 JSON object.

    Raises:
        MalformedMessageError: If the body is not UTF-8, not JSON, or not an object
    """
    try:
        payload = json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as e:
        raise MalformedMessageError(f"Undecodable message body: {e}") from e
    if not isinstance(payload, dict):
        raise MalformedMessageError(
            "Message body is not a JSON object", context={"type": type(payload).__name__}
        )
    return payload


class EventConsumer:
    """Consumes the main queue and dispatches payloads to registered callbacks.

    The consume request is (re)issued from a ready hook, so it follows the
    connection manager through reconnects.
    """

    def __init__(self, manager: BrokerConnectionManager):
        self.manager = manager
        self._callbacks: list[MessageCallback] = []
        self._queue: Optional[Any] = None
        self._consumer_tag: Optional[str] = None
        self._started = False
        manager.add_ready_hook(self._on_ready)

    def register(self, callback: MessageCallback) -> None:
        """Add a callback; callbacks run in registration order."""
        self._callbacks.append(callback)

    @property
    def consumer_tag(self) -> Optional[str]:
        return self._consumer_tag

    async def start(self) -> bool:
        """Begin consuming now if connected, otherwise once the manager connects.

        Returns:
            True if consuming started immediately
        """
        self._started = True
        if self.manager.is_connected and self.manager.topology is not None:
            await self._consume(self.manager.topology)
            return True
        return await self.manager.start()

    async def stop(self) -> None:
        """Cancel the consume request; unacked messages return to the queue."""
        self._started = False
        queue, tag = self._queue, self._consumer_tag
        self._queue = None
        self._consumer_tag = None
        if queue is None or tag is None or not self.manager.is_connected:
            return
        try:
            await queue.cancel(tag)
            logger.info(f"Stopped consuming (consumer_tag={tag})")
        except _SETTLE_ERRORS as e:
            logger.warning(f"Error cancelling consumer {tag}: {e}")

    async def _on_ready(self, topology: TopologyResult) -> None:
        if self._started:
            await self._consume(topology)

    async def _consume(self, topology: TopologyResult) -> None:
        self._queue = topology.queue
        self._consumer_tag = await self._queue.consume(self.handle_message, no_ack=False)
        logger.info(
            f"Consuming from {self.manager.topology_spec.queue} "
            f"(consumer_tag={self._consumer_tag}, prefetch={self.manager.topology_spec.prefetch_count})"
        )

    async def handle_message(self, message: AbstractIncomingMessage) -> MessageOutcome:
        """Decode, dispatch and settle one delivery."""
        delivery = Delivery.from_message(message)
        log_extra = {
            "correlation_id": delivery.correlation_id,
            "message_id": delivery.message_id,
            "routing_key": delivery.routing_key,
            "redelivered": delivery.redelivered,
        }

        try:
            payload = decode_body(message.body)
        except MalformedMessageError as e:
            logger.error(f"{e}; dead-lettering without retry", extra=log_extra)
            await self._settle(message.reject, "reject", requeue=False)
            return MessageOutcome.DEAD_LETTERED

        failures: list[str] = []
        for callback in self._callbacks:
            try:
                await callback(payload, delivery)
            except Exception as e:
                name = getattr(callback, "__qualname__", repr(callback))
                logger.error(f"Callback {name} failed: {e}", exc_info=True, extra=log_extra)
                failures.append(f"{name}: {e}")

        if not failures:
            await self._settle(message.ack, "ack")
            return MessageOutcome.ACKED

        error = ProcessingError(
            f"{len(failures)} of {len(self._callbacks)} callbacks failed",
            context={"failures": failures},
        )
        if delivery.redelivered:
            logger.error(f"{error}; already redelivered, dead-lettering", extra=log_extra)
            await self._settle(message.nack, "nack", requeue=False)
            return MessageOutcome.DEAD_LETTERED

        logger.warning(f"{error}; requeueing for one retry", extra=log_extra)
        await self._settle(message.nack, "nack", requeue=True)
        return MessageOutcome.REQUEUED

    async def _settle(self, action: Callable[..., Awaitable[None]], name: str, **kwargs: Any) -> None:
        try:
            await action(**kwargs)
        except _SETTLE_ERRORS as e:
            # The broker redelivers unsettled messages once the channel is back.
            logger.error(f"Failed to {name} message: {e}")
