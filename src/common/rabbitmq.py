"""RabbitMQ topology declarations for the eventrelay message bus.

This module provides:
- TopologySpec: the exchange/queue/dead-letter layout one service asserts
- ensure_topology(): idempotent declaration of that layout on a channel

Topology Architecture:
- {exchange}: durable topic exchange the producer publishes to
- {queue}: durable queue bound to the exchange on a routing key (producer)
  or a routing-key pattern (consumer)
- {exchange}.dlx: durable topic dead-letter exchange
- {queue}.dead: durable dead-letter queue bound to the DLX

Declarations never assume anything pre-exists. A declaration the broker
rejects because the entity already exists with different arguments is logged
and the existing entity is used as-is.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Optional

import aio_pika
from aio_pika import ExchangeType
from aio_pika.abc import AbstractChannel
from aio_pika.exceptions import ChannelPreconditionFailed

from src.common.exceptions import TopologyConflictError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TopologySpec:
    """Exchange, queue and dead-letter layout for one side of the pipeline."""

    exchange: str
    queue: str
    routing_key: str
    dead_letter_enabled: bool = True
    dead_letter_routing_key: Optional[str] = None
    dead_letter_binding_key: Optional[str] = None
    message_ttl_ms: Optional[int] = None
    prefetch_count: int = 10

    @property
    def dead_letter_exchange(self) -> str:
        return f"{self.exchange}.dlx"

    @property
    def dead_letter_queue(self) -> str:
        return f"{self.queue}.dead"

    @property
    def dead_routing_key(self) -> str:
        return self.dead_letter_routing_key or f"{self.queue}.dead"

    @property
    def dead_binding_key(self) -> str:
        return self.dead_letter_binding_key or self.dead_routing_key

    def queue_arguments(self) -> Optional[dict[str, Any]]:
        """Arguments for the main queue declaration, or None for a plain queue."""
        if not self.dead_letter_enabled:
            return None
        arguments: dict[str, Any] = {
            "x-dead-letter-exchange": self.dead_letter_exchange,
            "x-dead-letter-routing-key": self.dead_routing_key,
        }
        if self.message_ttl_ms:
            arguments["x-message-ttl"] = self.message_ttl_ms
        return arguments


@dataclass
class TopologyResult:
    """Declared broker entities for one (re)connect."""

    exchange: Any
    queue: Any
    dead_letter_exchange: Any = None
    dead_letter_queue: Any = None
    conflicts: list[str] = field(default_factory=list)


async def _assert_exchange(channel: AbstractChannel, name: str) -> Any:
    try:
        return await channel.declare_exchange(
            name,
            ExchangeType.TOPIC,
            durable=True,
            auto_delete=False,
        )
    except ChannelPreconditionFailed as e:
        raise TopologyConflictError(
            f"Exchange {name} already exists with a different definition",
            context={"exchange": name, "broker_reply": str(e)},
        ) from e


async def _assert_queue(
    channel: AbstractChannel, name: str, arguments: Optional[dict[str, Any]]
) -> Any:
    try:
        return await channel.declare_queue(
            name,
            durable=True,
            auto_delete=False,
            arguments=arguments,
        )
    except ChannelPreconditionFailed as e:
        raise TopologyConflictError(
            f"Queue {name} already exists with different arguments",
            context={"queue": name, "arguments": arguments, "broker_reply": str(e)},
        ) from e


async def _reopen_if_closed(channel: AbstractChannel) -> None:
    # A precondition failure closes the channel on the broker side.
    if channel.is_closed:
        await channel.reopen()


async def _declare_exchange(
    channel: AbstractChannel, name: str, conflicts: list[str]
) -> Any:
    logger.info(f"Declaring exchange {name}")
    try:
        return await _assert_exchange(channel, name)
    except TopologyConflictError as e:
        logger.warning(f"{e}; using existing exchange")
        conflicts.append(str(e))
        await _reopen_if_closed(channel)
        return await channel.get_exchange(name, ensure=True)


async def _declare_queue(
    channel: AbstractChannel,
    name: str,
    arguments: Optional[dict[str, Any]],
    conflicts: list[str],
) -> Any:
    logger.info(f"Declaring queue {name}")
    try:
        return await _assert_queue(channel, name, arguments)
    except TopologyConflictError as e:
        logger.warning(f"{e}; using existing queue as-is")
        conflicts.append(str(e))
        await _reopen_if_closed(channel)
        return await channel.declare_queue(name, passive=True)


async def ensure_topology(
    channel: AbstractChannel, spec: TopologySpec
) -> TopologyResult:
    """Declare the exchange, queue and dead-letter layout described by spec.

    All declarations are idempotent - calling this function multiple times with
    the same topology is safe and produces no duplicate bindings.

    Args:
        channel: An open aio_pika channel.
        spec: Layout to assert.

    Returns:
        TopologyResult with the declared exchange and queue objects and any
        conflicts that were tolerated.

    Raises:
        aio_pika.exceptions.AMQPError: If a declaration fails for a reason
            other than a conflicting existing definition.

    Example:
        >>> channel = await connection.channel()
        >>> result = await ensure_topology(channel, config.producer_topology())
        >>> await result.exchange.publish(message, routing_key="data.service.logs")
    """
    conflicts: list[str] = []

    try:
        exchange = await _declare_exchange(channel, spec.exchange, conflicts)

        dead_letter_exchange = None
        dead_letter_queue = None
        if spec.dead_letter_enabled:
            dead_letter_exchange = await _declare_exchange(
                channel, spec.dead_letter_exchange, conflicts
            )
            dead_letter_queue = await _declare_queue(
                channel, spec.dead_letter_queue, None, conflicts
            )
            await dead_letter_queue.bind(
                dead_letter_exchange, routing_key=spec.dead_binding_key
            )
            logger.info(
                f"Dead-letter queue {spec.dead_letter_queue} bound to "
                f"{spec.dead_letter_exchange} on {spec.dead_binding_key}"
            )

        queue = await _declare_queue(channel, spec.queue, spec.queue_arguments(), conflicts)
        await queue.bind(exchange, routing_key=spec.routing_key)

        await channel.set_qos(prefetch_count=spec.prefetch_count)

        logger.info(
            f"Exchange {spec.exchange} and queue {spec.queue} set up "
            f"(binding={spec.routing_key}, prefetch={spec.prefetch_count})"
        )
        return TopologyResult(
            exchange=exchange,
            queue=queue,
            dead_letter_exchange=dead_letter_exchange,
            dead_letter_queue=dead_letter_queue,
            conflicts=conflicts,
        )

    except aio_pika.exceptions.AMQPError as e:
        logger.error(f"Failed to declare topology: {e}", exc_info=True)
        raise
