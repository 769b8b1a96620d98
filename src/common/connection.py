"""Broker connection ownership shared by the producer and the consumer.

Provides:
- ConnectionState: lifecycle states reported in health output
- backoff_delay_ms(): exponential reconnect delay with an upper bound
- BrokerConnectionManager: one connection + one role channel, topology
  assertion on every (re)connect, bounded reconnects, confirm-channel fallback
"""

import asyncio
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Optional
from urllib.parse import urlsplit, urlunsplit

import aio_pika

from src.common.config import Config
from src.common.exceptions import BrokerConnectionError
from src.common.rabbitmq import TopologyResult, TopologySpec, ensure_topology

logger = logging.getLogger(__name__)

ReadyHook = Callable[[TopologyResult], Awaitable[None]]

BROKER_ERRORS = (aio_pika.exceptions.AMQPError, ConnectionError, OSError, RuntimeError)


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    FAILED = "failed"
    CLOSED = "closed"


def backoff_delay_ms(attempt: int, base_ms: int = 1000, max_ms: int = 30000) -> int:
    """Delay before reconnect attempt number `attempt` (0-based)."""
    return min(base_ms * (2**attempt), max_ms)


def redact_url(url: str) -> str:
    """Hide the password part of a broker URL for log output."""
    parts = urlsplit(url)
    if not parts.password:
        return url
    netloc = f"{parts.username}:***@{parts.hostname}"
    if parts.port:
        netloc += f":{parts.port}"
    return urlunsplit(parts._replace(netloc=netloc))


class BrokerConnectionManager:
    """Owns one AMQP connection and one channel for a single role.

    The producer and the consumer each create their own manager, so they never
    share a channel. Topology is re-asserted on every successful (re)connect and
    ready hooks run afterwards (the consumer re-issues its consume there).

    Reconnects are driven here rather than by aio_pika's robust connection so
    the attempt bound and the FAILED state stay observable.
    """

    def __init__(
        self,
        url: str,
        topology: TopologySpec,
        *,
        name: str = "broker",
        use_confirm_channel: bool = True,
        max_reconnect_attempts: int = 10,
        reconnect_delay_base: int = 1000,
        reconnect_delay_max: int = 30000,
        connect_timeout: float = 10.0,
        connect_factory: Optional[Callable[..., Awaitable[Any]]] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ):
        """Initialize the manager without connecting.

        Args:
            url: AMQP URL of the broker
            topology: Exchange/queue layout asserted after each connect
            name: Role name used in log messages ("producer", "consumer")
            use_confirm_channel: Request publisher confirms on the role channel
            max_reconnect_attempts: Attempts before the state becomes FAILED
            reconnect_delay_base: Base backoff delay in milliseconds
            reconnect_delay_max: Backoff ceiling in milliseconds
            connect_timeout: Seconds to wait for the transport connection
            connect_factory: Replacement for aio_pika.connect (tests)
            sleep: Replacement for asyncio.sleep (tests)
        """
        self.url = url
        self.topology_spec = topology
        self.name = name
        self.use_confirm_channel = use_confirm_channel
        self.max_reconnect_attempts = max_reconnect_attempts
        self.reconnect_delay_base = reconnect_delay_base
        self.reconnect_delay_max = reconnect_delay_max
        self.connect_timeout = connect_timeout

        self._connect_factory = connect_factory or aio_pika.connect
        self._sleep = sleep or asyncio.sleep

        self._connection: Optional[Any] = None
        self._channel: Optional[Any] = None
        self._topology: Optional[TopologyResult] = None
        self._state = ConnectionState.DISCONNECTED
        self._reconnect_attempts = 0
        self._reconnect_task: Optional[asyncio.Task] = None
        self._ready_hooks: list[ReadyHook] = []
        self._confirm_mode = False
        self._degraded = False
        self._closing = False

        self.logger = logging.getLogger(f"broker.{name}")

    @classmethod
    def from_config(
        cls, config: Config, topology: TopologySpec, *, name: str, use_confirm_channel: bool, **kwargs: Any
    ) -> "BrokerConnectionManager":
        return cls(
            config.RABBITMQ_URL,
            topology,
            name=name,
            use_confirm_channel=use_confirm_channel,
            max_reconnect_attempts=config.RABBITMQ_MAX_RECONNECT_ATTEMPTS,
            reconnect_delay_base=config.RABBITMQ_RECONNECT_DELAY_BASE,
            reconnect_delay_max=config.RABBITMQ_RECONNECT_DELAY_MAX,
            connect_timeout=config.RABBITMQ_CONNECT_TIMEOUT,
            **kwargs,
        )

    # Observable state

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return (
            self._state is ConnectionState.CONNECTED
            and self._connection is not None
            and not self._connection.is_closed
            and self._channel is not None
            and not self._channel.is_closed
        )

    @property
    def reconnect_attempts(self) -> int:
        return self._reconnect_attempts

    @property
    def confirm_mode(self) -> bool:
        return self._confirm_mode

    @property
    def degraded(self) -> bool:
        return self._degraded

    @property
    def topology(self) -> Optional[TopologyResult]:
        return self._topology

    @property
    def channel(self) -> Optional[Any]:
        return self._channel

    def add_ready_hook(self, hook: ReadyHook) -> None:
        """Register a coroutine run after every successful (re)connect."""
        self._ready_hooks.append(hook)

    # Lifecycle

    async def start(self) -> bool:
        """Connect once; on failure schedule background reconnects instead of raising.

        Returns:
            True if the first connect succeeded
        """
        try:
            await self.connect()
            return True
        except BrokerConnectionError as e:
            self.logger.warning(f"Initial connect failed, retrying in background: {e}")
            self._schedule_reconnect("initial connect failed")
            return False

    async def connect(self) -> None:
        """Open the connection and role channel, then assert topology.

        Raises:
            BrokerConnectionError: If the broker is unreachable, rejects the
                credentials, or topology setup fails
        """
        if self._closing:
            raise BrokerConnectionError("Connection manager is closed", context={"role": self.name})

        await self._establish()

        # An explicit successful connect supersedes any pending retry.
        task = self._reconnect_task
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
        self._reconnect_task = None

    async def close(self) -> None:
        """Stop reconnecting and close the channel and connection. Idempotent."""
        if self._state is ConnectionState.CLOSED:
            return
        self._closing = True

        task = self._reconnect_task
        self._reconnect_task = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        await self._teardown()
        self._state = ConnectionState.CLOSED
        self.logger.info("Broker connection closed")

    async def open_channel(self) -> Any:
        """Open a short-lived extra channel on the current connection.

        Raises:
            BrokerConnectionError: If there is no open connection
        """
        if self._connection is None or self._connection.is_closed:
            raise BrokerConnectionError("No open broker connection", context={"role": self.name})
        try:
            return await self._connection.channel(publisher_confirms=False)
        except BROKER_ERRORS as e:
            raise BrokerConnectionError(f"Cannot open channel: {e}", context={"role": self.name}) from e

    # Internals

    async def _establish(self) -> None:
        if self._state is not ConnectionState.RECONNECTING:
            self._state = ConnectionState.CONNECTING
        await self._teardown()

        safe_url = redact_url(self.url)
        self.logger.info(f"Connecting to RabbitMQ at {safe_url}")
        try:
            connection = await self._connect_factory(self.url, timeout=self.connect_timeout)
        except BROKER_ERRORS as e:
            self._mark_down()
            raise BrokerConnectionError(
                f"Cannot connect to broker: {e}", context={"url": safe_url, "role": self.name}
            ) from e

        try:
            channel = await self._open_role_channel(connection)
            topology = await ensure_topology(channel, self.topology_spec)
        except BROKER_ERRORS as e:
            await self._close_quietly(connection)
            self._mark_down()
            raise BrokerConnectionError(
                f"Broker setup failed: {e}", context={"url": safe_url, "role": self.name}
            ) from e

        self._connection = connection
        self._channel = channel
        self._topology = topology
        self._state = ConnectionState.CONNECTED

        for hook in self._ready_hooks:
            try:
                await hook(topology)
            except BROKER_ERRORS as e:
                self.logger.error(f"Ready hook failed: {e}", exc_info=True)
                self._connection = None
                self._channel = None
                await self._close_quietly(connection)
                self._mark_down()
                raise BrokerConnectionError(
                    f"Broker setup failed: {e}", context={"url": safe_url, "role": self.name}
                ) from e

        connection.close_callbacks.add(self._on_closed_callback(connection, "connection"))
        channel.close_callbacks.add(self._on_closed_callback(connection, "channel"))

        self._reconnect_attempts = 0
        self.logger.info(
            f"Connected to RabbitMQ (confirm_mode={self._confirm_mode}, degraded={self._degraded})"
        )

    async def _open_role_channel(self, connection: Any) -> Any:
        if self.use_confirm_channel:
            try:
                channel = await connection.channel(publisher_confirms=True)
                self._confirm_mode = True
                self._degraded = False
                return channel
            except BROKER_ERRORS as e:
                self.logger.warning(f"Confirm channel unavailable, using a regular channel: {e}")
                self._degraded = True
        else:
            self._degraded = False

        channel = await connection.channel(publisher_confirms=False)
        self._confirm_mode = False
        return channel

    def _on_closed_callback(self, connection: Any, what: str) -> Callable[..., None]:
        def on_closed(sender: Any, exc: Optional[BaseException] = None) -> None:
            # Stale callbacks from a replaced connection are ignored.
            if self._closing or connection is not self._connection:
                return
            self.logger.warning(f"RabbitMQ {what} closed: {exc}")
            self._mark_down()
            self._schedule_reconnect(f"{what} closed")

        return on_closed

    def _mark_down(self) -> None:
        if self._state is ConnectionState.CONNECTED or self._state is ConnectionState.CONNECTING:
            self._state = ConnectionState.DISCONNECTED

    def _schedule_reconnect(self, reason: str) -> None:
        if self._closing:
            return
        if self._reconnect_task is not None and not self._reconnect_task.done():
            return
        self._state = ConnectionState.RECONNECTING
        self.logger.info(f"Scheduling reconnect: {reason}")
        self._reconnect_task = asyncio.get_running_loop().create_task(self._reconnect_loop())

    async def _reconnect_loop(self) -> None:
        try:
            while self._reconnect_attempts < self.max_reconnect_attempts:
                delay_ms = backoff_delay_ms(
                    self._reconnect_attempts, self.reconnect_delay_base, self.reconnect_delay_max
                )
                self._reconnect_attempts += 1
                self.logger.info(
                    f"Reconnect attempt {self._reconnect_attempts}/{self.max_reconnect_attempts} "
                    f"in {delay_ms}ms"
                )
                await self._sleep(delay_ms / 1000)
                if self._closing:
                    return

                self._state = ConnectionState.RECONNECTING
                try:
                    await self._establish()
                    return
                except BrokerConnectionError as e:
                    self.logger.warning(f"Reconnect attempt {self._reconnect_attempts} failed: {e}")

            self._state = ConnectionState.FAILED
            self.logger.error(
                f"Broker unavailable after {self._reconnect_attempts} reconnect attempts"
            )
        finally:
            if self._reconnect_task is asyncio.current_task():
                self._reconnect_task = None

    async def _teardown(self) -> None:
        channel, connection = self._channel, self._connection
        self._channel = None
        self._connection = None
        if channel is not None and not channel.is_closed:
            try:
                await channel.close()
            except BROKER_ERRORS as e:
                self.logger.debug(f"Error closing channel: {e}")
        if connection is not None:
            await self._close_quietly(connection)

    async def _close_quietly(self, connection: Any) -> None:
        if connection.is_closed:
            return
        try:
            await connection.close()
        except BROKER_ERRORS as e:
            self.logger.debug(f"Error closing connection: {e}")
