"""Broker health probe shared by both services.

Runs passive checks (no declare, no mutation) against the exchange, the main
queue and the dead-letter queue on a short-lived channel and caches the
result, so health endpoints never block on a broker round-trip per poll.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from src.common.connection import BROKER_ERRORS, BrokerConnectionManager
from src.common.exceptions import BrokerConnectionError

logger = logging.getLogger(__name__)


class HealthStatus(BaseModel):
    """Result of one broker health check."""

    model_config = ConfigDict(validate_by_name=True)

    status: Literal["up", "down"]
    connection: bool = False
    exchange_ok: bool = Field(default=False, alias="exchangeOk")
    queue_ok: bool = Field(default=False, alias="queueOk")
    dead_letter_ok: bool = Field(default=False, alias="deadLetterOk")
    message_count: int = Field(default=0, alias="messageCount")
    consumer_count: int = Field(default=0, alias="consumerCount")
    dead_letter_count: int = Field(default=0, alias="deadLetterCount")
    last_checked: datetime = Field(alias="lastChecked")
    confirm_mode: bool = Field(default=False, alias="confirmMode")
    degraded: bool = False
    state: str = "disconnected"
    error: Optional[str] = None

    def to_response(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class BrokerHealthProbe:
    """Checks the exchange and queues owned by one connection manager."""

    def __init__(self, manager: BrokerConnectionManager):
        self.manager = manager
        self._last_status: Optional[HealthStatus] = None
        self._task: Optional[asyncio.Task] = None
        self._stopping = asyncio.Event()

    def _down(self, error: Optional[str] = None) -> HealthStatus:
        return HealthStatus(
            status="down",
            connection=self.manager.is_connected,
            last_checked=datetime.now(timezone.utc),
            confirm_mode=self.manager.confirm_mode,
            degraded=self.manager.degraded,
            state=self.manager.state.value,
            error=error,
        )

    async def check_health(self) -> HealthStatus:
        """Run a fresh passive check and cache the result.

        Any failure reports `down` with every structural flag false and all
        counts zero.
        """
        if not self.manager.is_connected:
            self._last_status = self._down("not connected")
            return self._last_status

        spec = self.manager.topology_spec
        channel = None
        try:
            channel = await self.manager.open_channel()
            await channel.get_exchange(spec.exchange, ensure=True)
            queue = await channel.declare_queue(spec.queue, passive=True)

            dead_letter_ok = True
            dead_letter_count = 0
            if spec.dead_letter_enabled:
                dead_letter_queue = await channel.declare_queue(spec.dead_letter_queue, passive=True)
                dead_letter_count = dead_letter_queue.declaration_result.message_count

            status = HealthStatus(
                status="up",
                connection=True,
                exchange_ok=True,
                queue_ok=True,
                dead_letter_ok=dead_letter_ok,
                message_count=queue.declaration_result.message_count,
                consumer_count=queue.declaration_result.consumer_count,
                dead_letter_count=dead_letter_count,
                last_checked=datetime.now(timezone.utc),
                confirm_mode=self.manager.confirm_mode,
                degraded=self.manager.degraded,
                state=self.manager.state.value,
            )
        except BrokerConnectionError as e:
            logger.warning(f"Broker health check failed: {e}")
            status = self._down(str(e))
        except BROKER_ERRORS as e:
            logger.warning(f"Broker health check failed: {e}", exc_info=True)
            status = self._down(str(e))
        finally:
            if channel is not None and not channel.is_closed:
                try:
                    await channel.close()
                except BROKER_ERRORS as e:
                    logger.debug(f"Error closing health-check channel: {e}")

        self._last_status = status
        return status

    async def get_status(self) -> HealthStatus:
        """Return the cached status, checking once if nothing is cached yet."""
        if self._last_status is None:
            return await self.check_health()
        return self._last_status

    @property
    def last_status(self) -> Optional[HealthStatus]:
        return self._last_status

    def start(self, interval: float = 30.0) -> None:
        """Refresh the cached status every `interval` seconds in the background."""
        if self._task is not None and not self._task.done():
            return
        self._stopping.clear()
        self._task = asyncio.get_running_loop().create_task(self._run(interval))

    async def stop(self) -> None:
        self._stopping.set()
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _run(self, interval: float) -> None:
        while not self._stopping.is_set():
            await self.check_health()
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=interval)
            except asyncio.TimeoutError:
                continue
