"""FastAPI application for the data service (event producer).

Startup: connect the producer's broker connection (retrying in the background
when the broker is down), start the health probe.
Shutdown: stop the probe and close the connection.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from src.common.config import Config
from src.common.connection import BrokerConnectionManager
from src.common.health import BrokerHealthProbe
from src.data_service import api
from src.data_service.publisher import EventPublisher

# Load configuration
config = Config()

# Configure logging
logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Own the producer connection for the lifetime of the app."""
    logger.info(f"Starting {config.SERVICE_NAME}")

    manager = BrokerConnectionManager.from_config(
        config,
        config.producer_topology(),
        name="producer",
        use_confirm_channel=config.RABBITMQ_USE_CONFIRM_CHANNEL,
    )
    publisher = EventPublisher.from_config(config, manager)
    probe = BrokerHealthProbe(manager)

    if not await manager.start():
        logger.warning("RabbitMQ unavailable at startup; events will not be published until it recovers")
    probe.start(config.HEALTH_CHECK_INTERVAL_SECONDS)

    app.state.connection_manager = manager
    app.state.publisher = publisher
    app.state.health_probe = probe
    app.dependency_overrides[api.get_publisher] = lambda: publisher
    app.dependency_overrides[api.get_health_probe] = lambda: probe

    yield

    logger.info(f"Shutting down {config.SERVICE_NAME}")
    await probe.stop()
    await manager.close()


app = FastAPI(title="eventrelay data service", lifespan=lifespan)
app.include_router(api.router)
