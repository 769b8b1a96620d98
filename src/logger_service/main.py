"""FastAPI application for the logger service (event consumer).

Startup: create tables, wire consumer -> ingestor -> store, start consuming
(retrying in the background when the broker is down), start the health probe.
Shutdown: stop consuming, stop the probe, close the connection.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from src.common.config import Config
from src.common.connection import BrokerConnectionManager
from src.common.database import SessionLocal, init_db
from src.common.health import BrokerHealthProbe
from src.logger_service import api
from src.logger_service.consumer import EventConsumer
from src.logger_service.ingest import EventIngestor
from src.logger_service.store import LogStore

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
    """Own the consumer connection and log store for the lifetime of the app."""
    logger.info("Starting logger service")
    logger.info(f"Database: {config.DATABASE_URL}")

    init_db()
    store = LogStore(SessionLocal)

    manager = BrokerConnectionManager.from_config(
        config,
        config.consumer_topology(),
        name="consumer",
        use_confirm_channel=False,
    )
    consumer = EventConsumer(manager)
    consumer.register(EventIngestor(store))
    probe = BrokerHealthProbe(manager)

    if not await consumer.start():
        logger.warning("RabbitMQ unavailable at startup; consuming starts when it recovers")
    probe.start(config.HEALTH_CHECK_INTERVAL_SECONDS)

    app.state.connection_manager = manager
    app.state.consumer = consumer
    app.state.log_store = store
    app.state.health_probe = probe
    app.dependency_overrides[api.get_log_store] = lambda: store
    app.dependency_overrides[api.get_health_probe] = lambda: probe

    yield

    logger.info("Shutting down logger service")
    await consumer.stop()
    await probe.stop()
    await manager.close()


app = FastAPI(title="eventrelay logger service", lifespan=lifespan)
app.include_router(api.router)
