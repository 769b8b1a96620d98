"""Command line interface for eventrelay."""

import asyncio
import json
import sys
from typing import Any, Optional

import httpx
import typer

from src.common.config import Config
from src.common.connection import BrokerConnectionManager
from src.common.exceptions import BrokerConnectionError
from src.common.health import BrokerHealthProbe

app = typer.Typer(help="Run and poke the eventrelay data and logger services.")

SERVICES = {
    "data": "src.data_service.main:app",
    "logger": "src.logger_service.main:app",
}


def _manager(config: Config, role: str) -> BrokerConnectionManager:
    if role == "consumer":
        return BrokerConnectionManager.from_config(
            config, config.consumer_topology(), name="consumer", use_confirm_channel=False
        )
    return BrokerConnectionManager.from_config(
        config,
        config.producer_topology(),
        name="producer",
        use_confirm_channel=config.RABBITMQ_USE_CONFIRM_CHANNEL,
    )


async def _publish_once(config: Config, level: str, message: str, metadata: dict[str, Any]) -> bool:
    from src.data_service.publisher import EventPublisher

    manager = _manager(config, "producer")
    try:
        await manager.connect()
        publisher = EventPublisher.from_config(config, manager)
        return await publisher.publish_log(level, message, metadata=metadata)
    finally:
        await manager.close()


async def _check_once(config: Config, role: str) -> dict[str, Any]:
    manager = _manager(config, role)
    try:
        try:
            await manager.connect()
        except BrokerConnectionError as e:
            typer.echo(f"Warning: {e}", err=True)
        status = await BrokerHealthProbe(manager).check_health()
        return status.to_response()
    finally:
        await manager.close()


@app.command()
def serve(
    service: str = typer.Argument(..., help="Service to run: data or logger"),
    host: str = typer.Option("0.0.0.0", help="Bind address"),
    port: int = typer.Option(3000, help="Bind port"),
) -> None:
    """Run one of the services with uvicorn."""
    import uvicorn

    target = SERVICES.get(service)
    if target is None:
        typer.echo(f"Error: unknown service {service!r} (choose data or logger)", err=True)
        raise typer.Exit(code=2)
    uvicorn.run(target, host=host, port=port)


@app.command(name="publish-log")
def publish_log(
    level: str = typer.Argument(..., help="debug, info, warn or error"),
    message: str = typer.Argument(..., help="Log message"),
    metadata: Optional[str] = typer.Option(None, help="Metadata as a JSON object"),
) -> None:
    """Publish one log event and exit 0 if the broker accepted it."""
    try:
        parsed = json.loads(metadata) if metadata else {}
    except json.JSONDecodeError as e:
        typer.echo(f"Error: --metadata is not valid JSON: {e}", err=True)
        raise typer.Exit(code=2)
    if not isinstance(parsed, dict):
        typer.echo("Error: --metadata must be a JSON object", err=True)
        raise typer.Exit(code=2)

    try:
        published = asyncio.run(_publish_once(Config(), level, message, parsed))
    except BrokerConnectionError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(code=1)

    if not published:
        typer.echo("Event not published", err=True)
        raise typer.Exit(code=1)
    typer.echo("Event published")


@app.command(name="logs-day")
def logs_day(
    day: str = typer.Argument(..., help="Day in YYYY-MM-DD format"),
    url: str = typer.Option("http://localhost:3001", help="Logger service base URL"),
) -> None:
    """Print the events a running logger service stored for one day."""
    try:
        response = httpx.get(f"{url}/api/v1/logs/day", params={"date": day}, timeout=10.0)
        body = response.json()
    except httpx.HTTPError as e:
        typer.echo(f"Error: logger service unreachable: {e}", err=True)
        raise typer.Exit(code=1)
    except ValueError:
        typer.echo(
            f"Error: logger service returned a non-JSON response (HTTP {response.status_code})",
            err=True,
        )
        raise typer.Exit(code=1)

    typer.echo(json.dumps(body, indent=2))
    if response.status_code != 200 or not body.get("success"):
        raise typer.Exit(code=1)


@app.command()
def health(
    role: str = typer.Option("producer", help="Topology to check: producer or consumer"),
) -> None:
    """Print a fresh broker health check; exit 1 when the broker is down."""
    result = asyncio.run(_check_once(Config(), role))
    typer.echo(json.dumps(result, indent=2))
    if result["status"] != "up":
        raise typer.Exit(code=1)


def main(argv: list[str] | None = None) -> Any:
    """Entry point for the eventrelay console script."""
    if argv is None:
        argv = sys.argv[1:]
    return app(args=argv, prog_name="eventrelay")
