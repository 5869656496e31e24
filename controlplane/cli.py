from __future__ import annotations

import dataclasses
import logging
import time
from typing import Annotated

import httpx
import typer
from rich.console import Console

from .config import Settings
from .errors import BindError, ConfigError, ForcedShutdownError, ServeError
from .lifecycle import SERVE_EXITED, LifecycleManager
from .log import configure_logging

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_FORCED = 2

logger = logging.getLogger(__name__)
console = Console(highlight=False)
app = typer.Typer(
    help="Liveness service: serve /health until SIGINT/SIGTERM, then drain.",
    no_args_is_help=True,
)


def entrypoint() -> None:
    app()


@app.command()
def serve(
    host: Annotated[str | None, typer.Option(help="Bind address. [env: CONTROLPLANE_HOST]")] = None,
    port: Annotated[
        int | None, typer.Option(help="Bind port, 0 for ephemeral. [env: CONTROLPLANE_PORT]", min=0, max=65535)
    ] = None,
    deadline: Annotated[
        float | None,
        typer.Option(help="Seconds in-flight requests get to finish on shutdown. [env: CONTROLPLANE_DRAIN_DEADLINE]", min=0.0),
    ] = None,
    health_path: Annotated[
        list[str] | None,
        typer.Option("--health-path", help="Health check path; repeat for several. [env: CONTROLPLANE_HEALTH_PATHS]"),
    ] = None,
    log_level: Annotated[str | None, typer.Option(help="Log level. [env: CONTROLPLANE_LOG_LEVEL]")] = None,
    access_log: Annotated[
        bool | None, typer.Option("--access-log/--no-access-log", help="Log every request. [env: CONTROLPLANE_ACCESS_LOG]")
    ] = None,
) -> None:
    """Serve the health check until SIGINT/SIGTERM, then drain and exit."""
    overrides = {
        "host": host,
        "port": port,
        "drain_deadline": deadline,
        "health_paths": tuple(health_path) if health_path else None,
        "log_level": log_level,
        "access_log": access_log,
    }
    try:
        settings = dataclasses.replace(
            Settings.from_env(),
            **{name: value for name, value in overrides.items() if value is not None},
        )
    except ConfigError as exc:
        console.print(f"[red]configuration error:[/red] {exc}")
        raise typer.Exit(EXIT_FAILURE) from exc

    configure_logging(settings.log_level)
    raise typer.Exit(run(LifecycleManager(settings)))


def run(manager: LifecycleManager) -> int:
    """Drive ``manager`` through start, wait, shutdown and map the outcome to an exit code."""
    try:
        manager.start()
    except BindError:
        return EXIT_FAILURE
    except ServeError as exc:
        logger.error("%s", exc)
        return EXIT_FAILURE

    reason = manager.await_termination()
    try:
        manager.shutdown(manager.settings.drain_deadline)
    except ForcedShutdownError:
        return EXIT_FORCED

    if reason == SERVE_EXITED:
        logger.error("server stopped unexpectedly: %s", manager.serve_error)
        return EXIT_FAILURE
    logger.info("stopped")
    return EXIT_OK


@app.command()
def check(
    url: Annotated[str, typer.Option(help="Health endpoint to check.")] = "http://127.0.0.1:8080/health",
    timeout: Annotated[float, typer.Option(help="Per-attempt timeout in seconds.", min=0.1)] = 2.0,
    retries: Annotated[int, typer.Option(help="Attempts before giving up.", min=1)] = 3,
    interval: Annotated[float, typer.Option(help="Pause between attempts in seconds.", min=0.0)] = 1.5,
) -> None:
    """Exit 0 if URL answers 2xx with {"status": "ok"}, else 1. Suitable for HEALTHCHECK."""
    for attempt in range(1, retries + 1):
        try:
            response = httpx.get(url, timeout=timeout)
        except httpx.HTTPError as exc:
            console.print(f"attempt {attempt}/{retries}: {url} unreachable ({exc})")
        else:
            if response.is_success and _reports_ok(response):
                console.print(f"{url}: ok")
                raise typer.Exit(EXIT_OK)
            console.print(f"attempt {attempt}/{retries}: {url} answered {response.status_code}")
        if attempt < retries:
            time.sleep(interval)
    raise typer.Exit(EXIT_FAILURE)


def _reports_ok(response: httpx.Response) -> bool:
    try:
        payload = response.json()
    except ValueError:
        return False
    return isinstance(payload, dict) and payload.get("status") == "ok"
