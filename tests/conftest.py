"""Shared test fixtures for controlplane."""

from __future__ import annotations

import asyncio
import socket
import time
from collections.abc import Callable, Iterator

import pytest
from fastapi import FastAPI

from controlplane.app import create_app
from controlplane.config import Settings
from controlplane.lifecycle import LifecycleManager
from controlplane.responses import CheckedJSONResponse


@pytest.fixture
def settings() -> Settings:
    """Loopback, ephemeral port, short drain deadline."""
    return Settings(host="127.0.0.1", port=0, drain_deadline=2.0, log_level="DEBUG")


@pytest.fixture
def slow_app(settings: Settings) -> FastAPI:
    """The real routing table plus ``/slow?seconds=N`` for drain tests."""
    app = create_app(settings)

    @app.get("/slow", response_class=CheckedJSONResponse)
    async def slow(seconds: float = 5.0) -> dict[str, str]:
        await asyncio.sleep(seconds)
        return {"status": "done"}

    return app


@pytest.fixture
def manager(settings: Settings) -> Iterator[LifecycleManager]:
    """A started manager; shut down at teardown if the test did not."""
    lifecycle = LifecycleManager(settings)
    lifecycle.start()
    yield lifecycle
    lifecycle.shutdown(1.0)


@pytest.fixture
def slow_manager(settings: Settings, slow_app: FastAPI) -> Iterator[LifecycleManager]:
    lifecycle = LifecycleManager(settings, app=slow_app)
    lifecycle.start()
    yield lifecycle
    lifecycle.shutdown(0.5)


@pytest.fixture
def occupied_port() -> Iterator[int]:
    """A loopback port with a foreign listener on it."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    sock.listen(1)
    yield sock.getsockname()[1]
    sock.close()


def url_for(manager: LifecycleManager, path: str = "/health") -> str:
    assert manager.address is not None
    host, port = manager.address
    return f"http://{host}:{port}{path}"


def free_port() -> int:
    """A loopback port with nothing listening on it."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


def wait_until(predicate: Callable[[], bool], timeout: float = 5.0) -> None:
    expires = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() >= expires:
            raise AssertionError(f"condition not met within {timeout}s")
        time.sleep(0.01)
