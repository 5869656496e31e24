"""In-flight request accounting for the drain phase."""

from __future__ import annotations

import asyncio
import threading

from starlette.types import ASGIApp, Receive, Scope, Send

__all__ = ["InFlightTracker"]


class InFlightTracker:
    """Pure ASGI middleware counting active and cancelled HTTP requests.

    The counters are read from the lifecycle thread while the serving loop
    updates them, so they sit behind a lock.
    """

    __slots__ = ("_active", "_app", "_cancelled", "_lock", "_total")

    def __init__(self, app: ASGIApp) -> None:
        self._app = app
        self._lock = threading.Lock()
        self._active = 0
        self._cancelled = 0
        self._total = 0

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self._app(scope, receive, send)
            return

        with self._lock:
            self._active += 1
            self._total += 1
        try:
            await self._app(scope, receive, send)
        except asyncio.CancelledError:
            with self._lock:
                self._cancelled += 1
            raise
        finally:
            with self._lock:
                self._active -= 1

    @property
    def active(self) -> int:
        """Requests currently being handled."""
        with self._lock:
            return self._active

    @property
    def cancelled(self) -> int:
        """Requests terminated before they finished."""
        with self._lock:
            return self._cancelled

    @property
    def total(self) -> int:
        """Requests admitted since startup."""
        with self._lock:
            return self._total
