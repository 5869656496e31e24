"""Response classes that report failed writes instead of raising them."""

from __future__ import annotations

import logging

import anyio
import anyio.lowlevel
from fastapi.responses import JSONResponse, PlainTextResponse
from starlette.requests import ClientDisconnect
from starlette.types import Receive, Scope, Send

from controlplane.errors import WriteError

__all__ = ["CheckedJSONResponse", "CheckedPlainTextResponse"]

logger = logging.getLogger(__name__)


class _CheckedWrite:
    """Log a ``WriteError`` and abandon the request when the client is gone.

    ASGI servers drop writes to a vanished client silently and report the
    loss through ``receive()`` instead, so the write is raced against an
    ``http.disconnect`` message the same way ``StreamingResponse`` listens for
    one. A disconnect seen before the body is out counts as a failed write.
    Servers that do raise from ``send`` are covered as well.

    One failed write must never reach the serving loop, so it stops here.
    """

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        written = False
        disconnected = False
        reason: str | None = None
        error: Exception | None = None

        async def listen_for_disconnect() -> None:
            nonlocal disconnected
            while True:
                message = await receive()
                if message["type"] == "http.disconnect":
                    disconnected = not written
                    return

        async with anyio.create_task_group() as task_group:
            task_group.start_soon(listen_for_disconnect)
            # Let the listener drain whatever the server has already queued.
            await anyio.lowlevel.checkpoint()
            if not disconnected:
                try:
                    await super().__call__(scope, receive, send)  # type: ignore[misc]
                except (OSError, ClientDisconnect) as exc:
                    reason = str(exc) or type(exc).__name__
                except Exception as exc:
                    error = exc
                else:
                    written = True
            task_group.cancel_scope.cancel()

        if error is not None:
            raise error
        if reason is None and disconnected:
            reason = "client disconnected"
        if reason is not None:
            logger.warning("%s", WriteError(scope.get("path", "?"), reason))


class CheckedJSONResponse(_CheckedWrite, JSONResponse):
    """``application/json`` response with checked writes."""


class CheckedPlainTextResponse(_CheckedWrite, PlainTextResponse):
    """``text/plain`` response with checked writes."""
