"""Health check route."""

from __future__ import annotations

from collections.abc import Iterable
from typing import Literal

from fastapi import FastAPI
from pydantic import BaseModel, Field
from starlette.types import Receive, Scope, Send

from controlplane.config import DEFAULT_HEALTH_PATHS
from controlplane.responses import CheckedJSONResponse

__all__ = ["HealthEndpoint", "HealthResponse", "add_health_routes", "health_check"]


class HealthResponse(BaseModel):
    status: Literal["ok"] = Field(
        default="ok", description="Service status marker for external monitors."
    )


async def health_check() -> HealthResponse:
    """Report the service as healthy.

    Method, headers and body are never inspected: once the listener is up the
    check succeeds.
    """
    return HealthResponse()


class HealthEndpoint:
    """ASGI endpoint serving :func:`health_check` for every request method.

    Mounted as a plain ASGI app so routing never matches on the method, which
    a function endpoint would.
    """

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        payload = await health_check()
        response = CheckedJSONResponse(payload.model_dump())
        await response(scope, receive, send)


def add_health_routes(app: FastAPI, paths: Iterable[str] = DEFAULT_HEALTH_PATHS) -> None:
    """Answer every request on each of ``paths`` with ``{"status": "ok"}``."""
    endpoint = HealthEndpoint()
    for path in paths:
        app.add_route(path, endpoint, name=f"health:{path}", include_in_schema=False)
