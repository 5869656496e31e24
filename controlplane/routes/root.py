"""Root placeholder route."""

from __future__ import annotations

from fastapi import FastAPI
from starlette.types import Receive, Scope, Send

from controlplane.responses import CheckedPlainTextResponse

__all__ = ["ROOT_BODY", "RootEndpoint", "add_root_route"]

ROOT_BODY = "controlplane OK\n"


class RootEndpoint:
    """Fixed text/plain body for any request method on ``/``."""

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        await CheckedPlainTextResponse(ROOT_BODY)(scope, receive, send)


def add_root_route(app: FastAPI) -> None:
    app.add_route("/", RootEndpoint(), name="root", include_in_schema=False)
