# src/meshgate/api/public.py
from __future__ import annotations

import socket
from typing import Optional

from fastapi import FastAPI
from fastapi.responses import PlainTextResponse

from meshgate.api.proxy import ALL_METHODS


def create_public_app(*, hostname: Optional[str] = None) -> FastAPI:
    """Placeholder for the platform's public port.

    The host platform stops a process that does not answer on its assigned
    port, but the protected backend must only be reachable over the overlay
    network. This app answers every path with a static greeting and nothing
    else.
    """
    name = hostname or socket.gethostname()
    greeting = f"Welcome! Hello from {name}"

    app = FastAPI(title="meshgate public", docs_url=None, redoc_url=None, openapi_url=None)

    @app.api_route("/{path:path}", methods=ALL_METHODS, include_in_schema=False)
    async def welcome(path: str) -> PlainTextResponse:
        return PlainTextResponse(greeting)

    return app
