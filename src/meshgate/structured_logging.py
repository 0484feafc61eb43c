# src/meshgate/structured_logging.py
from __future__ import annotations

import json
import logging
import os
import sys
import time
import uuid
from typing import Any, Dict, Optional

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

Json = Dict[str, Any]


def _now_ms() -> int:
    return int(time.time() * 1000)


def _falsy(v: Optional[str]) -> bool:
    return (v or "").strip().lower() in {"0", "false", "no", "off"}


def configure_structured_logging() -> None:
    """Configure stdlib logging for JSONL output (stdout).

    - Level from MESHGATE_LOG_LEVEL (default INFO).
    - Safe to call multiple times.
    """
    level_name = (os.environ.get("MESHGATE_LOG_LEVEL") or "INFO").strip().upper()
    level = getattr(logging, level_name, logging.INFO)

    root = logging.getLogger()
    if getattr(root, "_meshgate_configured", False):  # type: ignore[attr-defined]
        root.setLevel(level)
        return

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter("%(message)s"))

    root.handlers = [handler]
    root.setLevel(level)
    setattr(root, "_meshgate_configured", True)  # type: ignore[attr-defined]


def log_event(logger: logging.Logger, event: str, *, level: int = logging.INFO, **fields: Any) -> None:
    payload: Json = {"ts_ms": _now_ms(), "event": str(event)}
    payload.update(fields)
    try:
        logger.log(level, json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False))
    except (TypeError, ValueError):
        parts = [f"event={event}"] + [f"{k}={fields.get(k)!r}" for k in sorted(fields.keys())]
        logger.log(level, " ".join(parts))


class RequestLogMiddleware(BaseHTTPMiddleware):
    """One `http_request` line per request.

    The proxy handler stores the resolved login on `request.state.peer_login`;
    it is logged as `user` (null when admission failed before resolution).
    Set MESHGATE_LOG_REQUESTS=0 to turn the lines off.
    """

    def __init__(self, app, *, logger_name: str = "meshgate.http") -> None:
        super().__init__(app)
        self._enabled = not _falsy(os.environ.get("MESHGATE_LOG_REQUESTS"))
        self._logger = logging.getLogger(logger_name)

    async def dispatch(self, request: Request, call_next):
        if not self._enabled:
            return await call_next(request)

        started = time.monotonic()
        request.state.request_id = request.headers.get("x-request-id") or uuid.uuid4().hex
        status: Optional[int] = None
        err: Optional[str] = None

        try:
            response: Response = await call_next(request)
            status = response.status_code
            return response
        except Exception as e:
            err = f"{e.__class__.__name__}: {e}"
            raise
        finally:
            peer = request.client
            log_event(
                self._logger,
                "http_request",
                level=logging.INFO if err is None else logging.ERROR,
                request_id=request.state.request_id,
                method=request.method,
                path=request.url.path,
                status=status if status is not None else 500,
                duration_ms=int((time.monotonic() - started) * 1000),
                peer=f"{peer.host}:{peer.port}" if peer else None,
                user=getattr(request.state, "peer_login", None),
                error=err,
            )
