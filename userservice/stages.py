"""Ordered request-processing stages wrapped around the router.

Each stage is a factory taking the next ASGI application and returning a new
one. :func:`compose` folds a list of stages so that the first entry becomes
the outermost wrapper.
"""

from __future__ import annotations

import logging
import time
from typing import Callable, Sequence

from starlette.responses import JSONResponse
from starlette.types import ASGIApp, Message, Receive, Scope, Send

Stage = Callable[[ASGIApp], ASGIApp]

access_logger = logging.getLogger("userservice.access")
logger = logging.getLogger("userservice.stages")


def compose(app: ASGIApp, stages: Sequence[Stage]) -> ASGIApp:
    """Wrap ``app`` with ``stages``, outermost first."""

    wrapped = app
    for stage in reversed(stages):
        wrapped = stage(wrapped)
    return wrapped


def logging_stage(log: logging.Logger | None = None) -> Stage:
    """Emit one access log line per HTTP request."""

    target = log or access_logger

    def stage(app: ASGIApp) -> ASGIApp:
        async def handle(scope: Scope, receive: Receive, send: Send) -> None:
            if scope["type"] != "http":
                await app(scope, receive, send)
                return

            started = time.perf_counter()
            status_code = 500

            async def capture_status(message: Message) -> None:
                nonlocal status_code
                if message["type"] == "http.response.start":
                    status_code = message["status"]
                await send(message)

            try:
                await app(scope, receive, capture_status)
            finally:
                elapsed_ms = (time.perf_counter() - started) * 1000
                target.info(
                    "%s %s -> %s (%.1f ms)",
                    scope.get("method", "-"),
                    scope.get("path", "-"),
                    status_code,
                    elapsed_ms,
                )

        return handle

    return stage


def recovery_stage(log: logging.Logger | None = None) -> Stage:
    """Turn any escaping exception into a JSON 500 without leaking detail."""

    target = log or logger

    def stage(app: ASGIApp) -> ASGIApp:
        async def handle(scope: Scope, receive: Receive, send: Send) -> None:
            if scope["type"] != "http":
                await app(scope, receive, send)
                return

            response_started = False

            async def track_start(message: Message) -> None:
                nonlocal response_started
                if message["type"] == "http.response.start":
                    response_started = True
                await send(message)

            try:
                await app(scope, receive, track_start)
            except Exception:
                target.exception(
                    "Unhandled error while serving %s %s",
                    scope.get("method", "-"),
                    scope.get("path", "-"),
                )
                if response_started:
                    return
                response = JSONResponse({"error": "internal server error"}, status_code=500)
                await response(scope, receive, send)

        return handle

    return stage


def default_stages() -> list[Stage]:
    return [logging_stage(), recovery_stage()]


__all__ = ["Stage", "compose", "default_stages", "logging_stage", "recovery_stage"]
