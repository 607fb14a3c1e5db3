from __future__ import annotations

import logging
from typing import List

import anyio
import pytest
from fastapi.testclient import TestClient
from starlette.responses import JSONResponse, PlainTextResponse
from starlette.types import ASGIApp, Receive, Scope, Send

from userservice.stages import compose, logging_stage, recovery_stage


async def _ok_app(scope: Scope, receive: Receive, send: Send) -> None:
    response = PlainTextResponse("ok")
    await response(scope, receive, send)


async def _failing_app(scope: Scope, receive: Receive, send: Send) -> None:
    raise RuntimeError("database password is hunter2")


async def _fails_after_start(scope: Scope, receive: Receive, send: Send) -> None:
    await send({"type": "http.response.start", "status": 200, "headers": []})
    raise RuntimeError("lost mid-stream")


def _recording_stage(name: str, calls: List[str]):
    def stage(app: ASGIApp) -> ASGIApp:
        async def handle(scope: Scope, receive: Receive, send: Send) -> None:
            calls.append(f"enter {name}")
            await app(scope, receive, send)
            calls.append(f"exit {name}")

        return handle

    return stage


def test_compose_wraps_stages_outermost_first() -> None:
    calls: List[str] = []
    app = compose(_ok_app, [_recording_stage("first", calls), _recording_stage("second", calls)])

    response = TestClient(app).get("/")

    assert response.text == "ok"
    assert calls == ["enter first", "enter second", "exit second", "exit first"]


def test_compose_without_stages_returns_app() -> None:
    assert compose(_ok_app, []) is _ok_app


def test_recovery_stage_returns_generic_json_error(caplog: pytest.LogCaptureFixture) -> None:
    app = compose(_failing_app, [recovery_stage()])

    with caplog.at_level(logging.ERROR, logger="userservice.stages"):
        response = TestClient(app).get("/users")

    assert response.status_code == 500
    assert response.json() == {"error": "internal server error"}
    assert "hunter2" not in response.text
    assert "Unhandled error while serving GET /users" in caplog.text


def test_recovery_stage_does_not_send_a_second_response() -> None:
    sent: List[dict] = []
    app = recovery_stage()(_fails_after_start)

    async def receive() -> dict:
        return {"type": "http.request", "body": b"", "more_body": False}

    async def send(message: dict) -> None:
        sent.append(message)

    anyio.run(app, {"type": "http", "method": "GET", "path": "/"}, receive, send)

    assert [message["type"] for message in sent] == ["http.response.start"]


def test_logging_stage_records_method_path_and_status(caplog: pytest.LogCaptureFixture) -> None:
    async def created(scope: Scope, receive: Receive, send: Send) -> None:
        await JSONResponse({"id": 1}, status_code=201)(scope, receive, send)

    app = compose(created, [logging_stage()])

    with caplog.at_level(logging.INFO, logger="userservice.access"):
        TestClient(app).post("/users")

    assert any("POST /users -> 201" in record.getMessage() for record in caplog.records)
