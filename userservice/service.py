"""HTTP API for user CRUD operations and orchestration probes."""

from __future__ import annotations

import logging
import re
from typing import Any, Callable, Dict, List, Optional, Sequence, TypeVar

import anyio
from fastapi import FastAPI, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, EmailStr, TypeAdapter, field_validator
from pydantic import ValidationError as PydanticValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.types import ASGIApp

from .config import ServiceConfig
from .database import Database
from .errors import ConnectivityError, NotFoundError, StoreError, ValidationError, WriteConflictError
from .models import User
from .stages import Stage, compose, default_stages

logger = logging.getLogger("userservice.service")

T = TypeVar("T")

_ID_PATTERN = re.compile(r"[+-]?[0-9]+")
_INT64_MIN = -(2**63)
_INT64_MAX = 2**63 - 1

_EMAIL_ADAPTER = TypeAdapter(EmailStr)

DEFAULT_PROBE_TIMEOUT = 1.0
DEFAULT_REQUEST_TIMEOUT = 10.0


class UserPayload(BaseModel):
    """Request body for create and update; values are stored exactly as sent."""

    name: str
    email: str

    @field_validator("name")
    @classmethod
    def _require_name(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("name must not be blank")
        return value

    @field_validator("email")
    @classmethod
    def _check_email(cls, value: str) -> str:
        check_email(value)
        return value


class UserResponse(BaseModel):
    id: int
    name: str
    email: str


class CreatedResponse(BaseModel):
    id: int


def check_email(value: str) -> None:
    """Raise ValueError unless ``value`` has the shape of an email address."""

    try:
        _EMAIL_ADAPTER.validate_python(value)
    except PydanticValidationError as exc:
        raise ValueError(f"{value!r} is not a valid email address") from exc


def parse_user_id(raw: str) -> int:
    """Parse a path identifier as a signed 64-bit decimal integer."""

    if not _ID_PATTERN.fullmatch(raw):
        raise ValidationError("invalid user id")
    value = int(raw)
    if not _INT64_MIN <= value <= _INT64_MAX:
        raise ValidationError("invalid user id")
    return value


def _user_to_response(user: User) -> UserResponse:
    return UserResponse(id=user.id, name=user.name, email=user.email)


async def _call_store(func: Callable[..., T], *args: Any, timeout: float) -> T:
    """Run a blocking store call in a worker thread, bounded by ``timeout``."""

    try:
        with anyio.fail_after(timeout):
            return await anyio.to_thread.run_sync(func, *args, abandon_on_cancel=True)
    except TimeoutError as exc:
        raise ConnectivityError(f"Store call did not finish within {timeout:.1f}s") from exc


def _error_response(status_code: int, message: str, headers: Optional[Dict[str, str]] = None) -> JSONResponse:
    return JSONResponse({"error": message}, status_code=status_code, headers=headers)


def register_exception_handlers(app: FastAPI) -> None:
    """Render every error as a small ``{"error": ...}`` JSON object."""

    async def handle_request_validation(request: Request, exc: RequestValidationError) -> JSONResponse:
        return _error_response(status.HTTP_400_BAD_REQUEST, "invalid payload")

    async def handle_validation(request: Request, exc: ValidationError) -> JSONResponse:
        return _error_response(status.HTTP_400_BAD_REQUEST, str(exc) or "invalid request")

    async def handle_not_found(request: Request, exc: NotFoundError) -> JSONResponse:
        return _error_response(status.HTTP_404_NOT_FOUND, "user not found")

    async def handle_http_exception(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        return _error_response(exc.status_code, str(exc.detail).lower(), getattr(exc, "headers", None))

    async def handle_unexpected(request: Request, exc: Exception) -> JSONResponse:
        # The recovery stage logs the exception once it propagates.
        return _error_response(status.HTTP_500_INTERNAL_SERVER_ERROR, "internal server error")

    app.add_exception_handler(RequestValidationError, handle_request_validation)
    app.add_exception_handler(ValidationError, handle_validation)
    app.add_exception_handler(NotFoundError, handle_not_found)
    app.add_exception_handler(StarletteHTTPException, handle_http_exception)
    app.add_exception_handler(Exception, handle_unexpected)


def register_routes(
    app: FastAPI,
    database: Database,
    *,
    probe_timeout: float,
    request_timeout: float,
    log: logging.Logger,
) -> None:
    """Expose the probe and user endpoints on the provided application."""

    @app.get("/healthz")
    async def healthcheck() -> Dict[str, str]:
        return {"status": "healthy"}

    @app.get("/readyz")
    async def readiness() -> Any:
        try:
            with anyio.fail_after(probe_timeout):
                await anyio.to_thread.run_sync(database.ping, abandon_on_cancel=True)
        except TimeoutError:
            log.warning("Readiness probe timed out after %.1fs", probe_timeout)
            return JSONResponse({"ready": False}, status_code=status.HTTP_503_SERVICE_UNAVAILABLE)
        except StoreError as exc:
            log.warning("Readiness probe failed: %s", exc)
            return JSONResponse({"ready": False}, status_code=status.HTTP_503_SERVICE_UNAVAILABLE)
        return {"ready": True}

    @app.get("/users", response_model=List[UserResponse])
    async def list_users() -> List[UserResponse]:
        try:
            users = await _call_store(database.list_users, timeout=request_timeout)
        except StoreError as exc:
            log.error("Failed to fetch users", exc_info=exc)
            raise HTTPException(status_code=500, detail="failed to fetch users") from exc
        return [_user_to_response(user) for user in users]

    @app.get("/users/{user_id}", response_model=UserResponse)
    async def get_user(user_id: str) -> UserResponse:
        identifier = parse_user_id(user_id)
        try:
            user = await _call_store(database.get_user, identifier, timeout=request_timeout)
        except StoreError as exc:
            log.error("Failed to fetch user %s", identifier, exc_info=exc)
            raise HTTPException(status_code=500, detail="failed to fetch user") from exc
        if user is None:
            raise NotFoundError(f"User {identifier} not found")
        return _user_to_response(user)

    @app.post("/users", status_code=status.HTTP_201_CREATED, response_model=CreatedResponse)
    async def create_user(payload: UserPayload) -> CreatedResponse:
        try:
            user_id = await _call_store(
                database.create_user, payload.name, payload.email, timeout=request_timeout
            )
        except WriteConflictError as exc:
            log.error("Write conflict while creating user", exc_info=exc)
            raise HTTPException(status_code=500, detail="failed to create user") from exc
        except StoreError as exc:
            log.error("Failed to create user", exc_info=exc)
            raise HTTPException(status_code=500, detail="failed to create user") from exc

        log.info("Created user %s", user_id)
        return CreatedResponse(id=user_id)

    @app.put("/users/{user_id}")
    async def update_user(user_id: str, payload: UserPayload) -> Dict[str, bool]:
        identifier = parse_user_id(user_id)
        try:
            await _call_store(
                database.update_user,
                identifier,
                payload.name,
                payload.email,
                timeout=request_timeout,
            )
        except WriteConflictError as exc:
            log.error("Write conflict while updating user %s", identifier, exc_info=exc)
            raise HTTPException(status_code=500, detail="failed to update user") from exc
        except StoreError as exc:
            log.error("Failed to update user %s", identifier, exc_info=exc)
            raise HTTPException(status_code=500, detail="failed to update user") from exc
        return {"updated": True}

    @app.delete("/users/{user_id}")
    async def delete_user(user_id: str) -> Dict[str, bool]:
        identifier = parse_user_id(user_id)
        try:
            await _call_store(database.delete_user, identifier, timeout=request_timeout)
        except StoreError as exc:
            log.error("Failed to delete user %s", identifier, exc_info=exc)
            raise HTTPException(status_code=500, detail="failed to delete user") from exc

        log.info("Deleted user %s", identifier)
        return {"deleted": True}


def create_app(
    *,
    database: Database,
    config: ServiceConfig | None = None,
    probe_timeout: float | None = None,
    request_timeout: float | None = None,
    log: logging.Logger | None = None,
) -> FastAPI:
    """Instantiate the routing application around an injected database."""

    if probe_timeout is None:
        probe_timeout = config.probe_timeout if config else DEFAULT_PROBE_TIMEOUT
    if request_timeout is None:
        request_timeout = config.request_timeout if config else DEFAULT_REQUEST_TIMEOUT

    app = FastAPI(
        title="User Service",
        version="0.1.0",
        description="Minimal CRUD API over a pooled relational store.",
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )
    app.state.database = database
    app.state.config = config

    register_exception_handlers(app)
    register_routes(
        app,
        database,
        probe_timeout=probe_timeout,
        request_timeout=request_timeout,
        log=log or logger,
    )
    return app


def build_application(
    *,
    database: Database,
    config: ServiceConfig | None = None,
    stages: Sequence[Stage] | None = None,
    **options: Any,
) -> ASGIApp:
    """Return the router wrapped in the request-processing stages."""

    router = create_app(database=database, config=config, **options)
    return compose(router, default_stages() if stages is None else stages)


__all__ = [
    "CreatedResponse",
    "UserPayload",
    "UserResponse",
    "build_application",
    "create_app",
    "parse_user_id",
    "register_exception_handlers",
    "register_routes",
]
