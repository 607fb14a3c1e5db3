"""Minimal user CRUD service backed by a pooled relational store."""

from __future__ import annotations

from typing import Any

from .config import ServiceConfig, load_config
from .database import Database


def create_app(*args: Any, **kwargs: Any):
    """Factory function that returns the routing application."""

    from .service import create_app as _create_app

    return _create_app(*args, **kwargs)


def build_application(*args: Any, **kwargs: Any):
    """Factory function for the router wrapped in its request stages."""

    from .service import build_application as _build_application

    return _build_application(*args, **kwargs)


__all__ = [
    "Database",
    "ServiceConfig",
    "build_application",
    "create_app",
    "load_config",
]
