"""Pooled relational storage for user records."""
from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional

from sqlalchemy import (
    Column,
    DateTime,
    Integer,
    MetaData,
    Table,
    Text,
    create_engine,
    delete,
    func,
    insert,
    select,
    text,
    update,
)
from sqlalchemy.engine import Engine, Row
from sqlalchemy.engine.url import make_url
from sqlalchemy.exc import (
    ArgumentError,
    DBAPIError,
    IntegrityError,
    InterfaceError,
    OperationalError,
    SQLAlchemyError,
)

from .errors import (
    ConfigurationError,
    ConnectivityError,
    NotFoundError,
    UnclassifiedStoreError,
    WriteConflictError,
)
from .models import User

logger = logging.getLogger("userservice.database")

metadata = MetaData()

users = Table(
    "users",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", Text, nullable=False),
    Column("email", Text, nullable=False, unique=True),
    Column("created_at", DateTime, server_default=text("CURRENT_TIMESTAMP")),
    sqlite_autoincrement=True,
)

# Rows inserted by ``initialize(seed=True)``, mirroring the demo migration.
SEED_USERS = (
    ("Alice", "alice@example.com"),
    ("Bob", "bob@example.com"),
)


def normalize_database_url(raw_url: str) -> str:
    """Map bare PostgreSQL URLs onto the psycopg driver."""

    url = raw_url.strip()
    for prefix in ("postgres://", "postgresql://"):
        if url.startswith(prefix):
            return "postgresql+psycopg://" + url[len(prefix):]
    return url


@contextmanager
def _store_errors(action: str) -> Iterator[None]:
    """Translate driver exceptions into the service error taxonomy."""

    try:
        yield
    except IntegrityError as exc:
        raise WriteConflictError(f"Constraint violation while trying to {action}") from exc
    except (OperationalError, InterfaceError) as exc:
        raise ConnectivityError(f"Store unavailable while trying to {action}") from exc
    except DBAPIError as exc:
        if exc.connection_invalidated:
            raise ConnectivityError(f"Connection lost while trying to {action}") from exc
        raise UnclassifiedStoreError(f"Store error while trying to {action}") from exc
    except SQLAlchemyError as exc:
        raise UnclassifiedStoreError(f"Store error while trying to {action}") from exc


class Database:
    """Thin wrapper around a pooled SQLAlchemy engine for the ``users`` table."""

    def __init__(
        self,
        url: str,
        *,
        pool_size: int = 5,
        max_overflow: int = 10,
        pool_timeout: float = 5.0,
        connect_timeout: float = 5.0,
        statement_timeout: Optional[float] = None,
    ) -> None:
        normalized = normalize_database_url(url)
        try:
            parsed = make_url(normalized)
        except ArgumentError as exc:
            raise ConfigurationError("DATABASE_URL is not a valid connection string") from exc

        engine_options: Dict[str, Any] = {"pool_pre_ping": True}
        connect_args: Dict[str, Any] = {}

        if parsed.get_backend_name() == "sqlite":
            # Pooled connections are handed between worker threads.
            connect_args["check_same_thread"] = False
            connect_args["timeout"] = connect_timeout
        else:
            engine_options.update(
                pool_size=pool_size,
                max_overflow=max_overflow,
                pool_timeout=pool_timeout,
            )
            if parsed.get_backend_name() == "postgresql":
                connect_args["connect_timeout"] = max(1, int(connect_timeout))
                if statement_timeout is not None:
                    milliseconds = int(statement_timeout * 1000)
                    connect_args["options"] = f"-c statement_timeout={milliseconds}"

        self._url = parsed
        try:
            self._engine: Engine = create_engine(parsed, connect_args=connect_args, **engine_options)
        except ArgumentError as exc:
            # NoSuchModuleError (unknown dialect) is an ArgumentError too.
            raise ConfigurationError(
                f"DATABASE_URL names an unsupported backend ({parsed.drivername})"
            ) from exc
        except ImportError as exc:
            raise ConfigurationError(
                f"Database driver for {parsed.drivername} is not installed"
            ) from exc

    @classmethod
    def from_config(cls, config: Any) -> "Database":
        """Build a database handle from a :class:`~userservice.config.ServiceConfig`."""

        return cls(
            config.database_url,
            pool_size=config.pool_size,
            max_overflow=config.max_overflow,
            pool_timeout=config.request_timeout,
            connect_timeout=config.probe_timeout,
            statement_timeout=config.request_timeout,
        )

    @property
    def engine(self) -> Engine:
        return self._engine

    def describe(self) -> str:
        """Return the connection string with any password masked."""

        return self._url.render_as_string(hide_password=True)

    def initialize(self, *, seed: bool = False) -> None:
        """Create the ``users`` table if it does not already exist."""

        with _store_errors("initialise the schema"):
            metadata.create_all(self._engine)
            if not seed:
                return
            with self._engine.begin() as conn:
                existing = conn.execute(select(func.count()).select_from(users)).scalar_one()
                if existing:
                    return
                conn.execute(
                    insert(users),
                    [{"name": name, "email": email} for name, email in SEED_USERS],
                )
        logger.info("Seeded %d demo users", len(SEED_USERS))

    def ping(self) -> None:
        """Run a trivial query, raising :class:`ConnectivityError` on failure."""

        try:
            with self._engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except SQLAlchemyError as exc:
            raise ConnectivityError("Store is not reachable") from exc

    def close(self) -> None:
        """Close every pooled connection."""

        self._engine.dispose()

    # ------------------------------------------------------------------
    # User management
    # ------------------------------------------------------------------
    def list_users(self) -> List[User]:
        with _store_errors("list users"):
            with self._engine.connect() as conn:
                rows = conn.execute(select(users).order_by(users.c.id)).fetchall()
        return [self._row_to_user(row) for row in rows]

    def get_user(self, user_id: int) -> Optional[User]:
        with _store_errors("load a user"):
            with self._engine.connect() as conn:
                row = conn.execute(select(users).where(users.c.id == user_id)).one_or_none()
        if row is None:
            return None
        return self._row_to_user(row)

    def create_user(self, name: str, email: str) -> int:
        """Insert a user and return the identifier assigned by the store.

        The insert runs in its own transaction; nothing is committed unless the
        identifier could be read back.
        """

        with _store_errors("create a user"):
            with self._engine.begin() as conn:
                result = conn.execute(insert(users).values(name=name, email=email))
                user_id = result.inserted_primary_key[0]
        return int(user_id)

    def update_user(self, user_id: int, name: str, email: str) -> None:
        with _store_errors("update a user"):
            with self._engine.begin() as conn:
                result = conn.execute(
                    update(users).where(users.c.id == user_id).values(name=name, email=email)
                )
                matched = result.rowcount
        if matched == 0:
            raise NotFoundError(f"User {user_id} not found")

    def delete_user(self, user_id: int) -> None:
        with _store_errors("delete a user"):
            with self._engine.begin() as conn:
                result = conn.execute(delete(users).where(users.c.id == user_id))
                matched = result.rowcount
        if matched == 0:
            raise NotFoundError(f"User {user_id} not found")

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _row_to_user(self, row: Row) -> User:
        mapping = row._mapping
        return User(
            id=int(mapping["id"]),
            name=str(mapping["name"]),
            email=str(mapping["email"]),
            created_at=mapping["created_at"],
        )


__all__ = [
    "Database",
    "SEED_USERS",
    "metadata",
    "normalize_database_url",
    "users",
]
