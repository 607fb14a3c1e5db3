"""Command-line interface for the user service."""

from __future__ import annotations
import argparse
import logging
import secrets
import sys
from typing import Callable, List, Optional, Sequence, Tuple

try:
    import httpx
except ImportError as exc:  # pragma: no cover - exercised in environments missing deps
    raise SystemExit(
        "The 'httpx' package is required. Run `pip install -e .` to install dependencies."
    ) from exc

from userservice.config import ServiceConfig, load_config
from userservice.database import Database
from userservice.errors import ConfigurationError, ListenerError, ServiceStartupError, StoreError
from userservice.lifecycle import ServiceLifecycle

logger = logging.getLogger("userservice.main")

_DEFAULT_SERVICE_URL = "http://localhost:8080"
_LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def _parse_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="User service utilities")
    subparsers = parser.add_subparsers(dest="command")

    parser.set_defaults(command="serve")

    serve_parser = subparsers.add_parser("serve", help="Start the HTTP service")
    serve_parser.add_argument("--host", default=None, help="Bind address (default: USERSERVICE_HOST or 0.0.0.0)")
    serve_parser.add_argument(
        "--port",
        type=int,
        default=None,
        help="Listening port (default: USERSERVICE_PORT or 8080)",
    )

    init_parser = subparsers.add_parser("init-db", help="Create the users table for local development")
    init_parser.add_argument(
        "--seed",
        action="store_true",
        help="Insert the demo users when the table is empty",
    )

    smoke_parser = subparsers.add_parser("smoke", help="Exercise every endpoint of a running service")
    smoke_parser.add_argument(
        "--service-url",
        default=_DEFAULT_SERVICE_URL,
        help=f"Base URL of the running service (default: {_DEFAULT_SERVICE_URL})",
    )

    args_list = list(argv) if argv is not None else sys.argv[1:]
    known_commands = {"serve", "init-db", "smoke"}

    if not args_list:
        args_list = ["serve"]
    else:
        first = args_list[0]
        if first in ("-h", "--help"):
            return parser.parse_args(args_list)
        if first not in known_commands:
            if any(flag in args_list for flag in ("-h", "--help")):
                return parser.parse_args(args_list)
            args_list = ["serve", *args_list]

    return parser.parse_args(args_list)


def _configure_logging(level: str) -> None:
    logging.basicConfig(level=level.upper(), format=_LOG_FORMAT)


def _serve(config: ServiceConfig) -> int:
    lifecycle = ServiceLifecycle(config)
    lifecycle.install_signal_handlers()
    try:
        lifecycle.run()
    except ServiceStartupError as exc:
        logger.critical("Startup failed: %s", exc, exc_info=exc.__cause__)
        return 1
    except ListenerError as exc:
        logger.critical("Server crashed: %s", exc, exc_info=exc.__cause__)
        return 1
    return 0


def _initialise_database(config: ServiceConfig, *, seed: bool) -> int:
    database = Database.from_config(config)
    try:
        database.initialize(seed=seed)
    except StoreError as exc:
        logger.error("Failed to initialise database at %s", database.describe(), exc_info=exc)
        return 1
    finally:
        database.close()

    logger.info("Database initialised at %s", database.describe())
    print("Database initialisation complete.")
    return 0


def _run_smoke_tests(service_url: str, *, client: Optional[httpx.Client] = None) -> int:
    """Call each endpoint in turn and report which checks passed."""

    base_url = service_url.rstrip("/")
    own_client = client is None
    http = client or httpx.Client(base_url=base_url, timeout=10.0)
    email = f"smoke-{secrets.token_hex(4)}@example.com"
    state: dict = {}

    def create() -> bool:
        response = http.post("/users", json={"name": "Smoke Test", "email": email})
        if response.status_code != 201:
            return False
        state["id"] = response.json().get("id")
        return isinstance(state["id"], int)

    def fetch() -> bool:
        response = http.get(f"/users/{state.get('id')}")
        return response.status_code == 200 and response.json().get("email") == email

    def update() -> bool:
        response = http.put(
            f"/users/{state.get('id')}",
            json={"name": "Smoke Test Updated", "email": email},
        )
        return response.status_code == 200 and response.json() == {"updated": True}

    def remove() -> bool:
        response = http.delete(f"/users/{state.get('id')}")
        return response.status_code == 200 and response.json() == {"deleted": True}

    checks: List[Tuple[str, Callable[[], bool]]] = [
        ("GET /healthz", lambda: http.get("/healthz").json() == {"status": "healthy"}),
        ("GET /readyz", lambda: http.get("/readyz").json() == {"ready": True}),
        ("GET /users", lambda: http.get("/users").status_code == 200),
        ("POST /users", create),
        ("GET /users/{id}", fetch),
        ("PUT /users/{id}", update),
        ("DELETE /users/{id}", remove),
        ("GET /users/{id} after delete", lambda: http.get(f"/users/{state.get('id')}").status_code == 404),
    ]

    failures = 0
    try:
        for index, (label, check) in enumerate(checks, start=1):
            try:
                passed = check()
            except (httpx.HTTPError, ValueError) as exc:
                print(f"[{index}] {label}: ERROR ({exc})")
                failures += 1
                continue
            print(f"[{index}] {label}: {'PASSED' if passed else 'FAILED'}")
            if not passed:
                failures += 1
    finally:
        if own_client:
            http.close()

    if failures:
        print(f"{failures} of {len(checks)} checks failed against {base_url}.")
        return 1
    print(f"All {len(checks)} checks passed against {base_url}.")
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point for CLI usage."""

    args = _parse_args(argv)

    if args.command == "smoke":
        _configure_logging("info")
        return _run_smoke_tests(args.service_url)

    try:
        config = load_config()
    except ConfigurationError as exc:
        _configure_logging("info")
        logger.critical("Invalid configuration: %s", exc)
        return 1

    _configure_logging(config.log_level)

    if args.command == "serve":
        return _serve(config.with_overrides(host=args.host, port=args.port))
    if args.command == "init-db":
        return _initialise_database(config, seed=args.seed)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
