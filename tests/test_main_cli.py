from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from main import _parse_args, _run_smoke_tests, main
from userservice.database import Database
from userservice.service import build_application


def test_default_command_invokes_serve() -> None:
    args = _parse_args([])
    assert args.command == "serve"


def test_default_command_accepts_options_without_subcommand() -> None:
    args = _parse_args(["--host", "127.0.0.1", "--port", "8081"])
    assert args.command == "serve"
    assert args.host == "127.0.0.1"
    assert args.port == 8081


def test_init_db_subcommand_accepts_seed_flag() -> None:
    args = _parse_args(["init-db", "--seed"])
    assert args.command == "init-db"
    assert args.seed is True


def test_missing_database_url_exits_with_error(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.delenv("USERSERVICE_CONFIG", raising=False)

    assert main(["serve"]) == 1


def test_init_db_creates_and_seeds_schema(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    url = f"sqlite:///{tmp_path / 'cli.sqlite3'}"
    monkeypatch.setenv("DATABASE_URL", url)
    monkeypatch.delenv("USERSERVICE_CONFIG", raising=False)

    assert main(["init-db", "--seed"]) == 0

    database = Database(url)
    try:
        assert [user.name for user in database.list_users()] == ["Alice", "Bob"]
    finally:
        database.close()


def test_smoke_checks_pass_against_running_service(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    database = Database(f"sqlite:///{tmp_path / 'smoke.sqlite3'}")
    database.initialize()
    try:
        with TestClient(build_application(database=database)) as client:
            exit_code = _run_smoke_tests("http://testserver", client=client)
            remaining = client.get("/users").json()
    finally:
        database.close()

    output = capsys.readouterr().out
    assert exit_code == 0, output
    assert "FAILED" not in output
    assert remaining == []


def test_serve_with_unparseable_database_url_exits_with_error(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("DATABASE_URL", "not a url")
    monkeypatch.delenv("USERSERVICE_CONFIG", raising=False)
    monkeypatch.setattr("userservice.lifecycle.signal.signal", lambda *args: None)

    assert main(["serve", "--host", "127.0.0.1", "--port", "0"]) == 1
