import argparse
import sys
from pathlib import Path
from typing import Optional, Sequence

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from pydantic import EmailStr, TypeAdapter, ValidationError

from userservice.config import load_config
from userservice.database import Database
from userservice.errors import ConfigurationError, StoreError, WriteConflictError


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Create a user directly in the service database")
    parser.add_argument("name", help="Display name for the user")
    parser.add_argument("email", help="Unique email address")
    parser.add_argument(
        "--database-url",
        default=None,
        help="Connection string (defaults to DATABASE_URL)",
    )
    return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)

    name = args.name
    if not name.strip():
        print("Error: name must not be empty", file=sys.stderr)
        return 1
    try:
        TypeAdapter(EmailStr).validate_python(args.email)
    except ValidationError:
        print(f"Error: {args.email!r} is not a valid email address", file=sys.stderr)
        return 1
    email = args.email

    try:
        if args.database_url:
            database = Database(args.database_url)
        else:
            database = Database.from_config(load_config())
    except ConfigurationError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    try:
        user_id = database.create_user(name, email)
    except WriteConflictError:
        print("Error: a user with that email already exists", file=sys.stderr)
        return 1
    except StoreError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    finally:
        database.close()

    print(f"Created user #{user_id}: {name} <{email}>")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
