#!/usr/bin/env python3
"""
PaperTrade Auth -- registration, login and token lifecycle service.

Usage:
  python main.py serve
  python main.py serve --host 0.0.0.0 --port 8080
  python main.py init-db
  python main.py purge-tokens
  python main.py revoke-user 5b0c4f0e-8f0e-4a8e-9c55-8a3b5d1b2f7e

Environment variables (see core/config.py for the full list):
  SECRET_KEY     Required unless DEBUG=true. HS256 signing key, 32+ characters.
  DATABASE_URL   SQLAlchemy URL. Defaults to a SQLite file next to this script.
  DEBUG          true enables an auto-generated SECRET_KEY for local development.
"""

import argparse
import logging
import sys
import uuid

from auth.errors import AuthError
from auth.service import AuthService
from auth.store import TokenStore, UserStore, dispose_engine, open_engine
from core.config import get_settings

logger = logging.getLogger("papertrade.cli")


def _build_service():
    settings = get_settings()
    engine = open_engine(settings.database_url)
    return engine, AuthService.from_settings(settings, UserStore(engine), TokenStore(engine))


def _cmd_serve(args: argparse.Namespace) -> int:
    import uvicorn

    uvicorn.run("api.main:app", host=args.host, port=args.port, reload=args.reload)
    return 0


def _cmd_init_db(args: argparse.Namespace) -> int:
    settings = get_settings()
    engine = open_engine(settings.database_url, create_schema=True)
    dispose_engine(engine)
    print(f"  Schema ready at {engine.url.render_as_string(hide_password=True)}")
    return 0


def _cmd_purge_tokens(args: argparse.Namespace) -> int:
    engine, service = _build_service()
    try:
        removed = service.purge_expired_tokens()
    finally:
        dispose_engine(engine)
    print(f"  Purged {removed} expired refresh token(s).")
    return 0


def _cmd_revoke_user(args: argparse.Namespace) -> int:
    try:
        user_id = uuid.UUID(args.user_id)
    except ValueError:
        print(f"  [!] '{args.user_id}' is not a valid user ID. Expected a UUID.")
        return 2
    engine, service = _build_service()
    try:
        removed = service.revoke_all_sessions(user_id)
    finally:
        dispose_engine(engine)
    print(f"  Revoked {removed} refresh token(s) for user {user_id}.")
    return 0


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(
        prog="papertrade-auth",
        description="Authentication and session lifecycle service.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py serve --reload
  DATABASE_URL=postgresql+psycopg://app@localhost/auth python main.py init-db
  python main.py purge-tokens
        """,
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    serve = sub.add_parser("serve", help="Run the HTTP API with uvicorn")
    serve.add_argument("--host", default="127.0.0.1", help="Bind address (default: 127.0.0.1)")
    serve.add_argument("--port", type=int, default=8000, help="Bind port (default: 8000)")
    serve.add_argument("--reload", action="store_true", help="Reload on code changes (development only)")
    serve.set_defaults(func=_cmd_serve)

    init_db = sub.add_parser("init-db", help="Create the users and refresh_tokens tables")
    init_db.set_defaults(func=_cmd_init_db)

    purge = sub.add_parser("purge-tokens", help="Delete expired refresh tokens once and exit")
    purge.set_defaults(func=_cmd_purge_tokens)

    revoke = sub.add_parser("revoke-user", help="Revoke every refresh token of one user")
    revoke.add_argument("user_id", metavar="USER_ID", help="UUID of the user to log out everywhere")
    revoke.set_defaults(func=_cmd_revoke_user)

    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return 1

    logging.basicConfig(
        level=get_settings().log_level.upper(),
        format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    try:
        return args.func(args)
    except AuthError as exc:
        logger.error("%s: %s", type(exc).__name__, exc)
        print(f"  [!] {exc.safe_message}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
