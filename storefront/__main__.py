"""Command line entry point: ``storefront serve`` or ``storefront create-admin``."""
from __future__ import annotations
import argparse
import asyncio
import getpass
import logging
import sys

from .config import setup_logging
from .database import close_db, get_db
from .errors import ConflictError

logger = logging.getLogger("storefront")


async def _create_admin(args: argparse.Namespace) -> None:
    from .auth import create_admin_account

    try:
        admin = await create_admin_account(await get_db(), args.name, args.email, args.password, role=args.role)
        print(f"Created {admin['role']} {admin['email']} ({admin['_id']})")
    finally:
        close_db()


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="storefront", description="Storefront API")
    parser.add_argument("--log-level", default=None)
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="run the HTTP API")
    serve.add_argument("--host", default="0.0.0.0")
    serve.add_argument("--port", type=int, default=8000)
    serve.add_argument("--reload", action="store_true")

    admin = sub.add_parser("create-admin", help="create an admin account")
    admin.add_argument("--email", required=True)
    admin.add_argument("--name", default="Admin")
    admin.add_argument("--password", default=None)
    admin.add_argument("--role", choices=["admin", "super_admin"], default="admin")

    args = parser.parse_args(argv)
    setup_logging(args.log_level)

    if args.command == "serve":
        import uvicorn
        uvicorn.run("storefront.main:app", host=args.host, port=args.port, reload=args.reload)
        return 0

    if args.password is None:
        args.password = getpass.getpass("Password: ")
    try:
        asyncio.run(_create_admin(args))
    except ConflictError as e:
        logger.error(e.message)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
