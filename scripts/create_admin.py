from __future__ import annotations

import argparse
import asyncio
import sys

from sqlalchemy.exc import SQLAlchemyError

from lexhost.persistence.db import SessionLocal
from lexhost.services.admins import create_admin


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Create an admin and print its API key once")
    parser.add_argument("--name", required=True, help="Admin label shown in the dashboard")
    return parser


async def _create(args: argparse.Namespace) -> int:
    async with SessionLocal() as session:
        created = await create_admin(session, name=args.name)

    # The key is not recoverable after this; only its hash is stored.
    print("Admin created:")
    print(f"  admin_id: {created.admin.id}")
    print(f"  name: {created.admin.name}")
    print("  api_key: ")
    print(f"    {created.api_key}")
    return 0


def main() -> int:
    parser = _build_parser()
    args = parser.parse_args()
    try:
        return asyncio.run(_create(args))
    except SQLAlchemyError as exc:
        print(f"create_admin failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
