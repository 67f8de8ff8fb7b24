#!/usr/bin/env python3
"""
Create the schema directly from the table metadata and optionally register a cabinet.

Usage:
    python scripts/init_db.py
    python scripts/init_db.py --cabinet-id cab-paris --name "Cabinet Paris" --slug paris

Prefer `python scripts/migrate.py` on PostgreSQL: only migrations add the
practitioner overlap exclusion constraint.
"""

import argparse
import asyncio

import dotenv

dotenv.load_dotenv()

from cabinet_scheduler.database import AsyncSessionLocal, engine  # noqa: E402
from cabinet_scheduler.models import metadata  # noqa: E402
from cabinet_scheduler.repositories.cabinets import SqlCabinetRepository  # noqa: E402


async def init_db(args: argparse.Namespace) -> None:
    """Create all tables, then register the requested cabinet."""
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)
    print("✓ Database initialized successfully!")

    if args.cabinet_id:
        async with AsyncSessionLocal() as db:
            repo = SqlCabinetRepository(db)
            if await repo.get(args.cabinet_id) is None:
                await repo.insert(
                    args.cabinet_id,
                    args.name or args.cabinet_id,
                    args.slug or args.cabinet_id,
                    timezone=args.timezone,
                )
                await db.commit()
                print(f"✓ Cabinet {args.cabinet_id} registered")
            else:
                print(f"Cabinet {args.cabinet_id} already exists")

    await engine.dispose()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Initialize the cabinet scheduler database")
    parser.add_argument("--cabinet-id", help="Register a cabinet with this ID")
    parser.add_argument("--name", help="Cabinet display name")
    parser.add_argument("--slug", help="Cabinet slug")
    parser.add_argument("--timezone", default="Europe/Paris", help="Cabinet IANA timezone")
    asyncio.run(init_db(parser.parse_args()))
