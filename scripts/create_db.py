"""Script to create the database schema and print queue state."""

import asyncio
import sys

sys.path.insert(0, ".")

from capture_service.config import get_settings
from capture_service.db.session import async_session_maker, engine, init_db
from capture_service.services.analysis_queue import analysis_queue


async def main():
    """Create all tables that do not exist yet."""
    settings = get_settings()
    print(f"Initializing database at {settings.database_url.rsplit('@', 1)[-1]}...")
    await init_db()

    async with async_session_maker() as db:
        stats = await analysis_queue.stats(db)

    print("\n" + "=" * 60)
    print("DATABASE READY")
    print("=" * 60)
    for status, count in stats.items():
        print(f"  {status:<12} {count}")
    print("=" * 60)

    await engine.dispose()


if __name__ == "__main__":
    asyncio.run(main())
