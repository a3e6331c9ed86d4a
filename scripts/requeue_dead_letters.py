"""Script to move dead-lettered analysis entries back to the queue."""

import argparse
import asyncio
import sys

sys.path.insert(0, ".")

from sqlalchemy import select

from capture_service.db.models import AnalysisQueueEntry, QueueStatus
from capture_service.db.session import async_session_maker, engine
from capture_service.errors import ConflictError, NotFoundError
from capture_service.services.analysis_queue import analysis_queue


async def main(entry_ids: list[str], all_failed: bool, retryable_only: bool):
    """Requeue the given entries, or every dead letter with --all."""
    async with async_session_maker() as db:
        if all_failed:
            query = select(AnalysisQueueEntry.id).where(AnalysisQueueEntry.status == QueueStatus.FAILED)
            if retryable_only:
                query = query.where(AnalysisQueueEntry.retryable.is_(True))
            entry_ids = list((await db.execute(query)).scalars().all())

        print(f"Requeueing {len(entry_ids)} entries...")
        requeued = 0
        for entry_id in entry_ids:
            try:
                entry = await analysis_queue.requeue(db, entry_id)
            except (ConflictError, NotFoundError) as e:
                print(f"  skipped {entry_id}: {e}")
                continue
            requeued += 1
            print(f"  requeued {entry.id} (capture {entry.capture_id}, attempts {entry.attempts})")
        await db.commit()

    print(f"\nRequeued {requeued} of {len(entry_ids)} entries")
    await engine.dispose()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("entry_ids", nargs="*", help="Queue entry IDs to requeue")
    parser.add_argument("--all", dest="all_failed", action="store_true", help="Requeue every dead letter")
    parser.add_argument("--retryable-only", action="store_true", help="With --all, skip permanent failures")
    args = parser.parse_args()

    if not args.entry_ids and not args.all_failed:
        parser.error("give entry IDs or --all")

    asyncio.run(main(args.entry_ids, args.all_failed, args.retryable_only))
