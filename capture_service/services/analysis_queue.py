"""Durable analysis work queue backed by the analysis_queue table."""

import logging
from datetime import datetime, timedelta
from typing import Optional
from uuid import uuid4

from sqlalchemy import func, insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from capture_service.config import get_settings
from capture_service.db.models import (
    ACTIVE_QUEUE_STATUSES,
    AnalysisQueueEntry,
    Capture,
    QueueStatus,
    utcnow,
)
from capture_service.errors import ClaimLostError, ConflictError, NotFoundError

logger = logging.getLogger(__name__)

settings = get_settings()

MAX_ERROR_MESSAGE_LENGTH = 2000


class AnalysisQueue:
    """
    At-least-once work queue of analysis jobs, one active job per capture.

    Ordering: pending entries are served FIFO by `queued_at`. A failed attempt
    that will be retried goes back to the tail (`queued_at` reset) and only
    becomes claimable again after an exponential backoff (`available_at`), so a
    poison entry never blocks the head of the queue.

    Claims are safe under concurrent workers: the candidate row is selected
    with FOR UPDATE SKIP LOCKED and then claimed with a conditional UPDATE, so
    backends without row locks still never hand one entry to two workers.
    """

    def __init__(
        self,
        max_attempts: Optional[int] = None,
        backoff_base_seconds: Optional[float] = None,
        backoff_max_seconds: Optional[float] = None,
        claim_timeout_seconds: Optional[float] = None,
        claim_retries: int = 5,
    ):
        self.max_attempts = max_attempts if max_attempts is not None else settings.analysis_max_attempts
        self.backoff_base_seconds = (
            backoff_base_seconds
            if backoff_base_seconds is not None
            else settings.analysis_backoff_base_seconds
        )
        self.backoff_max_seconds = (
            backoff_max_seconds
            if backoff_max_seconds is not None
            else settings.analysis_backoff_max_seconds
        )
        self.claim_timeout_seconds = (
            claim_timeout_seconds
            if claim_timeout_seconds is not None
            else settings.analysis_claim_timeout_seconds
        )
        self.claim_retries = claim_retries

    def backoff_delay(self, attempts: int) -> timedelta:
        """Delay before an entry that has used `attempts` attempts may run again."""
        if attempts < 1:
            return timedelta(0)
        seconds = min(self.backoff_base_seconds * (2 ** (attempts - 1)), self.backoff_max_seconds)
        return timedelta(seconds=seconds)

    async def get_entry(self, db: AsyncSession, entry_id: str) -> AnalysisQueueEntry:
        """Get a queue entry by ID, always reading current row state."""
        result = await db.execute(
            select(AnalysisQueueEntry)
            .where(AnalysisQueueEntry.id == entry_id)
            .execution_options(populate_existing=True)
        )
        entry = result.scalar_one_or_none()
        if entry is None:
            raise NotFoundError("AnalysisQueueEntry", entry_id)
        return entry

    async def get_active_entry(
        self,
        db: AsyncSession,
        capture_id: str,
    ) -> Optional[AnalysisQueueEntry]:
        """Get the pending or in-progress entry for a capture, if any."""
        result = await db.execute(
            select(AnalysisQueueEntry)
            .where(
                AnalysisQueueEntry.capture_id == capture_id,
                AnalysisQueueEntry.status.in_(ACTIVE_QUEUE_STATUSES),
            )
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def list_entries(self, db: AsyncSession, capture_id: str) -> list[AnalysisQueueEntry]:
        """All entries ever created for a capture, oldest first."""
        result = await db.execute(
            select(AnalysisQueueEntry)
            .where(AnalysisQueueEntry.capture_id == capture_id)
            .order_by(AnalysisQueueEntry.created_at, AnalysisQueueEntry.id)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def enqueue(
        self,
        db: AsyncSession,
        capture_id: str,
        now: Optional[datetime] = None,
        reanalyze: bool = False,
    ) -> AnalysisQueueEntry:
        """
        Queue a capture for analysis.

        If the capture already has an active entry, that entry is returned and
        nothing is inserted. A pending entry picks up a `reanalyze` request.

        Args:
            reanalyze: run the analyzer even if the capture already carries a
                vision result; otherwise an existing result completes the entry

        Raises:
            NotFoundError: if the capture is missing or soft-deleted
        """
        exists = await db.execute(
            select(Capture.id).where(Capture.id == capture_id, Capture.is_deleted.is_(False))
        )
        if exists.scalar_one_or_none() is None:
            raise NotFoundError("Capture", capture_id)

        active = await self.get_active_entry(db, capture_id)
        if active is not None:
            logger.debug(f"Capture {capture_id} already queued as {active.id} ({active.status.value})")
            if reanalyze and not active.reanalyze and active.status == QueueStatus.PENDING:
                await db.execute(
                    update(AnalysisQueueEntry)
                    .where(AnalysisQueueEntry.id == active.id)
                    .values(reanalyze=True)
                    .execution_options(synchronize_session=False)
                )
                return await self.get_entry(db, active.id)
            return active

        now = now or utcnow()
        entry_id = str(uuid4())
        try:
            async with db.begin_nested():
                await db.execute(
                    insert(AnalysisQueueEntry).values(
                        id=entry_id,
                        capture_id=capture_id,
                        status=QueueStatus.PENDING,
                        attempts=0,
                        max_attempts=self.max_attempts,
                        reanalyze=reanalyze,
                        created_at=now,
                        queued_at=now,
                        available_at=now,
                    )
                )
        except IntegrityError:
            # Another transaction queued the same capture first
            active = await self.get_active_entry(db, capture_id)
            if active is None:
                raise
            return active

        return await self.get_entry(db, entry_id)

    async def dequeue_next(
        self,
        db: AsyncSession,
        worker_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Optional[AnalysisQueueEntry]:
        """
        Claim the oldest claimable pending entry.

        The claim moves the entry to in_progress, increments its attempt
        counter and issues a new claim token. The caller must commit for the
        claim to become visible to other workers.

        Returns:
            The claimed entry, or None if nothing is claimable
        """
        now = now or utcnow()
        await self.reclaim_stale(db, now=now)

        for _ in range(self.claim_retries):
            candidate = await db.execute(
                select(AnalysisQueueEntry.id)
                .where(
                    AnalysisQueueEntry.status == QueueStatus.PENDING,
                    AnalysisQueueEntry.available_at <= now,
                )
                .order_by(AnalysisQueueEntry.queued_at, AnalysisQueueEntry.id)
                .limit(1)
                .with_for_update(skip_locked=True)
            )
            entry_id = candidate.scalar_one_or_none()
            if entry_id is None:
                return None

            claim_token = str(uuid4())
            result = await db.execute(
                update(AnalysisQueueEntry)
                .where(
                    AnalysisQueueEntry.id == entry_id,
                    AnalysisQueueEntry.status == QueueStatus.PENDING,
                )
                .values(
                    status=QueueStatus.IN_PROGRESS,
                    attempts=AnalysisQueueEntry.attempts + 1,
                    last_attempt=now,
                    claim_token=claim_token,
                    claimed_by=worker_id,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                return await self.get_entry(db, entry_id)

            # Lost the race for this row; try the next one
            logger.debug(f"Entry {entry_id} was claimed concurrently, retrying")

        return None

    async def mark_done(
        self,
        db: AsyncSession,
        entry_id: str,
        claim_token: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> None:
        """
        Complete an in-progress entry.

        Raises:
            ClaimLostError: if the entry is not in progress under `claim_token`
        """
        stmt = update(AnalysisQueueEntry).where(
            AnalysisQueueEntry.id == entry_id,
            AnalysisQueueEntry.status == QueueStatus.IN_PROGRESS,
        )
        if claim_token is not None:
            stmt = stmt.where(AnalysisQueueEntry.claim_token == claim_token)

        result = await db.execute(
            stmt.values(
                status=QueueStatus.DONE,
                error_message=None,
                retryable=None,
                claim_token=None,
                completed_at=now or utcnow(),
            ).execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise ClaimLostError(entry_id)

    async def mark_failed(
        self,
        db: AsyncSession,
        entry_id: str,
        error_message: str,
        retryable: bool = True,
        claim_token: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> AnalysisQueueEntry:
        """
        Record a failed attempt.

        A permanent failure, or a retryable one that used up the entry's
        attempts, dead-letters the entry (status failed). Anything else goes
        back to pending at the tail of the queue after a backoff delay.

        Raises:
            ClaimLostError: if the entry is not in progress under `claim_token`
        """
        now = now or utcnow()
        query = (
            select(AnalysisQueueEntry)
            .where(
                AnalysisQueueEntry.id == entry_id,
                AnalysisQueueEntry.status == QueueStatus.IN_PROGRESS,
            )
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        if claim_token is not None:
            query = query.where(AnalysisQueueEntry.claim_token == claim_token)

        entry = (await db.execute(query)).scalar_one_or_none()
        if entry is None:
            raise ClaimLostError(entry_id)

        values = {
            "error_message": error_message[:MAX_ERROR_MESSAGE_LENGTH],
            "retryable": retryable,
            "claim_token": None,
            "claimed_by": None,
        }
        if not retryable or entry.attempts >= entry.max_attempts:
            values.update(status=QueueStatus.FAILED, completed_at=now)
            logger.warning(
                f"Dead-lettered analysis entry {entry.id} for capture {entry.capture_id} "
                f"after {entry.attempts} attempt(s): {error_message}"
            )
        else:
            delay = self.backoff_delay(entry.attempts)
            values.update(status=QueueStatus.PENDING, queued_at=now, available_at=now + delay)
            logger.info(
                f"Analysis entry {entry.id} failed attempt {entry.attempts}/{entry.max_attempts}, "
                f"retrying in {delay.total_seconds():.0f}s: {error_message}"
            )

        await db.execute(
            update(AnalysisQueueEntry)
            .where(AnalysisQueueEntry.id == entry.id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return await self.get_entry(db, entry.id)

    async def reclaim_stale(self, db: AsyncSession, now: Optional[datetime] = None) -> dict[str, int]:
        """
        Release in-progress claims whose last attempt is older than the claim timeout.

        Entries with attempts left go back to pending; exhausted ones are
        dead-lettered.

        Returns:
            Counts of requeued and dead-lettered entries
        """
        now = now or utcnow()
        cutoff = now - timedelta(seconds=self.claim_timeout_seconds)
        stale = (
            AnalysisQueueEntry.status == QueueStatus.IN_PROGRESS,
            AnalysisQueueEntry.last_attempt < cutoff,
        )

        dead = await db.execute(
            update(AnalysisQueueEntry)
            .where(*stale, AnalysisQueueEntry.attempts >= AnalysisQueueEntry.max_attempts)
            .values(
                status=QueueStatus.FAILED,
                retryable=True,
                error_message="Claim expired and attempts are exhausted",
                claim_token=None,
                claimed_by=None,
                completed_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        requeued = await db.execute(
            update(AnalysisQueueEntry)
            .where(*stale, AnalysisQueueEntry.attempts < AnalysisQueueEntry.max_attempts)
            .values(
                status=QueueStatus.PENDING,
                retryable=True,
                error_message="Claim expired before the attempt finished",
                claim_token=None,
                claimed_by=None,
                queued_at=now,
                available_at=now,
            )
            .execution_options(synchronize_session=False)
        )

        counts = {"requeued": requeued.rowcount, "dead_lettered": dead.rowcount}
        if counts["requeued"] or counts["dead_lettered"]:
            logger.warning(
                f"Reclaimed stale analysis claims: {counts['requeued']} requeued, "
                f"{counts['dead_lettered']} dead-lettered"
            )
        return counts

    async def requeue(
        self,
        db: AsyncSession,
        entry_id: str,
        now: Optional[datetime] = None,
    ) -> AnalysisQueueEntry:
        """
        Move a dead-lettered entry back to pending.

        The attempt counter is kept; the entry gets a fresh budget of
        `max_attempts` further attempts.

        Raises:
            NotFoundError: if the entry or its capture is gone
            ConflictError: if the entry is not failed, or its capture already
                has an active entry
        """
        now = now or utcnow()
        entry = await self.get_entry(db, entry_id)
        if entry.status != QueueStatus.FAILED:
            raise ConflictError(f"Entry {entry_id} is {entry.status.value}, only failed entries can be requeued")

        exists = await db.execute(
            select(Capture.id).where(Capture.id == entry.capture_id, Capture.is_deleted.is_(False))
        )
        if exists.scalar_one_or_none() is None:
            raise NotFoundError("Capture", entry.capture_id)

        active = await self.get_active_entry(db, entry.capture_id)
        if active is not None:
            raise ConflictError(f"Capture {entry.capture_id} already has active entry {active.id}")

        try:
            async with db.begin_nested():
                result = await db.execute(
                    update(AnalysisQueueEntry)
                    .where(
                        AnalysisQueueEntry.id == entry_id,
                        AnalysisQueueEntry.status == QueueStatus.FAILED,
                    )
                    .values(
                        status=QueueStatus.PENDING,
                        max_attempts=AnalysisQueueEntry.attempts + self.max_attempts,
                        queued_at=now,
                        available_at=now,
                        completed_at=None,
                    )
                    .execution_options(synchronize_session=False)
                )
        except IntegrityError as e:
            raise ConflictError(f"Capture {entry.capture_id} was queued concurrently") from e

        if result.rowcount == 0:
            raise ConflictError(f"Entry {entry_id} changed state concurrently")

        logger.info(f"Requeued dead-lettered analysis entry {entry_id} for capture {entry.capture_id}")
        return await self.get_entry(db, entry_id)

    async def resubmit_dead_letters(
        self,
        db: AsyncSession,
        older_than: timedelta,
        limit: int = 100,
        now: Optional[datetime] = None,
    ) -> int:
        """
        Requeue dead letters whose last failure was retryable and that have
        been dead for at least `older_than`.

        Returns:
            Number of entries requeued
        """
        now = now or utcnow()
        result = await db.execute(
            select(AnalysisQueueEntry.id)
            .where(
                AnalysisQueueEntry.status == QueueStatus.FAILED,
                AnalysisQueueEntry.retryable.is_(True),
                AnalysisQueueEntry.completed_at <= now - older_than,
            )
            .order_by(AnalysisQueueEntry.completed_at)
            .limit(limit)
        )

        resubmitted = 0
        for entry_id in result.scalars().all():
            try:
                await self.requeue(db, entry_id, now=now)
            except (ConflictError, NotFoundError) as e:
                logger.debug(f"Skipping dead letter {entry_id}: {e}")
                continue
            resubmitted += 1

        return resubmitted

    async def stats(self, db: AsyncSession) -> dict[str, int]:
        """Number of entries per status."""
        result = await db.execute(
            select(AnalysisQueueEntry.status, func.count()).group_by(AnalysisQueueEntry.status)
        )
        counts = {status.value: 0 for status in QueueStatus}
        for status, count in result.all():
            counts[QueueStatus(status).value] = count
        return counts


# Singleton instance
analysis_queue = AnalysisQueue()
