"""Worker loop that drains the analysis queue through a vision analyzer."""

import asyncio
import logging
import os
import socket
from contextlib import suppress
from typing import Optional
from uuid import uuid4

from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from capture_service.config import get_settings
from capture_service.db.models import Capture
from capture_service.db.session import async_session_maker
from capture_service.errors import AnalysisError, ClaimLostError, NotFoundError, TransientAnalysisError
from capture_service.schemas.schemas import AnalysisContext, VisionResult
from capture_service.services.analysis_queue import AnalysisQueue, analysis_queue
from capture_service.services.capture_store import CaptureStore, capture_store
from capture_service.services.vision import VisionAnalyzer

logger = logging.getLogger(__name__)

settings = get_settings()


def default_worker_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid4().hex[:8]}"


class AnalysisWorker:
    """
    Claims queue entries one at a time and runs them through the analyzer.

    Each step uses its own short transaction: the claim is committed before
    the analyzer is called, and no transaction is held open across the
    analyzer call. The result write and the completion of the entry commit
    together, so a capture is never marked analyzed without its entry being
    done, and a worker whose claim was taken over writes nothing.
    """

    def __init__(
        self,
        analyzer: VisionAnalyzer,
        queue: Optional[AnalysisQueue] = None,
        store: Optional[CaptureStore] = None,
        session_factory: Optional[async_sessionmaker] = None,
        poll_interval: Optional[float] = None,
        analysis_timeout: Optional[float] = None,
        worker_id: Optional[str] = None,
    ):
        self.analyzer = analyzer
        self.queue = queue or analysis_queue
        self.store = store or capture_store
        self.session_factory = session_factory or async_session_maker
        self.poll_interval = (
            poll_interval if poll_interval is not None else settings.analysis_poll_interval_seconds
        )
        self.analysis_timeout = (
            analysis_timeout if analysis_timeout is not None else settings.analysis_timeout_seconds
        )
        self.worker_id = worker_id or default_worker_id()

    async def process_next(self) -> bool:
        """
        Claim and process one entry.

        Returns:
            True if an entry was claimed, False if the queue had nothing claimable
        """
        async with self.session_factory() as db:
            entry = await self.queue.dequeue_next(db, worker_id=self.worker_id)
            await db.commit()
            if entry is None:
                return False
            entry_id = entry.id
            capture_id = entry.capture_id
            claim_token = entry.claim_token
            attempt = entry.attempts
            reanalyze = entry.reanalyze

        logger.info(f"Worker {self.worker_id} claimed entry {entry_id} for capture {capture_id} (attempt {attempt})")

        try:
            await self._process_entry(entry_id, capture_id, claim_token, reanalyze)
        except ClaimLostError:
            logger.warning(
                f"Worker {self.worker_id} lost its claim on entry {entry_id}; result discarded"
            )
        except SQLAlchemyError as e:
            # The claim stays in progress and is reclaimed once it goes stale
            logger.error(f"Storage error while processing entry {entry_id}: {e}")
        return True

    async def _process_entry(
        self,
        entry_id: str,
        capture_id: str,
        claim_token: str,
        reanalyze: bool = False,
    ) -> None:
        async with self.session_factory() as db:
            try:
                capture = await self.store.get_capture(db, capture_id)
            except NotFoundError:
                await self.queue.mark_failed(
                    db,
                    entry_id,
                    f"Capture {capture_id} no longer exists",
                    retryable=False,
                    claim_token=claim_token,
                )
                await db.commit()
                return

            # Device-supplied results are kept unless a re-analysis was requested
            if capture.vision_result is not None and not reanalyze:
                await self.queue.mark_done(db, entry_id, claim_token=claim_token)
                await db.commit()
                logger.info(f"Capture {capture_id} already has a vision result, skipping analysis")
                return

            image_url = capture.image_url
            context = self._build_context(capture)
            await db.commit()

        try:
            result = await self._analyze(image_url, context)
        except AnalysisError as e:
            async with self.session_factory() as db:
                await self.queue.mark_failed(
                    db,
                    entry_id,
                    e.message,
                    retryable=e.retryable,
                    claim_token=claim_token,
                )
                await db.commit()
            return

        async with self.session_factory() as db:
            await self.queue.mark_done(db, entry_id, claim_token=claim_token)
            try:
                await self.store.apply_analysis(
                    db,
                    capture_id,
                    result,
                    model_name=self.analyzer.model_name,
                    model_version=self.analyzer.model_version,
                )
            except NotFoundError:
                # Deleted while the analyzer was running
                await db.rollback()
                await self.queue.mark_failed(
                    db,
                    entry_id,
                    f"Capture {capture_id} was deleted during analysis",
                    retryable=False,
                    claim_token=claim_token,
                )
                await db.commit()
                return
            await db.commit()

        logger.info(
            f"Capture {capture_id} analyzed: category={result.category}, confidence={result.confidence}"
        )

    async def _analyze(self, image_url: str, context: Optional[AnalysisContext]) -> VisionResult:
        """Run the analyzer with a hard timeout; every failure comes out as AnalysisError."""
        try:
            return await asyncio.wait_for(
                self.analyzer.analyze(image_url, context),
                timeout=self.analysis_timeout,
            )
        except asyncio.TimeoutError as e:
            raise TransientAnalysisError(f"Analysis timed out after {self.analysis_timeout}s") from e
        except AnalysisError:
            raise
        except Exception as e:
            logger.exception(f"Unexpected analyzer error for {image_url}: {e}")
            raise TransientAnalysisError(f"Unexpected analyzer error: {e}") from e

    def _build_context(self, capture: Capture) -> Optional[AnalysisContext]:
        try:
            return AnalysisContext.model_validate(
                {
                    "location": capture.location,
                    "location_info": capture.location_info,
                    "orientation": capture.orientation,
                    "captured_at": capture.captured_at,
                }
            )
        except ValidationError as e:
            logger.warning(f"Ignoring malformed context of capture {capture.id}: {e}")
            return None

    async def drain(self, max_items: Optional[int] = None) -> int:
        """
        Process entries until nothing is claimable.

        Returns:
            Number of entries processed
        """
        processed = 0
        while max_items is None or processed < max_items:
            if not await self.process_next():
                break
            processed += 1
        return processed

    async def run_forever(self, stop_event: Optional[asyncio.Event] = None) -> None:
        """Poll the queue until `stop_event` is set."""
        stop_event = stop_event or asyncio.Event()
        logger.info(f"Analysis worker {self.worker_id} started (poll interval {self.poll_interval}s)")

        while not stop_event.is_set():
            try:
                processed = await self.process_next()
            except Exception as e:
                logger.exception(f"Analysis worker {self.worker_id} iteration failed: {e}")
                processed = False

            if not processed:
                with suppress(asyncio.TimeoutError):
                    await asyncio.wait_for(stop_event.wait(), timeout=self.poll_interval)

        logger.info(f"Analysis worker {self.worker_id} stopped")
