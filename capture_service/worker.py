"""Celery app and periodic maintenance tasks for the analysis queue."""

import asyncio
import logging
from datetime import timedelta
from typing import Optional

import httpx
from celery import Celery, Task
from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from capture_service.config import get_settings
from capture_service.db.models import Capture
from capture_service.db.session import create_session_factory
from capture_service.schemas.schemas import CapturePublishedEvent, WebhookResponse
from capture_service.services.analysis_queue import AnalysisQueue, analysis_queue
from capture_service.services.publish_events import StoriesWebhookClient

settings = get_settings()

logger = logging.getLogger(__name__)

# Create Celery app
celery_app = Celery(
    "capture_analysis_maintenance",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
)

# Celery configuration
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=300,
    task_soft_time_limit=240,
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    task_default_queue="maintenance",
    beat_schedule={
        "reclaim-stale-analysis-claims": {
            "task": "capture_service.worker.reclaim_stale_analysis_claims",
            "schedule": 60.0,  # Every minute
        },
        "resubmit-dead-letters": {
            "task": "capture_service.worker.resubmit_dead_letters",
            "schedule": 3600.0,  # Every hour
        },
    },
)


class BaseTask(Task):
    """Base task with retry configuration."""

    autoretry_for = (Exception,)
    retry_backoff = True
    retry_backoff_max = 600
    retry_jitter = True
    max_retries = 3


async def reclaim_stale_claims(
    session_factory: async_sessionmaker,
    queue: Optional[AnalysisQueue] = None,
) -> dict[str, int]:
    """Release analysis claims held by workers that died mid-attempt."""
    queue = queue or analysis_queue
    async with session_factory() as db:
        counts = await queue.reclaim_stale(db)
        await db.commit()
    return counts


async def resubmit_retryable_dead_letters(
    session_factory: async_sessionmaker,
    queue: Optional[AnalysisQueue] = None,
    older_than: Optional[timedelta] = None,
    limit: Optional[int] = None,
) -> int:
    """Give dead-lettered entries whose last failure was transient another run."""
    queue = queue or analysis_queue
    if older_than is None:
        older_than = timedelta(seconds=settings.analysis_resubmit_after_seconds)
    async with session_factory() as db:
        resubmitted = await queue.resubmit_dead_letters(
            db,
            older_than=older_than,
            limit=limit or settings.analysis_resubmit_batch_size,
        )
        await db.commit()
    if resubmitted:
        logger.info(f"Resubmitted {resubmitted} dead-lettered analysis entries")
    return resubmitted


async def publish_capture_event(
    session_factory: async_sessionmaker,
    capture_id: str,
    published: bool,
    client: Optional[StoriesWebhookClient] = None,
) -> Optional[WebhookResponse]:
    """
    Announce a visibility change of a capture to the stories service.

    The event is built from the committed row. Nothing is sent if the capture
    is gone or its visibility no longer matches the change being announced.
    """
    async with session_factory() as db:
        result = await db.execute(select(Capture).where(Capture.id == capture_id))
        capture = result.scalar_one_or_none()

    if capture is None:
        logger.error(f"Capture {capture_id} not found for publish webhook")
        return None
    if capture.is_public != published or (published and capture.is_deleted):
        logger.info(f"Capture {capture_id} visibility changed again, skipping publish webhook")
        return None

    event = CapturePublishedEvent.from_capture(capture)
    owns_client = client is None
    client = client or StoriesWebhookClient.from_settings()
    try:
        if published:
            return await client.send_capture_published(event)
        return await client.send_capture_unpublished(event)
    finally:
        if owns_client:
            await client.aclose()


def _run_with_own_engine(body):
    """
    Run an async task body on a fresh event loop with a dedicated engine.

    Pooled connections are bound to the loop that opened them, so each task
    invocation gets its own unpooled engine.
    """

    async def runner():
        task_engine = create_async_engine(settings.database_url, poolclass=NullPool)
        try:
            return await body(create_session_factory(task_engine))
        finally:
            await task_engine.dispose()

    return asyncio.run(runner())


@celery_app.task(bind=True, base=BaseTask, name="capture_service.worker.reclaim_stale_analysis_claims")
def reclaim_stale_analysis_claims(self) -> dict:
    """Periodic task returning stale in-progress entries to the queue."""
    return _run_with_own_engine(reclaim_stale_claims)


@celery_app.task(bind=True, base=BaseTask, name="capture_service.worker.resubmit_dead_letters")
def resubmit_dead_letters(self) -> int:
    """Periodic task re-submitting transient dead letters, when enabled."""
    if not settings.analysis_auto_resubmit:
        logger.debug("Dead-letter re-submission is disabled")
        return 0
    return _run_with_own_engine(resubmit_retryable_dead_letters)


@celery_app.task(bind=True, name="capture_service.worker.send_publish_event", max_retries=3)
def send_publish_event(self, capture_id: str, published: bool) -> Optional[dict]:
    """
    Send a capture published/unpublished webhook.

    Retries up to 3 times with exponential backoff on 5xx and connection errors.
    """

    async def body(session_factory: async_sessionmaker) -> Optional[WebhookResponse]:
        return await publish_capture_event(session_factory, capture_id, published)

    try:
        ack = _run_with_own_engine(body)
    except httpx.HTTPStatusError as e:
        logger.error(f"Publish webhook HTTP error for capture {capture_id}: {e.response.status_code}")
        # Retry on 5xx errors
        if e.response.status_code >= 500:
            raise self.retry(exc=e, countdown=60 * (2 ** self.request.retries))
        return None
    except httpx.RequestError as e:
        logger.error(f"Publish webhook request error for capture {capture_id}: {e}")
        raise self.retry(exc=e, countdown=60 * (2 ** self.request.retries))

    return ack.model_dump() if ack is not None else None


def trigger_publish_event_if_needed(capture_id: str, published: bool) -> None:
    """
    Queue a publish webhook if stories webhooks are enabled.

    Call this after a capture's `is_public` flag changes.
    """
    if not settings.stories_webhooks_enabled:
        return
    send_publish_event.apply_async(
        args=[capture_id, published],
        countdown=5,  # Small delay to ensure DB is committed
    )
