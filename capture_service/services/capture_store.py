"""Capture persistence service."""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional
from uuid import uuid4

from pydantic import BaseModel
from sqlalchemy import JSON, delete, func, insert, literal, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from capture_service.config import get_settings
from capture_service.db.models import (
    AnalysisQueueEntry,
    AnalysisResult,
    Capture,
    CaptureTag,
    Difficulty,
    Tag,
    utcnow,
)
from capture_service.errors import NotFoundError
from capture_service.schemas.schemas import (
    CaptureCreate,
    CaptureFilter,
    CapturePage,
    CaptureResponse,
    CaptureUpdate,
    VisionResult,
    normalize_tags,
)
from capture_service.services.analysis_queue import AnalysisQueue, analysis_queue
from capture_service.worker import trigger_publish_event_if_needed

logger = logging.getLogger(__name__)

settings = get_settings()


def _as_json(model: Optional[BaseModel]) -> Optional[dict]:
    if model is None:
        return None
    return model.model_dump(mode="json", exclude_none=True)


def _next_updated_at(previous: Optional[datetime]) -> datetime:
    """A timestamp strictly after `previous`, even if the clock stalls or steps back."""
    now = utcnow()
    if previous is None:
        return now
    if previous.tzinfo is None:
        # SQLite hands back naive UTC values
        previous = previous.replace(tzinfo=timezone.utc)
    return max(now, previous + timedelta(microseconds=1))


class CaptureStore:
    """Service for creating, reading and mutating captures."""

    def __init__(self, visibility_listener: Optional[Callable[[str, bool], None]] = None):
        # Called with (capture_id, is_public) whenever a capture's visibility flips
        self.visibility_listener = visibility_listener

    async def create_capture(self, db: AsyncSession, data: CaptureCreate) -> Capture:
        """
        Create a new capture.

        Args:
            db: Database session
            data: Capture data

        Returns:
            The created Capture (flushed, not committed)
        """
        vision = data.vision_result
        tags = data.tags if data.tags is not None else (vision.tags if vision else None)

        capture = Capture(
            id=str(uuid4()),
            user_id=data.user_id,
            author_name=data.author_name,
            device_local_id=data.device_local_id,
            image_url=data.image_url,
            thumbnail_url=data.thumbnail_url,
            image_size=data.image_size,
            storage_type=data.storage_type,
            vision_result=vision.to_storage() if vision else None,
            category=data.category or (vision.category if vision else None),
            confidence=data.confidence if data.confidence is not None else (vision.confidence if vision else None),
            tags=tags,
            difficulty=vision.difficulty if vision else Difficulty.MEDIUM,
            verified=vision.verified if vision else False,
            location=_as_json(data.location),
            location_info=_as_json(data.location_info),
            orientation=_as_json(data.orientation),
            captured_at=data.captured_at,
            is_public=data.is_public,
            is_deleted=False,
        )
        db.add(capture)
        await db.flush()

        if capture.tags:
            await self._replace_tag_links(db, capture.id, capture.tags)

        return capture

    async def submit_capture(
        self,
        db: AsyncSession,
        data: CaptureCreate,
        queue: Optional[AnalysisQueue] = None,
    ) -> tuple[Capture, AnalysisQueueEntry]:
        """Create a capture and queue it for analysis in the caller's transaction."""
        capture = await self.create_capture(db, data)
        entry = await (queue or analysis_queue).enqueue(db, capture.id)
        logger.info(f"Capture {capture.id} created and queued for analysis as {entry.id}")
        return capture, entry

    async def get_capture(
        self,
        db: AsyncSession,
        capture_id: str,
        include_deleted: bool = False,
    ) -> Capture:
        """
        Get a capture by ID.

        Raises:
            NotFoundError: if the capture does not exist, or is soft-deleted
                and `include_deleted` is not set
        """
        query = (
            select(Capture)
            .where(Capture.id == capture_id)
            .execution_options(populate_existing=True)
        )
        if not include_deleted:
            query = query.where(Capture.is_deleted.is_(False))

        capture = (await db.execute(query)).scalar_one_or_none()
        if capture is None:
            raise NotFoundError("Capture", capture_id)
        return capture

    async def update_capture(
        self,
        db: AsyncSession,
        capture_id: str,
        changes: CaptureUpdate,
    ) -> Capture:
        """Apply a partial update of user-owned fields; unset fields are left untouched."""
        fields = changes.changes()
        if not fields:
            return await self.get_capture(db, capture_id)

        was_public, updated_at = await self._lock_for_update(db, capture_id)
        values: dict[str, Any] = dict(fields)
        values["updated_at"] = _next_updated_at(updated_at)

        result = await db.execute(
            update(Capture)
            .where(Capture.id == capture_id, Capture.is_deleted.is_(False))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise NotFoundError("Capture", capture_id)

        if "tags" in fields:
            await self._replace_tag_links(db, capture_id, fields["tags"] or [])

        capture = await self.get_capture(db, capture_id)
        if capture.is_public != was_public:
            logger.info(f"Capture {capture_id} {'published' if capture.is_public else 'unpublished'}")
            if self.visibility_listener is not None:
                self.visibility_listener(capture_id, capture.is_public)
        return capture

    async def soft_delete_capture(self, db: AsyncSession, capture_id: str) -> None:
        """Mark a capture deleted. The row is kept for audit."""
        _, updated_at = await self._lock_for_update(db, capture_id)
        result = await db.execute(
            update(Capture)
            .where(Capture.id == capture_id, Capture.is_deleted.is_(False))
            .values(is_deleted=True, updated_at=_next_updated_at(updated_at))
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise NotFoundError("Capture", capture_id)

    async def request_reanalysis(
        self,
        db: AsyncSession,
        capture_id: str,
        queue: Optional[AnalysisQueue] = None,
    ) -> AnalysisQueueEntry:
        """Queue a capture to run through the analyzer again, replacing its current result."""
        entry = await (queue or analysis_queue).enqueue(db, capture_id, reanalyze=True)
        logger.info(f"Capture {capture_id} queued for re-analysis as {entry.id}")
        return entry

    async def list_captures(
        self,
        db: AsyncSession,
        filters: Optional[CaptureFilter] = None,
        page: int = 1,
        page_size: Optional[int] = None,
    ) -> CapturePage:
        """List captures, newest first. Soft-deleted captures are excluded by default."""
        filters = filters or CaptureFilter()
        page_size = min(page_size or settings.default_page_size, settings.max_page_size)
        if page < 1 or page_size < 1:
            raise ValueError("page and page_size must be positive")

        query = select(Capture)

        if not filters.include_deleted:
            query = query.where(Capture.is_deleted.is_(False))
        if filters.user_id:
            query = query.where(Capture.user_id == filters.user_id)
        if filters.category:
            query = query.where(Capture.category == filters.category)
        if filters.difficulty:
            query = query.where(Capture.difficulty == filters.difficulty)
        if filters.verified is not None:
            query = query.where(Capture.verified == filters.verified)
        if filters.is_public is not None:
            query = query.where(Capture.is_public == filters.is_public)
        if filters.tag:
            tag_name = (normalize_tags([filters.tag]) or [""])[0]
            tagged = (
                select(CaptureTag.capture_id)
                .join(Tag, Tag.id == CaptureTag.tag_id)
                .where(Tag.name == tag_name)
            )
            query = query.where(Capture.id.in_(tagged))

        # Get total count
        count_query = select(func.count()).select_from(query.subquery())
        total = (await db.execute(count_query)).scalar() or 0

        # Apply pagination
        query = (
            query.order_by(Capture.created_at.desc(), Capture.id.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        captures = list((await db.execute(query)).scalars().all())

        total_pages = (total + page_size - 1) // page_size
        return CapturePage(
            captures=[self.to_response(c) for c in captures],
            total=total,
            page=page,
            page_size=page_size,
            total_pages=total_pages,
            has_more=page < total_pages,
        )

    async def apply_analysis(
        self,
        db: AsyncSession,
        capture_id: str,
        result: VisionResult,
        model_name: str,
        model_version: str,
    ) -> Capture:
        """
        Write an analysis result onto a capture and append it to the history.

        Only worker-owned columns are overwritten. `category` and `tags` are
        filled only where the user has not already set them, so a concurrent
        user edit is never lost.
        """
        stored = result.to_storage()
        _, updated_at = await self._lock_for_update(db, capture_id)

        update_result = await db.execute(
            update(Capture)
            .where(Capture.id == capture_id, Capture.is_deleted.is_(False))
            .values(
                vision_result=stored,
                confidence=result.confidence,
                difficulty=result.difficulty,
                verified=result.verified,
                category=func.coalesce(Capture.category, literal(result.category)),
                tags=func.coalesce(Capture.tags, literal(result.tags, JSON)),
                updated_at=_next_updated_at(updated_at),
            )
            .execution_options(synchronize_session=False)
        )
        if update_result.rowcount == 0:
            raise NotFoundError("Capture", capture_id)

        db.add(
            AnalysisResult(
                capture_id=capture_id,
                model_name=model_name,
                model_version=model_version,
                result=stored,
                confidence=result.confidence,
            )
        )
        await db.flush()

        capture = await self.get_capture(db, capture_id)
        await self._replace_tag_links(db, capture_id, capture.tags or [])
        return capture

    async def get_analysis_history(
        self,
        db: AsyncSession,
        capture_id: str,
    ) -> list[AnalysisResult]:
        """Get all analysis results recorded for a capture, newest first."""
        result = await db.execute(
            select(AnalysisResult)
            .where(AnalysisResult.capture_id == capture_id)
            .order_by(AnalysisResult.created_at.desc())
        )
        return list(result.scalars().all())

    async def get_tag_names(self, db: AsyncSession, capture_id: str) -> list[str]:
        """Tag names from the normalized join, sorted."""
        result = await db.execute(
            select(Tag.name)
            .join(CaptureTag, CaptureTag.tag_id == Tag.id)
            .where(CaptureTag.capture_id == capture_id)
            .order_by(Tag.name)
        )
        return list(result.scalars().all())

    async def _lock_for_update(self, db: AsyncSession, capture_id: str) -> tuple[bool, Optional[datetime]]:
        """Lock a live capture row; returns its current visibility and updated_at."""
        row = (
            await db.execute(
                select(Capture.is_public, Capture.updated_at)
                .where(Capture.id == capture_id, Capture.is_deleted.is_(False))
                .with_for_update()
            )
        ).one_or_none()
        if row is None:
            raise NotFoundError("Capture", capture_id)
        return row[0], row[1]

    async def _replace_tag_links(self, db: AsyncSession, capture_id: str, tags: list[str]) -> None:
        """Rewrite capture_tags so it mirrors captures.tags."""
        await db.execute(
            delete(CaptureTag)
            .where(CaptureTag.capture_id == capture_id)
            .execution_options(synchronize_session=False)
        )
        for name in tags:
            tag_id = await self._get_or_create_tag(db, name)
            await db.execute(insert(CaptureTag).values(capture_id=capture_id, tag_id=tag_id))

    async def _get_or_create_tag(self, db: AsyncSession, name: str) -> str:
        query = select(Tag.id).where(Tag.name == name)
        tag_id = (await db.execute(query)).scalar_one_or_none()
        if tag_id is not None:
            return tag_id

        tag_id = str(uuid4())
        try:
            async with db.begin_nested():
                await db.execute(insert(Tag).values(id=tag_id, name=name, created_at=utcnow()))
        except IntegrityError:
            # Inserted concurrently by another transaction
            logger.debug(f"Tag {name!r} created concurrently, re-reading")
            return (await db.execute(query)).scalar_one()
        return tag_id

    def to_response(self, capture: Capture) -> CaptureResponse:
        """Convert Capture model to response schema."""
        return CaptureResponse.model_validate(capture)


# Singleton instance
capture_store = CaptureStore(visibility_listener=trigger_publish_event_if_needed)
