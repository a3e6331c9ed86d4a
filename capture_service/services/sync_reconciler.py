"""Idempotent reconciliation of captures uploaded by offline devices."""

import logging
from typing import Any, Optional, Sequence, Union
from uuid import uuid4

from pydantic import ValidationError
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from capture_service.config import get_settings
from capture_service.db.models import (
    AnalysisQueueEntry,
    Capture,
    DeviceUpload,
    SyncStatus,
    utcnow,
)
from capture_service.db.session import async_session_maker
from capture_service.errors import ConflictError
from capture_service.schemas.schemas import LocalCapture, SyncRecordStatus, SyncResult
from capture_service.services.analysis_queue import AnalysisQueue, analysis_queue
from capture_service.services.capture_store import CaptureStore, capture_store

logger = logging.getLogger(__name__)

settings = get_settings()

MAX_ERROR_MESSAGE_LENGTH = 2000
UNKNOWN_LOCAL_ID = "unknown"


class SyncReconciler:
    """
    Turns a batch of device-local captures into server captures exactly once.

    The (device_id, device_local_id) pair is the idempotency key: replaying a
    batch returns the server ids created the first time and creates nothing
    new. Every item is reconciled in its own transaction, so one bad item
    never prevents the rest of the batch from syncing.
    """

    def __init__(
        self,
        store: Optional[CaptureStore] = None,
        queue: Optional[AnalysisQueue] = None,
        session_factory: Optional[async_sessionmaker] = None,
        max_batch_size: Optional[int] = None,
    ):
        self.store = store or capture_store
        self.queue = queue or analysis_queue
        self.session_factory = session_factory or async_session_maker
        self.max_batch_size = max_batch_size or settings.sync_max_batch_size

    async def reconcile_batch(
        self,
        device_id: str,
        items: Sequence[Union[LocalCapture, dict[str, Any]]],
    ) -> list[SyncResult]:
        """
        Reconcile a batch of local captures from one device.

        Args:
            device_id: Stable identifier of the uploading device
            items: Local captures, as models or raw payloads

        Returns:
            One SyncResult per item, in input order

        Raises:
            ValueError: if the device id is empty or the batch is too large
        """
        if not device_id:
            raise ValueError("device_id is required")
        if len(items) > self.max_batch_size:
            raise ValueError(
                f"Sync batch of {len(items)} items exceeds the limit of {self.max_batch_size}"
            )

        results = []
        for raw in items:
            try:
                item = raw if isinstance(raw, LocalCapture) else LocalCapture.model_validate(raw)
            except ValidationError as e:
                local_id = _raw_local_id(raw)
                message = f"Invalid capture: {e.error_count()} validation error(s)"
                if local_id != UNKNOWN_LOCAL_ID:
                    await self._record_error(device_id, local_id, message)
                results.append(SyncResult(device_local_id=local_id, status="error", error=message))
                continue
            results.append(await self._reconcile_item(device_id, item))

        synced = sum(1 for r in results if r.ok)
        logger.info(
            f"Device {device_id} sync: {synced} synced, {len(results) - synced} failed "
            f"({len(items)} submitted)"
        )
        return results

    async def _reconcile_item(self, device_id: str, item: LocalCapture) -> SyncResult:
        try:
            async with self.session_factory() as db:
                result = await self._sync_one(db, device_id, item)
                await db.commit()
                return result
        except (IntegrityError, ConflictError) as e:
            # Another sync of the same local capture won the race
            logger.info(f"Concurrent sync of {device_id}/{item.device_local_id}: {e}")
            return await self._result_after_conflict(device_id, item)
        except Exception as e:
            logger.exception(f"Failed to sync {device_id}/{item.device_local_id}: {e}")
            message = str(e) or e.__class__.__name__
            await self._record_error(device_id, item.device_local_id, message)
            return SyncResult(
                device_local_id=item.device_local_id,
                status="error",
                image_url=item.image_url,
                error=message,
            )

    async def _sync_one(self, db: AsyncSession, device_id: str, item: LocalCapture) -> SyncResult:
        now = utcnow()
        record = await self._get_record(db, device_id, item.device_local_id)

        if record is not None and record.status == SyncStatus.SYNCED and record.server_capture_id:
            logger.debug(f"{device_id}/{item.device_local_id} already synced as {record.server_capture_id}")
            return SyncResult(
                device_local_id=item.device_local_id,
                status="synced",
                server_capture_id=record.server_capture_id,
                image_url=item.image_url,
                already_synced=True,
            )

        # Take ownership of the local id before creating anything
        if record is None:
            record = DeviceUpload(
                id=str(uuid4()),
                device_id=device_id,
                device_local_id=item.device_local_id,
                status=SyncStatus.PENDING,
                last_attempt=now,
                created_at=now,
            )
            db.add(record)
            await db.flush()
        else:
            claimed = await db.execute(
                update(DeviceUpload)
                .where(DeviceUpload.id == record.id, DeviceUpload.status != SyncStatus.SYNCED)
                .values(status=SyncStatus.PENDING, last_attempt=now)
                .execution_options(synchronize_session=False)
            )
            if claimed.rowcount == 0:
                raise ConflictError(f"{device_id}/{item.device_local_id} was synced concurrently")

        capture, _ = await self.store.submit_capture(db, item.to_capture_create(), queue=self.queue)

        await db.execute(
            update(DeviceUpload)
            .where(DeviceUpload.id == record.id)
            .values(
                status=SyncStatus.SYNCED,
                server_capture_id=capture.id,
                error_message=None,
                last_attempt=now,
            )
            .execution_options(synchronize_session=False)
        )

        return SyncResult(
            device_local_id=item.device_local_id,
            status="synced",
            server_capture_id=capture.id,
            image_url=capture.image_url,
        )

    async def _result_after_conflict(self, device_id: str, item: LocalCapture) -> SyncResult:
        async with self.session_factory() as db:
            record = await self._get_record(db, device_id, item.device_local_id)

        if record is not None and record.status == SyncStatus.SYNCED and record.server_capture_id:
            return SyncResult(
                device_local_id=item.device_local_id,
                status="synced",
                server_capture_id=record.server_capture_id,
                image_url=item.image_url,
                already_synced=True,
            )
        return SyncResult(
            device_local_id=item.device_local_id,
            status="error",
            image_url=item.image_url,
            error=(record.error_message if record is not None else None)
            or "Capture is being synced by another request",
        )

    async def _record_error(self, device_id: str, device_local_id: str, message: str) -> None:
        """Upsert the device record as `error`; a synced record is never downgraded."""
        message = message[:MAX_ERROR_MESSAGE_LENGTH]
        now = utcnow()
        try:
            async with self.session_factory() as db:
                record = await self._get_record(db, device_id, device_local_id)
                if record is None:
                    db.add(
                        DeviceUpload(
                            id=str(uuid4()),
                            device_id=device_id,
                            device_local_id=device_local_id,
                            status=SyncStatus.ERROR,
                            error_message=message,
                            last_attempt=now,
                            created_at=now,
                        )
                    )
                else:
                    await db.execute(
                        update(DeviceUpload)
                        .where(DeviceUpload.id == record.id, DeviceUpload.status != SyncStatus.SYNCED)
                        .values(status=SyncStatus.ERROR, error_message=message, last_attempt=now)
                        .execution_options(synchronize_session=False)
                    )
                await db.commit()
        except SQLAlchemyError as e:
            logger.error(f"Could not record sync error for {device_id}/{device_local_id}: {e}")

    async def _get_record(
        self,
        db: AsyncSession,
        device_id: str,
        device_local_id: str,
    ) -> Optional[DeviceUpload]:
        result = await db.execute(
            select(DeviceUpload)
            .where(
                DeviceUpload.device_id == device_id,
                DeviceUpload.device_local_id == device_local_id,
            )
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_sync_status(
        self,
        device_id: str,
        device_local_ids: Optional[Sequence[str]] = None,
    ) -> list[SyncRecordStatus]:
        """
        Sync state of a device's uploads, joined with each linked capture's
        deletion flag and latest analysis status.
        """
        async with self.session_factory() as db:
            query = (
                select(DeviceUpload, Capture.is_deleted, Capture.vision_result)
                .outerjoin(Capture, Capture.id == DeviceUpload.server_capture_id)
                .where(DeviceUpload.device_id == device_id)
                .order_by(DeviceUpload.created_at, DeviceUpload.device_local_id)
            )
            if device_local_ids is not None:
                query = query.where(DeviceUpload.device_local_id.in_(list(device_local_ids)))
            rows = (await db.execute(query)).all()

            capture_ids = [record.server_capture_id for record, _, _ in rows if record.server_capture_id]
            latest_status = {}
            if capture_ids:
                entries = await db.execute(
                    select(AnalysisQueueEntry.capture_id, AnalysisQueueEntry.status)
                    .where(AnalysisQueueEntry.capture_id.in_(capture_ids))
                    .order_by(AnalysisQueueEntry.created_at, AnalysisQueueEntry.id)
                )
                for capture_id, status in entries.all():
                    latest_status[capture_id] = status

        return [
            SyncRecordStatus(
                device_local_id=record.device_local_id,
                status=record.status,
                server_capture_id=record.server_capture_id,
                error_message=record.error_message,
                last_attempt=record.last_attempt,
                capture_deleted=bool(is_deleted),
                analysis_status=latest_status.get(record.server_capture_id),
                analyzed=vision_result is not None,
            )
            for record, is_deleted, vision_result in rows
        ]


def _raw_local_id(raw: Any) -> str:
    if isinstance(raw, dict):
        value = raw.get("device_local_id") or raw.get("localId")
        if value:
            return str(value)[:255]
    return UNKNOWN_LOCAL_ID


# Singleton instance
sync_reconciler = SyncReconciler()
