"""Tests for device sync reconciliation."""

import pytest
from sqlalchemy import func, select

from capture_service.db.models import Capture, DeviceUpload, QueueStatus, SyncStatus
from capture_service.schemas.schemas import LocalCapture, SyncBatchResponse
from capture_service.services.analysis_worker import AnalysisWorker
from capture_service.services.capture_store import CaptureStore
from capture_service.services.sync_reconciler import SyncReconciler

DEVICE = "device-1234"


def local(local_id: str, **fields) -> dict:
    payload = {"localId": local_id, "imageUrl": f"https://bucket.s3.amazonaws.com/captures/{local_id}.jpg"}
    payload.update(fields)
    return payload


async def count_captures(session_factory) -> int:
    async with session_factory() as db:
        return (await db.execute(select(func.count()).select_from(Capture))).scalar()


async def get_record(session_factory, local_id: str) -> DeviceUpload:
    async with session_factory() as db:
        result = await db.execute(
            select(DeviceUpload).where(
                DeviceUpload.device_id == DEVICE, DeviceUpload.device_local_id == local_id
            )
        )
        return result.scalar_one()


@pytest.fixture
def reconciler(session_factory, queue) -> SyncReconciler:
    return SyncReconciler(queue=queue, session_factory=session_factory, max_batch_size=10)


class FlakyStore(CaptureStore):
    """Capture store that fails for selected image URLs."""

    def __init__(self, failing_urls):
        super().__init__()
        self.failing_urls = set(failing_urls)

    async def create_capture(self, db, data):
        if data.image_url in self.failing_urls:
            raise RuntimeError("object storage reference rejected")
        return await super().create_capture(db, data)


@pytest.mark.asyncio
async def test_new_batch_creates_and_queues_captures(session_factory, queue, reconciler):
    """Each new local capture becomes one server capture with a queue entry."""
    results = await reconciler.reconcile_batch(
        DEVICE,
        [
            local("local-1", location={"latitude": 40.4, "longitude": -3.7}),
            local("local-2", timestamp="2026-10-18T09:30:00Z"),
        ],
    )

    assert [r.status for r in results] == ["synced", "synced"]
    assert all(not r.already_synced for r in results)
    assert results[0].server_capture_id != results[1].server_capture_id
    assert await count_captures(session_factory) == 2

    async with session_factory() as db:
        for result in results:
            entry = await queue.get_active_entry(db, result.server_capture_id)
            assert entry.status == QueueStatus.PENDING
        capture = await db.get(Capture, results[0].server_capture_id)
        assert capture.device_local_id == "local-1"
        assert capture.location == {"latitude": 40.4, "longitude": -3.7}

    record = await get_record(session_factory, "local-1")
    assert record.status == SyncStatus.SYNCED
    assert record.server_capture_id == results[0].server_capture_id


@pytest.mark.asyncio
async def test_replayed_batch_is_idempotent(session_factory, reconciler):
    """Re-sending a batch returns the original server ids and creates nothing."""
    batch = [local("local-1"), local("local-2")]
    first = await reconciler.reconcile_batch(DEVICE, batch)
    second = await reconciler.reconcile_batch(DEVICE, batch)

    assert [r.server_capture_id for r in second] == [r.server_capture_id for r in first]
    assert all(r.already_synced for r in second)
    assert await count_captures(session_factory) == 2

    async with session_factory() as db:
        records = (await db.execute(select(func.count()).select_from(DeviceUpload))).scalar()
    assert records == 2


@pytest.mark.asyncio
async def test_same_local_id_on_other_device_is_distinct(session_factory, reconciler):
    first = await reconciler.reconcile_batch(DEVICE, [local("local-1")])
    other = await reconciler.reconcile_batch("device-9999", [local("local-1")])

    assert other[0].already_synced is False
    assert other[0].server_capture_id != first[0].server_capture_id
    assert await count_captures(session_factory) == 2


@pytest.mark.asyncio
async def test_invalid_item_does_not_abort_batch(session_factory, reconciler):
    results = await reconciler.reconcile_batch(
        DEVICE,
        [local("local-1"), {"localId": "local-2"}, local("local-3")],
    )

    assert [r.status for r in results] == ["synced", "error", "synced"]
    assert results[1].device_local_id == "local-2"
    assert "validation" in results[1].error
    assert await count_captures(session_factory) == 2


@pytest.mark.asyncio
async def test_item_failure_is_recorded_and_retried(session_factory, queue):
    """A failing item is reported and recorded; a later retry syncs it."""
    bad = local("local-2")
    flaky = SyncReconciler(
        store=FlakyStore([bad["imageUrl"]]),
        queue=queue,
        session_factory=session_factory,
    )

    results = await flaky.reconcile_batch(DEVICE, [local("local-1"), bad, local("local-3")])
    assert [r.status for r in results] == ["synced", "error", "synced"]
    assert results[1].error == "object storage reference rejected"
    assert await count_captures(session_factory) == 2

    record = await get_record(session_factory, "local-2")
    assert record.status == SyncStatus.ERROR
    assert record.error_message == "object storage reference rejected"
    assert record.server_capture_id is None
    assert record.last_attempt is not None

    response = SyncBatchResponse.from_results(results)
    assert [s.device_local_id for s in response.synced] == ["local-1", "local-3"]
    assert [(f.device_local_id, f.error) for f in response.failed] == [
        ("local-2", "object storage reference rejected")
    ]

    healthy = SyncReconciler(queue=queue, session_factory=session_factory)
    retry = await healthy.reconcile_batch(DEVICE, [bad])
    assert retry[0].status == "synced"
    assert retry[0].already_synced is False

    record = await get_record(session_factory, "local-2")
    assert record.status == SyncStatus.SYNCED
    assert record.error_message is None
    assert record.server_capture_id == retry[0].server_capture_id
    assert await count_captures(session_factory) == 3


@pytest.mark.asyncio
async def test_concurrent_sync_conflict_returns_existing_record(session_factory, queue, reconciler):
    """Losing the insert race on a local id reports the winner's capture."""
    first = await reconciler.reconcile_batch(DEVICE, [local("local-1")])

    class RacingReconciler(SyncReconciler):
        # The first lookup misses, as if the other sync had not committed yet
        lookups = 0

        async def _get_record(self, db, device_id, device_local_id):
            self.lookups += 1
            if self.lookups == 1:
                return None
            return await super()._get_record(db, device_id, device_local_id)

    racing = RacingReconciler(queue=queue, session_factory=session_factory)
    results = await racing.reconcile_batch(DEVICE, [local("local-1")])

    assert results[0].status == "synced"
    assert results[0].already_synced is True
    assert results[0].server_capture_id == first[0].server_capture_id
    assert await count_captures(session_factory) == 1


@pytest.mark.asyncio
async def test_batch_limits(reconciler):
    with pytest.raises(ValueError):
        await reconciler.reconcile_batch(DEVICE, [local(f"local-{n}") for n in range(11)])

    with pytest.raises(ValueError):
        await reconciler.reconcile_batch("", [local("local-1")])

    assert await reconciler.reconcile_batch(DEVICE, []) == []


@pytest.mark.asyncio
async def test_device_vision_result(session_factory, queue, reconciler, analyzer):
    """An empty device result still gets analyzed; a real one is kept."""
    results = await reconciler.reconcile_batch(
        DEVICE,
        [
            local("local-1", vision_result={}),
            local("local-2", vision_result={"category": "ANIMAL", "confidence": 0.8}),
        ],
    )

    worker = AnalysisWorker(analyzer, queue=queue, session_factory=session_factory, worker_id="w")
    assert await worker.drain() == 2
    assert len(analyzer.calls) == 1

    async with session_factory() as db:
        analyzed = await db.get(Capture, results[0].server_capture_id)
        kept = await db.get(Capture, results[1].server_capture_id)
    assert analyzed.category == "LANDMARK"
    assert kept.category == "ANIMAL"


@pytest.mark.asyncio
async def test_get_sync_status(session_factory, queue, reconciler, analyzer):
    results = await reconciler.reconcile_batch(DEVICE, [local("local-1"), local("local-2")])

    statuses = await reconciler.get_sync_status(DEVICE)
    assert [s.device_local_id for s in statuses] == ["local-1", "local-2"]
    assert all(s.status == SyncStatus.SYNCED for s in statuses)
    assert all(s.analysis_status == QueueStatus.PENDING for s in statuses)
    assert not any(s.analyzed for s in statuses)

    worker = AnalysisWorker(analyzer, queue=queue, session_factory=session_factory, worker_id="w")
    await worker.drain(max_items=1)

    statuses = await reconciler.get_sync_status(DEVICE, device_local_ids=["local-1"])
    assert len(statuses) == 1
    assert statuses[0].server_capture_id == results[0].server_capture_id
    assert statuses[0].analysis_status == QueueStatus.DONE
    assert statuses[0].analyzed is True
    assert statuses[0].capture_deleted is False

    assert await reconciler.get_sync_status("unknown-device") == []


def test_local_capture_accepts_both_spellings():
    camel = LocalCapture.model_validate({"localId": "a", "imageUrl": "https://x/a.jpg"})
    snake = LocalCapture.model_validate({"device_local_id": "a", "image_url": "https://x/a.jpg"})
    assert camel.device_local_id == snake.device_local_id == "a"
    assert camel.to_capture_create().device_local_id == "a"


@pytest.mark.asyncio
async def test_invalid_retry_updates_device_record(session_factory, queue):
    """The device record reflects the latest attempt, even one that fails validation."""
    bad = local("local-2")
    flaky = SyncReconciler(store=FlakyStore([bad["imageUrl"]]), queue=queue, session_factory=session_factory)
    await flaky.reconcile_batch(DEVICE, [bad])

    first = await get_record(session_factory, "local-2")
    assert first.error_message == "object storage reference rejected"

    healthy = SyncReconciler(queue=queue, session_factory=session_factory)
    results = await healthy.reconcile_batch(DEVICE, [{"localId": "local-2", "imageUrl": ""}])
    assert results[0].status == "error"

    record = await get_record(session_factory, "local-2")
    assert record.status == SyncStatus.ERROR
    assert record.error_message == results[0].error
    assert "validation" in record.error_message
    assert record.last_attempt > first.last_attempt


@pytest.mark.asyncio
async def test_invalid_replay_keeps_synced_record(session_factory, reconciler):
    first = await reconciler.reconcile_batch(DEVICE, [local("local-1")])
    await reconciler.reconcile_batch(DEVICE, [{"localId": "local-1"}])

    record = await get_record(session_factory, "local-1")
    assert record.status == SyncStatus.SYNCED
    assert record.server_capture_id == first[0].server_capture_id
    assert record.error_message is None
