"""API endpoint tests.

The application is created without a hosted worker and its state is wired
to the per-test database directly (httpx.ASGITransport does not run the
lifespan).
"""

import httpx
import pytest
import pytest_asyncio

from cardart.app import create_app
from cardart.models.image_job import JobStatus
from cardart.models.image_slot import SlotStatus, SlotType

URL = "https://img.example.com/card.jpg"


@pytest_asyncio.fixture
async def client(settings, session_factory, uow_factory):
    app = create_app(settings, start_worker=False)
    app.state.session_factory = session_factory
    app.state.uow_factory = uow_factory
    app.state.worker = None

    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app), base_url="http://test"
    ) as client:
        yield client


async def _failed_slot(uow_factory, slot_type: SlotType, retry_count: int = 0) -> None:
    async with await uow_factory() as uow:
        slot = await uow.slots.claim_for_processing("print-1", slot_type, URL)
        slot.retry_count = retry_count
        slot.mark_failed("FetchError: HTTP 503", max_retries=3)
        await uow.slots.save(slot)


@pytest.mark.asyncio
async def test_health_reports_queue_counts(client):
    response = await client.get("/health")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["queue"]["waiting"] == 0


@pytest.mark.asyncio
async def test_health_unhealthy_on_high_failure_rate(client, uow_factory):
    async with await uow_factory() as uow:
        for _ in range(3):
            await uow.jobs.enqueue({"printId": "p", "imageUrls": {"normal": URL}})
    for _ in range(3):
        async with await uow_factory() as uow:
            job = await uow.jobs.claim_next()
            await uow.jobs.fail(job, "bad", retryable=False)

    response = await client.get("/health")

    assert response.status_code == 503
    body = response.json()
    assert body["status"] == "unhealthy"
    assert body["error"]["message"] == "High failure rate: 75%"


@pytest.mark.asyncio
async def test_stats_without_worker(client, uow_factory):
    async with await uow_factory() as uow:
        await uow.jobs.enqueue({"printId": "p", "imageUrls": {"normal": URL}})
        await uow.system_state.set_queue_paused(True)

    response = await client.get("/api/images/stats")

    assert response.status_code == 200
    body = response.json()
    assert body["waiting"] == 1
    assert body["paused"] is True
    assert body["healthy"] is True
    assert body["total_processed"] == 0


@pytest.mark.asyncio
async def test_reprocess_failed_slots(client, uow_factory, create_print):
    await create_print()
    await _failed_slot(uow_factory, SlotType.NORMAL)
    await _failed_slot(uow_factory, SlotType.ART_CROP)
    await _failed_slot(uow_factory, SlotType.LARGE, retry_count=3)

    response = await client.post("/api/images/reprocess", json={})

    assert response.status_code == 202
    assert response.json() == {"slots_selected": 2, "jobs_enqueued": 1}
    async with await uow_factory() as uow:
        (job,) = await uow.jobs.list_by_status(JobStatus.WAITING)
        large = await uow.slots.get("print-1", SlotType.LARGE)
    assert set(job.payload["imageUrls"]) == {"normal", "artCrop"}
    assert large.status == SlotStatus.FAILED


@pytest.mark.asyncio
async def test_reprocess_include_exhausted(client, uow_factory, create_print):
    await create_print()
    await _failed_slot(uow_factory, SlotType.LARGE, retry_count=3)

    response = await client.post(
        "/api/images/reprocess",
        json={"include_exhausted": True, "slot_types": ["large"], "print_ids": ["print-1"]},
    )

    assert response.json() == {"slots_selected": 1, "jobs_enqueued": 1}


@pytest.mark.asyncio
async def test_reprocess_rejects_queued_status(client):
    response = await client.post("/api/images/reprocess", json={"statuses": ["queued"]})

    assert response.status_code == 400


@pytest.mark.asyncio
async def test_reprocess_rejects_unknown_status(client):
    response = await client.post("/api/images/reprocess", json={"statuses": ["lost"]})

    assert response.status_code == 422


@pytest.mark.asyncio
async def test_get_print_images(client, uow_factory, create_print):
    await create_print()
    await _failed_slot(uow_factory, SlotType.NORMAL)

    response = await client.get("/api/images/prints/print-1")

    assert response.status_code == 200
    body = response.json()
    assert body["print_id"] == "print-1"
    assert body["image_processing_status"] == "pending"
    (slot,) = body["slots"]
    assert slot["slot_type"] == "normal"
    assert slot["status"] == "failed"
    assert slot["retry_count"] == 1
    assert slot["storage_urls"] is None


@pytest.mark.asyncio
async def test_get_print_images_not_found(client):
    response = await client.get("/api/images/prints/unknown")

    assert response.status_code == 404
    assert response.json()["detail"] == "Print unknown not found"
