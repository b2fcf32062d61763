"""Job processing tests.

Tests focus on end-to-end behaviour of one image job:
- Slots sharing a canonical URL are fetched and stored once
- A failing unit leaves the rest of the job intact
- Repeated failures retry with backoff until the cap, then stay failed
"""

import pytest
from pydantic import ValidationError
from structlog.testing import capture_logs

from cardart.models.image_job import JobStatus
from cardart.models.image_slot import SlotStatus, SlotType
from cardart.services.exceptions import NotFoundError
from cardart.services.images.schemas import ImageJobPayload

NORMAL_URL = "https://img.example.com/card.jpg?v=1"
ART_CROP_URL = "https://img.example.com/card.jpg?v=2"
LARGE_URL = "https://img.example.com/large.jpg"
BROKEN_URL = "https://img.example.com/broken.jpg"


def _payload(image_urls: dict, print_id: str = "print-1") -> ImageJobPayload:
    return ImageJobPayload(print_id=print_id, image_urls=image_urls)


@pytest.mark.asyncio
async def test_shared_url_is_processed_once(
    processor, image_server, make_image, uow_factory, create_print
):
    """normal and artCrop differ only by query string; large is its own image."""
    await create_print()
    image_server.add(NORMAL_URL, make_image(color=(200, 40, 40)))
    image_server.add(LARGE_URL, make_image(color=(40, 40, 200)))

    result = await processor.process(
        _payload(
            {
                SlotType.NORMAL: NORMAL_URL,
                SlotType.ART_CROP: ART_CROP_URL,
                SlotType.LARGE: LARGE_URL,
            }
        )
    )

    assert result.success is True
    assert result.total_processed == 3
    assert result.total_failed == 0
    assert image_server.requests == [NORMAL_URL, LARGE_URL]
    assert result.optimization_stats.unique_images_processed == 2
    assert result.optimization_stats.total_image_types == 3
    assert result.optimization_stats.deduplication_ratio == pytest.approx(1 / 3)

    by_type = {image.type: image for image in result.processed_images}
    assert by_type[SlotType.NORMAL].urls == by_type[SlotType.ART_CROP].urls
    assert by_type[SlotType.NORMAL].hash == by_type[SlotType.ART_CROP].hash
    assert by_type[SlotType.NORMAL].is_shared_storage is True
    assert by_type[SlotType.LARGE].is_shared_storage is False
    assert by_type[SlotType.LARGE].urls != by_type[SlotType.NORMAL].urls

    async with await uow_factory() as uow:
        slots = {slot.slot_type: slot for slot in await uow.slots.get_for_print("print-1")}
        print_ = await uow.prints.get_by_id("print-1")

    assert all(slot.status == SlotStatus.COMPLETED for slot in slots.values())
    assert slots[SlotType.NORMAL].storage_urls == slots[SlotType.ART_CROP].storage_urls
    assert slots[SlotType.ART_CROP].source_url == ART_CROP_URL
    assert print_.image_normal == slots[SlotType.NORMAL].storage_urls["normal"]
    assert print_.image_art_crop == slots[SlotType.ART_CROP].storage_urls["normal"]
    assert print_.perceptual_hash == slots[SlotType.NORMAL].perceptual_hash
    assert print_.image_processing_status == SlotStatus.COMPLETED
    assert print_.image_processed_at is not None


@pytest.mark.asyncio
async def test_result_serializes_to_camel_case(processor, image_server, image_bytes, create_print):
    await create_print()
    image_server.add(LARGE_URL, image_bytes)

    result = await processor.process(_payload({SlotType.LARGE: LARGE_URL}))
    wire = result.to_wire()

    assert wire["printId"] == "print-1"
    assert wire["optimizationStats"]["uniqueImagesProcessed"] == 1
    assert wire["processedImages"][0]["type"] == "large"
    assert wire["processedImages"][0]["isSharedStorage"] is False


@pytest.mark.asyncio
async def test_partial_failure_keeps_successful_slots(
    processor, image_server, image_bytes, uow_factory, create_print
):
    await create_print()
    image_server.add(NORMAL_URL, image_bytes)
    image_server.add(BROKEN_URL, b"<html>not an image</html>")

    with capture_logs() as logs:
        result = await processor.process(
            _payload({SlotType.NORMAL: NORMAL_URL, SlotType.BORDER_CROP: BROKEN_URL})
        )

    assert result.success is False
    assert result.total_processed == 1
    assert result.total_failed == 1
    failed = next(image for image in result.processed_images if not image.success)
    assert failed.type == SlotType.BORDER_CROP
    assert failed.error.startswith("DecodeError")

    async with await uow_factory() as uow:
        normal = await uow.slots.get("print-1", SlotType.NORMAL)
        border = await uow.slots.get("print-1", SlotType.BORDER_CROP)
        print_ = await uow.prints.get_by_id("print-1")

    assert normal.status == SlotStatus.COMPLETED
    assert border.status == SlotStatus.RETRY
    assert border.retry_count == 1
    assert border.storage_urls is None
    assert border.error_message.startswith("DecodeError")
    assert print_.image_processing_status == SlotStatus.RETRY
    assert print_.image_normal is not None
    assert print_.image_border_crop is None

    events = [entry["event"] for entry in logs]
    assert "image_unit.failed" in events
    assert "image_unit.retry_scheduled" in events


@pytest.mark.asyncio
async def test_failing_source_retries_until_cap(processor, image_server, uow_factory, create_print):
    """A permanently unavailable source is attempted three times, then left failed."""
    await create_print()
    image_server.add(NORMAL_URL, b"unavailable", status=503)
    payload = _payload({SlotType.NORMAL: NORMAL_URL})

    expected = [(1, SlotStatus.RETRY), (2, SlotStatus.RETRY), (3, SlotStatus.FAILED)]
    for retry_count, status in expected:
        result = await processor.process(payload)
        assert result.success is False

        async with await uow_factory() as uow:
            slot = await uow.slots.get("print-1", SlotType.NORMAL)
        assert slot.retry_count == retry_count
        assert slot.status == status
        assert "503" in slot.error_message

    async with await uow_factory() as uow:
        retry_jobs = await uow.jobs.list_by_status(JobStatus.WAITING)
        print_ = await uow.prints.get_by_id("print-1")

    assert len(retry_jobs) == 2
    assert all(job.priority == 3 for job in retry_jobs)
    assert all(job.payload["imageUrls"] == {"normal": NORMAL_URL} for job in retry_jobs)
    assert print_.image_processing_status == SlotStatus.FAILED
    assert len(image_server.requests) == 3


@pytest.mark.asyncio
async def test_retry_job_is_delayed_by_backoff(processor, image_server, uow_factory, create_print):
    await create_print()
    image_server.add(NORMAL_URL, b"", status=500)

    await processor.process(_payload({SlotType.NORMAL: NORMAL_URL}))

    async with await uow_factory() as uow:
        slot = await uow.slots.get("print-1", SlotType.NORMAL)
        counts = await uow.jobs.counts()
        (job,) = await uow.jobs.list_by_status(JobStatus.WAITING)

    assert counts["delayed"] == 1
    assert job.available_at == slot.next_retry_at


@pytest.mark.asyncio
async def test_missing_print_raises_not_found(processor, image_server, image_bytes, uow_factory):
    image_server.add(NORMAL_URL, image_bytes)

    with pytest.raises(NotFoundError, match="missing-print"):
        await processor.process(_payload({SlotType.NORMAL: NORMAL_URL}, print_id="missing-print"))

    assert image_server.requests == []
    async with await uow_factory() as uow:
        assert await uow.slots.get_for_print("missing-print") == []


def test_empty_job_payload_is_invalid():
    with pytest.raises(ValidationError):
        _payload({})


@pytest.mark.asyncio
async def test_empty_job_is_rejected(processor):
    payload = ImageJobPayload.model_construct(print_id="print-1", image_urls={})

    with pytest.raises(ValueError, match="no image URLs"):
        await processor.process(payload)


@pytest.mark.asyncio
async def test_producer_mapping_and_normalized_urls_share_storage(
    processor, image_server, image_bytes, uow_factory, create_print
):
    """A mapped slot and a later unmapped slot of the same image share keys and hash."""
    await create_print()
    image_server.add(NORMAL_URL, image_bytes)
    image_server.add(ART_CROP_URL, image_bytes)

    await processor.process(
        ImageJobPayload(
            print_id="print-1",
            image_urls={SlotType.NORMAL: NORMAL_URL},
            url_mapping={"https://IMG.example.com/card.jpg": [SlotType.NORMAL]},
        )
    )
    await processor.process(_payload({SlotType.ART_CROP: ART_CROP_URL}))

    async with await uow_factory() as uow:
        normal = await uow.slots.get("print-1", SlotType.NORMAL)
        art_crop = await uow.slots.get("print-1", SlotType.ART_CROP)

    assert normal.status == art_crop.status == SlotStatus.COMPLETED
    assert normal.storage_urls == art_crop.storage_urls
    assert normal.perceptual_hash == art_crop.perceptual_hash


@pytest.mark.asyncio
async def test_reprocessing_replaces_previous_variants(
    processor, image_server, make_image, uow_factory, create_print
):
    await create_print()
    new_url = "https://img.example.com/card-v2.jpg"
    image_server.add(NORMAL_URL, make_image(color=(200, 40, 40)))
    image_server.add(new_url, make_image(color=(40, 200, 40)))

    first = await processor.process(_payload({SlotType.NORMAL: NORMAL_URL}))
    second = await processor.process(_payload({SlotType.NORMAL: new_url}))

    async with await uow_factory() as uow:
        slot = await uow.slots.get("print-1", SlotType.NORMAL)

    assert slot.status == SlotStatus.COMPLETED
    assert slot.source_url == new_url
    assert slot.storage_urls == second.processed_images[0].urls
    assert slot.storage_urls != first.processed_images[0].urls
    assert slot.perceptual_hash != first.processed_images[0].hash
