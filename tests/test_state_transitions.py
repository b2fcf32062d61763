"""State transition tests for the ImageSlot model.

Tests focus on validating the slot lifecycle state machine:
- Valid transitions between states
- Invalid transitions are rejected with clear error messages
- retry_count is monotonic and capped
- storage_urls are set exactly while the slot is completed
"""

from datetime import timedelta

import pytest

from cardart.core.timezone import utc_now
from cardart.models.image_slot import ImageSlot, InvalidStateTransition, SlotStatus, SlotType

URLS = {"small": "https://cdn.test/s.webp", "normal": "https://cdn.test/n.webp"}


def _slot(status: SlotStatus = SlotStatus.PENDING, retry_count: int = 0) -> ImageSlot:
    return ImageSlot(
        print_id="print-1",
        slot_type=SlotType.NORMAL,
        source_url="https://img.example.com/n.jpg",
        status=status,
        retry_count=retry_count,
    )


def test_happy_path_transitions():
    """pending → queued → processing → completed."""
    slot = _slot()

    slot.mark_queued()
    assert slot.status == SlotStatus.QUEUED

    slot.mark_processing()
    assert slot.status == SlotStatus.PROCESSING

    slot.mark_completed(URLS, "LKO2?U%2Tw=w")
    assert slot.status == SlotStatus.COMPLETED
    assert slot.storage_urls == URLS
    assert slot.perceptual_hash == "LKO2?U%2Tw=w"
    assert slot.processed_at is not None
    assert slot.error_message is None


def test_failure_and_retry_path():
    """processing → failed → retry → queued."""
    slot = _slot(SlotStatus.PROCESSING)
    retry_at = utc_now() + timedelta(seconds=2)

    slot.mark_failed("FetchError: HTTP 503", max_retries=3)
    assert slot.status == SlotStatus.FAILED
    assert slot.retry_count == 1
    assert slot.error_message == "FetchError: HTTP 503"

    slot.mark_retry(retry_at, max_retries=3)
    assert slot.status == SlotStatus.RETRY
    assert slot.next_retry_at == retry_at

    slot.mark_queued()
    assert slot.status == SlotStatus.QUEUED
    assert slot.next_retry_at is None
    assert slot.retry_count == 1


def test_completion_clears_previous_error():
    slot = _slot(SlotStatus.PROCESSING)
    slot.mark_failed("DecodeError: bad payload", max_retries=3)
    slot.mark_retry(utc_now(), max_retries=3)
    slot.mark_queued()
    slot.mark_processing()

    slot.mark_completed(URLS, None)

    assert slot.error_message is None
    assert slot.retry_count == 1


def test_retry_count_is_capped():
    slot = _slot(SlotStatus.PROCESSING, retry_count=3)

    slot.mark_failed("again", max_retries=3)

    assert slot.retry_count == 3
    assert slot.is_exhausted(3)


def test_retry_rejected_at_cap():
    slot = _slot(SlotStatus.PROCESSING, retry_count=2)
    slot.mark_failed("third failure", max_retries=3)

    with pytest.raises(InvalidStateTransition, match="Retry limit is 3"):
        slot.mark_retry(utc_now(), max_retries=3)


@pytest.mark.parametrize(
    "status", [SlotStatus.FAILED, SlotStatus.COMPLETED, SlotStatus.PROCESSING]
)
def test_requeue_requires_explicit_reprocessing(status):
    slot = _slot(status)

    with pytest.raises(InvalidStateTransition, match="Cannot mark queued"):
        slot.mark_queued()

    slot.mark_queued(reprocess=True)
    assert slot.status == SlotStatus.QUEUED


def test_reprocessing_completed_slot_drops_urls_but_keeps_retry_count():
    slot = _slot(SlotStatus.PROCESSING, retry_count=2)
    slot.mark_completed(URLS, "hash")

    slot.mark_queued(reprocess=True)

    assert slot.storage_urls is None
    assert slot.perceptual_hash is None
    assert slot.retry_count == 2


@pytest.mark.parametrize(
    "method,args",
    [
        ("mark_processing", ()),
        ("mark_completed", (URLS, "hash")),
        ("mark_failed", ("error", 3)),
        ("mark_retry", (utc_now(), 3)),
    ],
)
def test_invalid_transitions_from_pending(method, args):
    slot = _slot(SlotStatus.PENDING)

    with pytest.raises(InvalidStateTransition):
        getattr(slot, method)(*args)

    assert slot.status == SlotStatus.PENDING


def test_completed_requires_urls():
    slot = _slot(SlotStatus.PROCESSING)

    with pytest.raises(ValueError, match="storage_urls"):
        slot.mark_completed({}, "hash")


def test_long_error_message_is_truncated():
    slot = _slot(SlotStatus.PROCESSING)

    slot.mark_failed("x" * 5000, max_retries=3)

    assert len(slot.error_message) == 1000
