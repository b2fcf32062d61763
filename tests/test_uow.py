"""Unit of Work pattern tests.

Tests focus on transaction management:
- Successful commits persist changes
- Exceptions trigger rollback
- Multiple repository operations are atomic
"""

import pytest

from cardart.models.image_slot import SlotType
from cardart.models.print import Print


@pytest.mark.asyncio
async def test_uow_commits_on_successful_exit(uow_factory):
    """Changes made within the context persist after the context exits."""
    async with await uow_factory() as uow:
        await uow.prints.add(Print(id="print-1", name="Lightning Bolt"))

    async with await uow_factory() as uow:
        found = await uow.prints.get_by_id("print-1")
        assert found is not None
        assert found.name == "Lightning Bolt"


@pytest.mark.asyncio
async def test_uow_rollback_on_exception(uow_factory):
    """Exceptions roll back the transaction and propagate."""
    with pytest.raises(ValueError, match="Simulated error"):
        async with await uow_factory() as uow:
            await uow.prints.add(Print(id="print-1"))
            raise ValueError("Simulated error")

    async with await uow_factory() as uow:
        assert await uow.prints.get_by_id("print-1") is None


@pytest.mark.asyncio
async def test_uow_multiple_operations_atomic(uow_factory, create_print):
    """Slot claim and job enqueue commit or roll back together."""
    await create_print()

    with pytest.raises(RuntimeError):
        async with await uow_factory() as uow:
            await uow.slots.claim_for_processing(
                "print-1", SlotType.NORMAL, "https://img.example.com/n.jpg"
            )
            await uow.jobs.enqueue(
                {"printId": "print-1", "imageUrls": {"normal": "https://img.example.com/n.jpg"}}
            )
            raise RuntimeError("Simulated failure after both writes")

    async with await uow_factory() as uow:
        assert await uow.slots.get_for_print("print-1") == []
        counts = await uow.jobs.counts()
        assert sum(counts.values()) == 0
