"""SystemState repository.

Provides data access methods for the SystemState key-value store, including
the persisted pause flag of the image queue.
"""

from typing import Any

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from cardart.core.timezone import utc_now
from cardart.models.system_state import SystemState

QUEUE_PAUSED_KEY = "image_queue_paused"


class SystemStateRepository:
    """Repository for SystemState key-value store.

    State values are stored as JSON and automatically serialized/deserialized.
    """

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

    async def get_state(self, key: str) -> Any | None:
        """Retrieve state value for a key.

        Returns:
            Deserialized state value if found, None otherwise
        """
        result = await self.session.execute(select(SystemState).where(SystemState.key == key))  # type: ignore[arg-type]
        state = result.scalar_one_or_none()
        return state.state_value if state else None

    async def set_state(self, key: str, value: Any) -> None:
        """Set state value for a key, inserting the row on first use.

        Args:
            key: State key (alphanumeric + underscores only)
            value: State value (must be JSON-serializable)
        """
        result = await self.session.execute(
            select(SystemState).where(SystemState.key == key).with_for_update()  # type: ignore[arg-type]
        )
        state = result.scalar_one_or_none()
        if state is None:
            state = SystemState(key=key, state_value=value)
        else:
            state.state_value = value
            state.updated_at = utc_now()
        self.session.add(state)
        await self.session.flush()

    async def delete_state(self, key: str) -> bool:
        """Delete state entry for a key (idempotent).

        Returns:
            True if key was deleted, False if key did not exist
        """
        result = await self.session.execute(delete(SystemState).where(SystemState.key == key))  # type: ignore[arg-type]
        await self.session.flush()
        return result.rowcount > 0  # type: ignore[attr-defined]

    async def is_queue_paused(self) -> bool:
        """True while the image queue hands out no jobs."""
        value = await self.get_state(QUEUE_PAUSED_KEY)
        return bool(value and value.get("paused"))

    async def set_queue_paused(self, paused: bool) -> None:
        """Pause or resume delivery of image jobs."""
        await self.set_state(QUEUE_PAUSED_KEY, {"paused": paused})
