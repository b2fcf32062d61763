"""FastAPI dependencies shared by the API routes."""

from typing import Callable, Optional

from fastapi import Request

from cardart.core.config import Settings
from cardart.uow import UnitOfWork
from cardart.workers.image_worker import ImageWorker


def get_settings(request: Request) -> Settings:
    """Settings loaded by the application lifespan."""
    return request.app.state.settings


def get_uow_factory(request: Request) -> Callable[[], UnitOfWork]:
    """Get UnitOfWork factory from app state.

    Example:
        >>> @router.post("/endpoint")
        >>> async def endpoint(uow_factory=Depends(get_uow_factory)):
        ...     async with await uow_factory() as uow:
        ...         await uow.slots.get_for_print(print_id)
    """
    return request.app.state.uow_factory


def get_worker(request: Request) -> Optional[ImageWorker]:
    """Image worker hosted by this process, or None when running API-only."""
    return getattr(request.app.state, "worker", None)
