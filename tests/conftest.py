"""pytest fixtures for image pipeline tests.

Provides:
- utc_timezone: Autouse fixture enforcing UTC timezone
- session_factory: Function-scoped SQLite (aiosqlite) database with all tables created
- session / uow_factory: Database access on top of session_factory
- settings: Test settings (local storage, fast polling)
- image_server: In-memory remote image host served through httpx.MockTransport
- processor: PrintImageProcessor wired to the fake image host and local storage
"""

import asyncio
import os
from io import BytesIO
from typing import AsyncGenerator

os.environ.setdefault("APP_ENV", "test")

import httpx
import pytest
import pytest_asyncio
from PIL import Image
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import SQLModel

import cardart.models  # noqa: F401
from cardart.core.config import Settings
from cardart.core.database import setup_db_session
from cardart.models.print import Print
from cardart.services.images.processor import PrintImageProcessor
from cardart.services.images.retry import RetryScheduler
from cardart.services.images.storage import LocalObjectStorage, StorageConsolidator
from cardart.services.images.transform import ImageTransformer
from cardart.uow import create_uow_factory

CDN = "https://cdn.test/images"


def make_image_bytes(
    size: tuple[int, int] = (600, 840),
    color: tuple[int, ...] = (200, 40, 40),
    mode: str = "RGB",
    fmt: str = "PNG",
) -> bytes:
    """Encode a solid-color test image."""
    buffer = BytesIO()
    Image.new(mode, size, color).save(buffer, format=fmt)
    return buffer.getvalue()


class ImageServer:
    """Fake remote image host.

    Routes map exact URLs to (status, body). Unknown URLs answer 404.
    Every request is recorded in `requests`.
    """

    def __init__(self):
        self.routes: dict[str, tuple[int, bytes]] = {}
        self.requests: list[str] = []

    def add(self, url: str, body: bytes, status: int = 200) -> None:
        self.routes[url] = (status, body)

    def handler(self, request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        self.requests.append(url)
        status, body = self.routes.get(url, (404, b"not found"))
        return httpx.Response(status, content=body, headers={"Content-Type": "image/png"})


@pytest.fixture(scope="session", autouse=True)
def utc_timezone():
    """Enforce UTC timezone for all tests."""
    os.environ["TZ"] = "UTC"
    yield


@pytest.fixture
def database_url(tmp_path) -> str:
    return f"sqlite+aiosqlite:///{tmp_path / 'test.db'}"


@pytest_asyncio.fixture(scope="function")
async def session_factory(database_url):
    """Provide a fresh file database per test with every table created."""
    factory = setup_db_session(database_url)
    engine = factory.kw["bind"]
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)

    yield factory

    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def uow_factory(session_factory):
    """Provide function-scoped UnitOfWork factory."""
    return create_uow_factory(session_factory)


@pytest.fixture
def settings(tmp_path, database_url) -> Settings:
    return Settings(  # type: ignore[call-arg]
        _env_file=None,
        APP_ENV="test",
        DATABASE_URL=database_url,
        STORAGE_BACKEND="local",
        LOCAL_STORAGE_PATH=str(tmp_path / "storage"),
        CDN_BASE_URL=CDN,
        POLL_INTERVAL_SECONDS=0.05,
        STATS_INTERVAL_SECONDS=3600,
        RETRY_SWEEP_INTERVAL_SECONDS=3600,
        JOB_CLEANUP_INTERVAL_SECONDS=3600,
        WORKER_CONCURRENCY=2,
        SHUTDOWN_TIMEOUT_SECONDS=2,
    )


@pytest.fixture
def image_bytes() -> bytes:
    return make_image_bytes()


@pytest.fixture
def image_server() -> ImageServer:
    return ImageServer()


@pytest_asyncio.fixture
async def http_client(image_server):
    client = httpx.AsyncClient(transport=httpx.MockTransport(image_server.handler))
    yield client
    await client.aclose()


@pytest.fixture
def storage(tmp_path) -> LocalObjectStorage:
    return LocalObjectStorage(tmp_path / "storage", CDN)


@pytest.fixture
def retry_scheduler() -> RetryScheduler:
    return RetryScheduler(max_retries=3, base_delay=2, max_delay=600, retry_priority=3)


@pytest.fixture
def processor(uow_factory, http_client, storage, retry_scheduler) -> PrintImageProcessor:
    return PrintImageProcessor(
        uow_factory=uow_factory,
        transformer=ImageTransformer(
            http_client, cpu_limiter=asyncio.Semaphore(2), fetch_timeout=5.0
        ),
        consolidator=StorageConsolidator(storage, namespace="cards"),
        retry_scheduler=retry_scheduler,
    )


@pytest.fixture
def make_image():
    """Factory for encoded test images (size, color, mode, fmt)."""
    return make_image_bytes


@pytest.fixture
def create_print(uow_factory):
    """Factory inserting a catalog print."""

    async def _create(print_id: str = "print-1", name: str = "Test Card") -> Print:
        async with await uow_factory() as uow:
            return await uow.prints.add(Print(id=print_id, name=name))

    return _create
