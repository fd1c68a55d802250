"""
PostSnap Backend — Test Configuration (conftest.py)
=====================================================

What:  Shared pytest fixtures for the suite.
How:   A real async SQLAlchemy stack on in-memory SQLite (one shared
       connection via StaticPool), an in-process storage adapter that records
       calls, and an HTTPX client bound to a fresh app via ASGITransport.

Fixture Hierarchy (all function-scoped):
    ├── db_engine → session_factory → db_session
    ├── recording_storage: StorageAdapter that records upload/delete calls
    ├── sample_image_bytes
    └── client: AsyncClient; routes use session_factory + recording_storage
        └── placeholder_client: same, but with the unconfigured adapter
"""

import os

# Must run before any `app` import: Settings and the engine read these once
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["IMAGEKIT_PUBLIC_KEY"] = ""
os.environ["IMAGEKIT_PRIVATE_KEY"] = ""
os.environ["IMAGEKIT_URL_ENDPOINT"] = ""
os.environ["LOG_LEVEL"] = "WARNING"

from typing import List, Optional, Tuple

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from app.database import Base, get_db_session
from app.models.post import Post  # noqa: F401
from app.services.storage_base import DeleteResult, StorageAdapter, UploadResult


class RecordingStorage(StorageAdapter):
    """
    Configured-provider stand-in.

    Hands out sequential file ids (file_1, file_2, ...) and records every
    call. Set `upload_error` to make uploads raise, `delete_outcome` to force
    a delete result.
    """

    mode = "recording"

    def __init__(self):
        self.uploads: List[Tuple[bytes, str, Optional[str]]] = []
        self.deletes: List[Optional[str]] = []
        self.upload_error: Optional[Exception] = None
        self.delete_outcome: Optional[DeleteResult] = None

    @property
    def configured(self) -> bool:
        return True

    async def upload(self, content, display_name, idempotency_key=None):
        if self.upload_error is not None:
            raise self.upload_error
        self.uploads.append((content, display_name, idempotency_key))
        n = len(self.uploads)
        return UploadResult(url=f"https://ik.imagekit.io/demo/posts/img_{n}.png", file_id=f"file_{n}")

    async def delete(self, file_id):
        self.deletes.append(file_id)
        if not file_id:
            return DeleteResult.skipped(file_id, "no file id")
        if self.delete_outcome is not None:
            return self.delete_outcome
        return DeleteResult.ok(file_id)


@pytest_asyncio.fixture
async def db_engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def recording_storage():
    return RecordingStorage()


@pytest.fixture
def sample_image_bytes():
    """Smallest valid PNG header plus a few bytes; content is never decoded."""
    return b"\x89PNG\r\n\x1a\n\x00\x00\x00\rIHDR" + b"\x00" * 16


def _build_client(session_factory, storage: StorageAdapter) -> AsyncClient:
    from app.main import create_app
    from app.routes.posts import get_post_service
    from app.services.post_service import PostService

    app = create_app()

    async def override_session():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db_session] = override_session
    app.dependency_overrides[get_post_service] = lambda: PostService(storage=storage)
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


@pytest_asyncio.fixture
async def client(session_factory, recording_storage):
    async with _build_client(session_factory, recording_storage) as ac:
        yield ac


@pytest_asyncio.fixture
async def placeholder_client(session_factory):
    from app.services.storage_service import PlaceholderStorage

    async with _build_client(session_factory, PlaceholderStorage()) as ac:
        yield ac
