import io
import os
import tempfile

# The app reads its settings at import time
_TEST_ROOT = tempfile.mkdtemp(prefix="bgflip-tests-")
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{_TEST_ROOT}/test.db")
os.environ.setdefault("STORAGE_BACKEND", "local")
os.environ.setdefault("LOCAL_STORAGE_PATH", f"{_TEST_ROOT}/storage")
os.environ.setdefault("PUBLIC_BASE_URL", "http://test")
os.environ.setdefault("PIPELINE_DISPATCH_MODE", "inline")
os.environ.setdefault("BACKGROUND_REMOVAL_PROVIDER", "mock")
os.environ.setdefault("CLEANUP_INTERVAL_SECONDS", "0")
os.environ.setdefault("LOG_FORMAT_JSON", "false")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest
from PIL import Image
from httpx import AsyncClient, ASGITransport
from sqlmodel import SQLModel
from typing import AsyncGenerator

from bgflip.core.database import engine
from bgflip.main import app


def make_image_bytes(
    width: int,
    height: int,
    image_format: str = "PNG",
    color=(200, 30, 30),
    mode: str = "RGB",
) -> bytes:
    """Solid image encoded in memory."""
    buffer = io.BytesIO()
    Image.new(mode, (width, height), color).save(buffer, format=image_format)
    return buffer.getvalue()


def make_split_image_bytes(width: int, height: int, image_format: str = "PNG") -> bytes:
    """Left half red, right half blue."""
    image = Image.new("RGB", (width, height), (255, 0, 0))
    image.paste((0, 0, 255), (width // 2, 0, width, height))
    buffer = io.BytesIO()
    image.save(buffer, format=image_format)
    return buffer.getvalue()


@pytest.fixture
def image_factory():
    return make_image_bytes


@pytest.fixture
def split_image_factory():
    return make_split_image_bytes


@pytest.fixture
async def client() -> AsyncGenerator[AsyncClient, None]:
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.drop_all)

    # Trigger lifespan events (startup/shutdown)
    async with app.router.lifespan_context(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
            yield ac

    app.dependency_overrides.clear()
    # Pooled connections belong to this test's event loop
    await engine.dispose()
