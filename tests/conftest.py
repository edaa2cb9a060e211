import os
import tempfile

# Settings are read on import; point storage at a throwaway directory first
os.environ.setdefault("LOCAL_STORAGE_PATH", tempfile.mkdtemp(prefix="chunked_upscaler_test_"))
os.environ.setdefault("LOG_FORMAT_JSON", "false")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import numpy as np
import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from typing import AsyncGenerator

from chunked_upscaler.modules.upscale.models import SourceImage


def make_pixels(width: int, height: int, seed: int = 7) -> np.ndarray:
    """Deterministic RGBA test pattern: gradients plus noise, fully opaque."""
    rng = np.random.RandomState(seed)
    ys, xs = np.mgrid[0:height, 0:width]
    pixels = np.empty((height, width, 4), dtype=np.uint8)
    pixels[..., 0] = (xs * 7 + rng.randint(0, 60, size=(height, width))) % 256
    pixels[..., 1] = (ys * 5) % 256
    pixels[..., 2] = rng.randint(0, 256, size=(height, width))
    pixels[..., 3] = 255
    return pixels


@pytest.fixture
def make_source():
    def _make(width: int, height: int, seed: int = 7, filename: str = "sample.png") -> SourceImage:
        return SourceImage(pixels=make_pixels(width, height, seed), filename=filename)
    return _make


@pytest_asyncio.fixture
async def client() -> AsyncGenerator[AsyncClient, None]:
    from chunked_upscaler.main import app

    # Trigger lifespan events (startup/shutdown)
    async with app.router.lifespan_context(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
            yield ac
