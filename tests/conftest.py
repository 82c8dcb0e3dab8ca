"""Shared fixtures for the puzzle forge tests."""

import io
from typing import Callable

import numpy as np
import pytest
from PIL import Image

from puzzle_forge.config import Settings
from puzzle_forge.services.coordinator import CoordinatorRegistry
from puzzle_forge.services.job_orchestrator import PuzzleJobRunner
from puzzle_forge.services.storage import InMemoryBlobStore, InMemoryMetadataStore

ImageFactory = Callable[..., bytes]


def gradient_image(width: int, height: int) -> Image.Image:
    """Opaque RGBA image whose pixels differ by position."""
    ys, xs = np.mgrid[0:height, 0:width]
    pixels = np.zeros((height, width, 4), dtype=np.uint8)
    pixels[:, :, 0] = xs % 256
    pixels[:, :, 1] = ys % 256
    pixels[:, :, 2] = (xs + ys) % 256
    pixels[:, :, 3] = 255
    return Image.fromarray(pixels)


@pytest.fixture
def fast_settings() -> Settings:
    """Settings with no retry delays and a cheaper mask supersampling."""
    return Settings(
        _env_file=None,
        STORE_RETRY_BASE_DELAY=0.0,
        STORE_RETRY_MAX_DELAY=0.0,
        MASK_ANTIALIAS_SCALE=2,
    )


@pytest.fixture
def make_image() -> Callable[[int, int], Image.Image]:
    """Factory for opaque gradient source images."""
    return gradient_image


@pytest.fixture
def image_bytes() -> ImageFactory:
    """Factory for encoded test images."""

    def make(width: int = 300, height: int = 300, fmt: str = "PNG") -> bytes:
        image = gradient_image(width, height)
        if fmt == "JPEG":
            image = image.convert("RGB")
        buffer = io.BytesIO()
        image.save(buffer, format=fmt)
        return buffer.getvalue()

    return make


@pytest.fixture
def blobs() -> InMemoryBlobStore:
    return InMemoryBlobStore()


@pytest.fixture
def metadata() -> InMemoryMetadataStore:
    return InMemoryMetadataStore()


@pytest.fixture
def coordinator_state() -> InMemoryMetadataStore:
    return InMemoryMetadataStore()


@pytest.fixture
def registry(metadata: InMemoryMetadataStore, coordinator_state: InMemoryMetadataStore) -> CoordinatorRegistry:
    return CoordinatorRegistry(metadata, coordinator_state)


@pytest.fixture
def runner(
    blobs: InMemoryBlobStore,
    metadata: InMemoryMetadataStore,
    registry: CoordinatorRegistry,
    fast_settings: Settings,
) -> PuzzleJobRunner:
    return PuzzleJobRunner(blobs, metadata, registry, fast_settings)
