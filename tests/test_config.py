"""Test module for configuration validation."""

import os
from pathlib import Path
from typing import Generator

import pytest
from pydantic import ValidationError

from puzzle_forge.config import Settings


@pytest.fixture
def clean_env() -> Generator[None, None, None]:
    """Remove environment overrides set by a test."""
    keys = ["MAX_PIECES", "TAB_RATIO", "STORAGE_DIR", "USE_AZURE_STORAGE"]
    saved = {key: os.environ.get(key) for key in keys}
    yield
    for key, value in saved.items():
        if value is None:
            os.environ.pop(key, None)
        else:
            os.environ[key] = value


def test_defaults() -> None:
    """Defaults match the documented limits."""
    settings = Settings(_env_file=None)
    assert settings.MAX_PIECES == 250
    assert settings.DEFAULT_PIECE_COUNT == 225
    assert settings.MAX_IMAGE_DIMENSION == 4096
    assert settings.MAX_IMAGE_BYTES == 50 * 1024 * 1024
    assert settings.TAB_RATIO == 0.2
    assert settings.THUMBNAIL_SIZE == 300
    assert settings.THUMBNAIL_QUALITY == 80
    assert settings.FAILURE_WRITE_ATTEMPTS == 3


def test_environment_overrides(clean_env: None) -> None:
    """Environment variables override defaults."""
    os.environ["MAX_PIECES"] = "100"
    os.environ["STORAGE_DIR"] = "/tmp/puzzles"
    os.environ["USE_AZURE_STORAGE"] = "false"

    settings = Settings(_env_file=None)

    assert settings.MAX_PIECES == 100
    assert settings.STORAGE_DIR == Path("/tmp/puzzles")
    assert settings.USE_AZURE_STORAGE is False


@pytest.mark.parametrize("tab_ratio", ["0", "0.5", "-0.1", "0.75"])
def test_tab_ratio_validation(clean_env: None, tab_ratio: str) -> None:
    """Tab ratios outside (0, 0.5) are rejected."""
    os.environ["TAB_RATIO"] = tab_ratio
    with pytest.raises(ValidationError, match="TAB_RATIO must be between 0 and 0.5"):
        Settings(_env_file=None)


def test_piece_limit_validation() -> None:
    """MIN_PIECES cannot exceed MAX_PIECES."""
    with pytest.raises(ValidationError, match="MIN_PIECES"):
        Settings(_env_file=None, MIN_PIECES=300, MAX_PIECES=250)
