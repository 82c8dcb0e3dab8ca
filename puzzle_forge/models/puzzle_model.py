"""Data models for puzzle records, pieces and job parameters.

Records are serialized with camelCase keys; Python attributes stay snake_case.
"""

import time
import uuid
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


class CamelModel(BaseModel):
    """Base model that reads and writes camelCase JSON keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_json_dict(self) -> Dict[str, Any]:
        """Dump to a JSON-compatible dict with camelCase keys, omitting unset optionals."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class EdgeType(str, Enum):
    """Shape of one side of a piece."""

    FLAT = "flat"
    TAB = "tab"
    BLANK = "blank"

    def opposite(self) -> "EdgeType":
        """The structural complement: tab fits blank, flat stays flat."""
        if self is EdgeType.TAB:
            return EdgeType.BLANK
        if self is EdgeType.BLANK:
            return EdgeType.TAB
        return EdgeType.FLAT


class EdgeConfig(CamelModel):
    """Edge types for the four sides of a piece."""

    model_config = ConfigDict(frozen=True)

    top: EdgeType
    right: EdgeType
    bottom: EdgeType
    left: EdgeType


class PuzzleStatus(str, Enum):
    """Lifecycle status of a puzzle record."""

    PROCESSING = "processing"
    READY = "ready"
    FAILED = "failed"


class PuzzlePiece(CamelModel):
    """A generated piece. Immutable once generated."""

    model_config = ConfigDict(frozen=True)

    id: int = Field(..., ge=0, description="0-based row-major piece index")
    puzzle_id: str
    correct_x: int = Field(..., ge=0, description="Grid column")
    correct_y: int = Field(..., ge=0, description="Grid row")
    edges: EdgeConfig
    image_path: str


class PuzzleProgress(CamelModel):
    """Generation progress, present only while a puzzle is processing."""

    total_pieces: int = Field(..., gt=0)
    generated_pieces: int = Field(..., ge=0)
    updated_at: int

    @model_validator(mode="after")
    def check_counts(self) -> "PuzzleProgress":
        """Generated pieces can never exceed the total."""
        if self.generated_pieces > self.total_pieces:
            raise ValueError("generatedPieces exceeds totalPieces")
        return self


class PuzzleError(CamelModel):
    """Human-readable failure description, present only on failed puzzles."""

    message: str = Field(..., min_length=1)


def create_puzzle_progress(total_pieces: int, generated_pieces: int) -> PuzzleProgress:
    """Create a progress snapshot stamped with the current time.

    Raises:
        ValueError: If the counts are out of range.
    """
    if total_pieces <= 0:
        raise ValueError("totalPieces must be positive")
    if generated_pieces < 0:
        raise ValueError("generatedPieces cannot be negative")
    if generated_pieces > total_pieces:
        raise ValueError("generatedPieces exceeds totalPieces")
    return PuzzleProgress(total_pieces=total_pieces, generated_pieces=generated_pieces, updated_at=now_ms())


class PuzzleRecord(CamelModel):
    """The mutable record of one puzzle, owned by the metadata coordinator."""

    id: str
    name: str = Field(..., min_length=1)
    piece_count: int = Field(..., ge=0)
    grid_cols: int = Field(..., ge=0)
    grid_rows: int = Field(..., ge=0)
    image_width: int = Field(default=0, ge=0)
    image_height: int = Field(default=0, ge=0)
    created_at: int
    status: PuzzleStatus
    version: int = Field(default=0, ge=0)
    pieces: List[PuzzlePiece] = Field(default_factory=list)
    progress: Optional[PuzzleProgress] = None
    error: Optional[PuzzleError] = None

    @model_validator(mode="after")
    def check_invariants(self) -> "PuzzleRecord":
        """Enforce status/progress/error consistency and grid math."""
        problems = _status_problems(self.status, self.progress is not None, self.error is not None)
        if self.grid_cols * self.grid_rows != self.piece_count:
            problems.append(f"grid math mismatch: {self.grid_cols}x{self.grid_rows} != {self.piece_count}")
        if self.status is PuzzleStatus.READY and len(self.pieces) != self.piece_count:
            problems.append(f"ready puzzle has {len(self.pieces)} pieces, expected {self.piece_count}")
        if problems:
            raise ValueError("; ".join(problems))
        return self

    def summary(self) -> "PuzzleSummary":
        """Condensed view used for listings."""
        return PuzzleSummary(
            id=self.id,
            name=self.name,
            piece_count=self.piece_count,
            status=self.status,
            progress=self.progress,
        )


def _status_problems(status: PuzzleStatus, has_progress: bool, has_error: bool) -> List[str]:
    problems = []
    if status is PuzzleStatus.PROCESSING and not has_progress:
        problems.append("processing puzzle is missing progress")
    if status is not PuzzleStatus.PROCESSING and has_progress:
        problems.append(f"{status.value} puzzle must not carry progress")
    if status is PuzzleStatus.FAILED and not has_error:
        problems.append("failed puzzle is missing error")
    if status is not PuzzleStatus.FAILED and has_error:
        problems.append(f"{status.value} puzzle must not carry error")
    return problems


def validation_diagnostics(data: Any) -> List[str]:
    """Describe why a stored record is malformed, without raising.

    Args:
        data: Raw JSON value read from the metadata store.

    Returns:
        A list of human-readable problems; empty if the record is valid.
    """
    if not isinstance(data, dict):
        return ["not an object"]

    issues = []
    for key in ("id", "name", "status"):
        if not isinstance(data.get(key), str):
            issues.append(f"missing or invalid {key}")
    for key in ("pieceCount", "gridCols", "gridRows", "imageWidth", "imageHeight", "createdAt", "version"):
        if not isinstance(data.get(key), int):
            issues.append(f"missing or invalid {key}")
    if not isinstance(data.get("pieces"), list):
        issues.append("pieces is not an array")
    if issues:
        return issues

    try:
        PuzzleRecord.model_validate(data)
    except ValueError as e:
        issues.append(str(e))
    return issues


class PuzzleSummary(CamelModel):
    """Listing entry for a puzzle."""

    id: str
    name: str
    piece_count: int
    status: PuzzleStatus
    progress: Optional[PuzzleProgress] = None


class JobParams(CamelModel):
    """Parameters passed to the job trigger."""

    puzzle_id: str

    @field_validator("puzzle_id")
    @classmethod
    def validate_puzzle_id(cls, v: str) -> str:
        """Puzzle ids are UUID4 strings."""
        try:
            parsed = uuid.UUID(v)
        except ValueError as e:
            raise ValueError("puzzleId must be a valid UUID") from e
        if parsed.version != 4:
            raise ValueError("puzzleId must be a valid UUID")
        return v


class PuzzleCreatedResponse(CamelModel):
    """Response model for puzzle upload."""

    puzzle_id: str
    status: PuzzleStatus
