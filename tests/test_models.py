"""Tests for puzzle record models and their invariants."""

import uuid
from typing import Any, Dict

import pytest
from pydantic import ValidationError

from puzzle_forge.models.puzzle_model import (
    JobParams,
    PuzzleRecord,
    PuzzleStatus,
    create_puzzle_progress,
    validation_diagnostics,
)


def record_data(**overrides: Any) -> Dict[str, Any]:
    data: Dict[str, Any] = {
        "id": str(uuid.uuid4()),
        "name": "Test Puzzle",
        "pieceCount": 4,
        "gridCols": 2,
        "gridRows": 2,
        "imageWidth": 0,
        "imageHeight": 0,
        "createdAt": 1700000000000,
        "status": "processing",
        "version": 0,
        "pieces": [],
        "progress": {"totalPieces": 4, "generatedPieces": 0, "updatedAt": 1700000000000},
    }
    data.update(overrides)
    return data


class TestPuzzleRecord:
    """Tests for PuzzleRecord validation."""

    def test_valid_processing_record(self) -> None:
        record = PuzzleRecord.model_validate(record_data())
        assert record.status is PuzzleStatus.PROCESSING
        assert record.progress.total_pieces == 4

    def test_serializes_camel_case(self) -> None:
        """Stored JSON uses camelCase keys and omits absent optionals."""
        dumped = PuzzleRecord.model_validate(record_data()).to_json_dict()
        assert dumped["pieceCount"] == 4
        assert dumped["progress"]["generatedPieces"] == 0
        assert "error" not in dumped

    @pytest.mark.parametrize(
        "overrides,problem",
        [
            ({"progress": None}, "missing progress"),
            ({"status": "ready"}, "must not carry progress"),
            ({"status": "failed", "progress": None}, "missing error"),
            ({"error": {"message": "boom"}}, "must not carry error"),
            ({"gridCols": 3}, "grid math mismatch"),
            ({"status": "ready", "progress": None}, "ready puzzle has 0 pieces"),
        ],
    )
    def test_invariant_violations(self, overrides: Dict[str, Any], problem: str) -> None:
        """Inconsistent records are rejected."""
        with pytest.raises(ValidationError, match=problem):
            PuzzleRecord.model_validate(record_data(**overrides))

    def test_diagnostics_for_valid_record(self) -> None:
        assert validation_diagnostics(record_data()) == []

    def test_diagnostics_list_problems(self) -> None:
        """Malformed data is described rather than raised."""
        assert validation_diagnostics("nope") == ["not an object"]
        issues = validation_diagnostics({"id": "x", "status": "ready", "pieces": "none"})
        assert "missing or invalid name" in issues
        assert "missing or invalid pieceCount" in issues
        assert "pieces is not an array" in issues


class TestProgress:
    """Tests for progress snapshots."""

    def test_create_progress(self) -> None:
        progress = create_puzzle_progress(9, 3)
        assert (progress.total_pieces, progress.generated_pieces) == (9, 3)
        assert progress.updated_at > 0

    @pytest.mark.parametrize("total,generated", [(0, 0), (5, -1), (5, 6)])
    def test_invalid_counts(self, total: int, generated: int) -> None:
        with pytest.raises(ValueError):
            create_puzzle_progress(total, generated)


class TestJobParams:
    """Tests for job parameter validation."""

    def test_accepts_uuid4(self) -> None:
        puzzle_id = str(uuid.uuid4())
        assert JobParams.model_validate({"puzzleId": puzzle_id}).puzzle_id == puzzle_id

    @pytest.mark.parametrize("puzzle_id", ["", "not-a-uuid", str(uuid.uuid1())])
    def test_rejects_other_ids(self, puzzle_id: str) -> None:
        with pytest.raises(ValidationError, match="valid UUID"):
            JobParams(puzzle_id=puzzle_id)
