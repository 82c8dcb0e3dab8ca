"""Checkpointed puzzle generation jobs.

A job runs a fixed sequence of named steps for one puzzle:

    load -> validate -> thumbnail -> generate-row-0 .. generate-row-{rows-1} -> finalize

Each step's result is stored durably before the next step runs, and a step
that already has a stored result is never run again. The process may stop
between any two steps; running the job again resumes at the first incomplete
step. Step inputs come from durable state (source bytes, the puzzle record,
stored step results), never from another step's in-memory output.
"""

import io
import logging
import time
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Union

from PIL import Image, UnidentifiedImageError
from tenacity import RetryError

from puzzle_forge.config import Settings, get_settings
from puzzle_forge.exceptions import (
    CoordinatorWriteError,
    ImageValidationError,
    InvariantViolationError,
    PuzzleNotFoundError,
    PuzzleValidationError,
    TransientStoreError,
)
from puzzle_forge.models.puzzle_model import (
    JobParams,
    PuzzlePiece,
    PuzzleRecord,
    PuzzleStatus,
    create_puzzle_progress,
)
from puzzle_forge.services.coordinator import CoordinatorRegistry
from puzzle_forge.services.grid_planner import GridDimensions, get_grid_dimensions
from puzzle_forge.services.piece_rasterizer import PieceRasterizer
from puzzle_forge.services.retry import RetryPolicy
from puzzle_forge.services.storage import (
    BlobStore,
    MetadataStore,
    job_key,
    original_key,
    piece_image_path,
    piece_key,
    thumbnail_key,
)
from puzzle_forge.services.thumbnail import generate_thumbnail

logger = logging.getLogger(__name__)

STEP_LOAD = "load"
STEP_VALIDATE = "validate"
STEP_THUMBNAIL = "thumbnail"
STEP_FINALIZE = "finalize"


def row_step_name(row: int) -> str:
    return f"generate-row-{row}"


class JobOutcome(str, Enum):
    """How a job run ended."""

    READY = "ready"
    FAILED = "failed"
    ABANDONED = "abandoned"


def plan_grid(piece_count: int, min_pieces: int, max_pieces: int) -> GridDimensions:
    """Validate a piece count and plan its grid.

    Raises:
        PuzzleValidationError: If the piece count is outside the allowed range.
    """
    if not min_pieces <= piece_count <= max_pieces:
        raise PuzzleValidationError(
            f"Invalid piece count {piece_count}: must be between {min_pieces} and {max_pieces}"
        )
    return get_grid_dimensions(piece_count)


class CheckpointStore:
    """Durable record of completed job steps and their results."""

    def __init__(self, store: MetadataStore, retry_policy: Optional[RetryPolicy] = None) -> None:
        self.store = store
        self.retry_policy = retry_policy or RetryPolicy()

    def load(self, puzzle_id: str) -> Dict[str, Any]:
        """Completed steps for a puzzle, mapping step name to stored result."""
        data = self.retry_policy.call(lambda: self.store.get(job_key(puzzle_id)), "Reading job checkpoints")
        if not data:
            return {}
        return dict(data.get("steps", {}))

    def record(self, puzzle_id: str, steps: Dict[str, Any]) -> None:
        """Persist the full set of completed steps."""
        value = {"puzzleId": puzzle_id, "steps": steps, "updatedAt": int(time.time() * 1000)}
        self.retry_policy.call(lambda: self.store.put(job_key(puzzle_id), value), "Writing job checkpoint")

    def clear(self, puzzle_id: str) -> None:
        self.retry_policy.call(lambda: self.store.delete(job_key(puzzle_id)), "Clearing job checkpoints")


class JobContext:
    """Runs named steps for one job, skipping those already completed."""

    def __init__(self, puzzle_id: str, checkpoints: CheckpointStore) -> None:
        self.puzzle_id = puzzle_id
        self.checkpoints = checkpoints
        self._completed = checkpoints.load(puzzle_id)

    def step(self, name: str, fn: Callable[[], Any]) -> Any:
        """Run fn as checkpoint name, or return its stored result.

        The result must be JSON-serializable; it is stored before returning.
        """
        if name in self._completed:
            logger.debug("Puzzle %s: step %s already complete, skipping", self.puzzle_id, name)
            return self._completed[name]

        started = time.monotonic()
        logger.info("Puzzle %s: step %s started", self.puzzle_id, name)
        result = fn()
        steps = dict(self._completed)
        steps[name] = result
        self.checkpoints.record(self.puzzle_id, steps)
        self._completed = steps
        logger.info("Puzzle %s: step %s completed in %.2fs", self.puzzle_id, name, time.monotonic() - started)
        return result


class PuzzleJobRunner:
    """Generates the thumbnail and pieces of a puzzle as a checkpointed job."""

    def __init__(
        self,
        blobs: BlobStore,
        metadata: MetadataStore,
        coordinators: CoordinatorRegistry,
        settings: Optional[Settings] = None,
        rasterizer: Optional[PieceRasterizer] = None,
    ) -> None:
        """Initialize the runner.

        Args:
            blobs: Store for source images, thumbnails and pieces.
            metadata: Store holding job checkpoints.
            coordinators: Writers for puzzle records.
            settings: Limits and retry configuration; defaults to the app settings.
            rasterizer: Piece rasterizer; built from settings when omitted.
        """
        self.settings = settings or get_settings()
        self.blobs = blobs
        self.coordinators = coordinators
        self.store_retry = RetryPolicy.for_store(self.settings)
        self.failure_retry = RetryPolicy.for_failure_write(self.settings)
        self.checkpoints = CheckpointStore(metadata, self.store_retry)
        self.rasterizer = rasterizer or PieceRasterizer(
            tab_ratio=self.settings.TAB_RATIO,
            antialias_scale=self.settings.MASK_ANTIALIAS_SCALE,
        )

    def run(self, params: Union[JobParams, Dict[str, Any]]) -> JobOutcome:
        """Run or resume the job for one puzzle.

        Any Exception ends the job with the record marked failed; it is not
        re-raised. Other BaseExceptions (process teardown) propagate and leave
        the checkpoints in place for a later resume.
        """
        job = params if isinstance(params, JobParams) else JobParams.model_validate(params)
        puzzle_id = job.puzzle_id

        try:
            outcome = self._run(puzzle_id)
        except PuzzleNotFoundError as e:
            # No record left to mark; the puzzle was deleted or never created
            logger.warning("Puzzle %s: abandoning job: %s", puzzle_id, e)
            outcome = JobOutcome.ABANDONED
        except Exception as e:
            logger.error("Puzzle %s: job failed: %s", puzzle_id, e)
            outcome = self._mark_failed(puzzle_id, e)

        self._clear_checkpoints(puzzle_id)
        return outcome

    def _run(self, puzzle_id: str) -> JobOutcome:
        current = self._read_record(puzzle_id)
        if current.status is PuzzleStatus.FAILED:
            logger.warning("Puzzle %s already failed, not resuming", puzzle_id)
            return JobOutcome.ABANDONED
        if current.status is PuzzleStatus.READY:
            logger.info("Puzzle %s already ready", puzzle_id)
            return JobOutcome.READY

        ctx = JobContext(puzzle_id, self.checkpoints)

        loaded = ctx.step(STEP_LOAD, lambda: self._load(puzzle_id))
        piece_count = loaded["pieceCount"]

        validated = ctx.step(STEP_VALIDATE, lambda: self._validate(puzzle_id, piece_count))
        rows, cols = validated["rows"], validated["cols"]

        ctx.step(STEP_THUMBNAIL, lambda: self._thumbnail(puzzle_id))

        for row in range(rows):
            ctx.step(row_step_name(row), lambda row=row: self._generate_row(puzzle_id, row, rows, cols, piece_count))

        ctx.step(STEP_FINALIZE, lambda: self._finalize(puzzle_id))
        return JobOutcome.READY

    # Steps

    def _load(self, puzzle_id: str) -> Dict[str, Any]:
        record = self._read_record(puzzle_id)
        return {"pieceCount": record.piece_count, "name": record.name}

    def _validate(self, puzzle_id: str, piece_count: int) -> Dict[str, int]:
        image = self._load_image(puzzle_id)
        width, height = image.size

        grid = plan_grid(piece_count, self.settings.MIN_PIECES, self.settings.MAX_PIECES)
        if width < grid.cols or height < grid.rows:
            raise ImageValidationError(
                f"Image dimensions {width}x{height} are too small for a {grid.rows}x{grid.cols} puzzle"
            )

        record = self._read_record(puzzle_id)
        if (record.grid_rows, record.grid_cols) != (grid.rows, grid.cols):
            raise InvariantViolationError(
                f"Puzzle {puzzle_id} grid {record.grid_rows}x{record.grid_cols} does not match "
                f"planned grid {grid.rows}x{grid.cols}"
            )

        self._update(puzzle_id, {"image_width": width, "image_height": height})
        return {"width": width, "height": height, "rows": grid.rows, "cols": grid.cols}

    def _thumbnail(self, puzzle_id: str) -> Dict[str, str]:
        image = self._load_image(puzzle_id)
        data = generate_thumbnail(image, self.settings.THUMBNAIL_SIZE, self.settings.THUMBNAIL_QUALITY)
        key = thumbnail_key(puzzle_id)
        self.store_retry.call(lambda: self.blobs.put(key, data, "image/jpeg"), f"Uploading {key}")
        return {"key": key}

    def _generate_row(self, puzzle_id: str, row: int, rows: int, cols: int, total_pieces: int) -> Dict[str, int]:
        image = self._load_image(puzzle_id)
        rendered = self.rasterizer.rasterize_row(image, row, rows, cols, max_workers=self.settings.PIECE_WORKERS)

        pieces: List[PuzzlePiece] = []
        for piece in rendered:
            key = piece_key(puzzle_id, piece.piece_id)
            data = piece.encode_png()
            self.store_retry.call(lambda: self.blobs.put(key, data, "image/png"), f"Uploading {key}")
            pieces.append(
                PuzzlePiece(
                    id=piece.piece_id,
                    puzzle_id=puzzle_id,
                    correct_x=piece.col,
                    correct_y=piece.row,
                    edges=piece.edges,
                    image_path=piece_image_path(piece.piece_id),
                )
            )

        generated = min((row + 1) * cols, total_pieces)
        current = self._read_record(puzzle_id)

        # A redone row overwrites its assets but never duplicates its pieces
        merged = {p.id: p for p in current.pieces}
        for piece in pieces:
            merged.setdefault(piece.id, piece)

        self._update(
            puzzle_id,
            {
                "pieces": [merged[i] for i in sorted(merged)],
                "progress": create_puzzle_progress(total_pieces, generated),
            },
        )
        return {"generatedPieces": generated}

    def _finalize(self, puzzle_id: str) -> Dict[str, str]:
        self._update(puzzle_id, {"status": PuzzleStatus.READY})
        return {"status": PuzzleStatus.READY.value}

    # Helpers

    def _read_record(self, puzzle_id: str) -> PuzzleRecord:
        coordinator = self.coordinators.get(puzzle_id)
        record = self.store_retry.call(coordinator.read, f"Reading puzzle {puzzle_id}")
        if record is None:
            raise PuzzleNotFoundError(puzzle_id)
        return record

    def _update(self, puzzle_id: str, updates: Dict[str, Any]) -> PuzzleRecord:
        retrying = self.store_retry.retrying(
            f"Updating puzzle {puzzle_id}", retry_on=(TransientStoreError, CoordinatorWriteError)
        )
        return retrying(self.coordinators.apply_update, puzzle_id, updates)

    def _load_source_bytes(self, puzzle_id: str) -> bytes:
        key = original_key(puzzle_id)
        data = self.store_retry.call(lambda: self.blobs.get(key), f"Reading {key}")
        if data is None:
            raise InvariantViolationError(f"Original image not found for puzzle {puzzle_id}")
        if len(data) > self.settings.MAX_IMAGE_BYTES:
            raise ImageValidationError(
                f"Image size {len(data)} bytes exceeds maximum {self.settings.MAX_IMAGE_BYTES} bytes. "
                "Please use a smaller image."
            )
        return data

    def _load_image(self, puzzle_id: str) -> Image.Image:
        """Read and decode the source image, enforcing the dimension limit."""
        data = self._load_source_bytes(puzzle_id)
        limit = self.settings.MAX_IMAGE_DIMENSION
        try:
            image = Image.open(io.BytesIO(data))
            width, height = image.size
            if width > limit or height > limit:
                raise ImageValidationError(f"Image dimensions {width}x{height} exceed maximum {limit}px")
            image.load()
        except ImageValidationError:
            raise
        except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError) as e:
            raise ImageValidationError(f"Failed to decode image: {e}") from e
        return image.convert("RGBA")

    def _mark_failed(self, puzzle_id: str, error: Exception) -> JobOutcome:
        """Record the job error on the puzzle, unless the record is already terminal."""
        try:
            current = self._read_record(puzzle_id)
        except PuzzleNotFoundError:
            logger.warning("Puzzle %s: record gone, not marking failed", puzzle_id)
            return JobOutcome.ABANDONED
        except TransientStoreError as e:
            logger.warning("Puzzle %s: could not re-read record before marking failed: %s", puzzle_id, e)
            current = None

        if current is not None and current.status is PuzzleStatus.READY:
            logger.warning("Puzzle %s is already ready, ignoring job error: %s", puzzle_id, error)
            return JobOutcome.READY
        if current is not None and current.status is PuzzleStatus.FAILED:
            return JobOutcome.FAILED

        message = str(error) or type(error).__name__
        retrying = self.failure_retry.retrying(
            f"Marking puzzle {puzzle_id} as failed",
            retry_on=(TransientStoreError, CoordinatorWriteError),
            reraise=False,
        )
        updates = {"status": PuzzleStatus.FAILED, "error": {"message": message}}
        try:
            retrying(self.coordinators.apply_update, puzzle_id, updates)
        except PuzzleNotFoundError as e:
            logger.warning("Puzzle %s: abandoning job: %s", puzzle_id, e)
            return JobOutcome.ABANDONED
        except InvariantViolationError as e:
            # Another writer finished the record first
            logger.error("Puzzle %s: could not mark failed: %s. Original job error: %s", puzzle_id, e, error)
        except RetryError as e:
            last_error = e.last_attempt.exception()
            logger.critical(
                "CRITICAL: Failed to mark puzzle %s as failed after %d attempts; it remains processing "
                "and needs manual cleanup. Last error: %s. Original job error: %s",
                puzzle_id,
                self.failure_retry.max_attempts,
                last_error,
                error,
            )
        return JobOutcome.FAILED

    def _clear_checkpoints(self, puzzle_id: str) -> None:
        try:
            self.checkpoints.clear(puzzle_id)
        except TransientStoreError as e:
            logger.warning("Puzzle %s: failed to clear job checkpoints: %s", puzzle_id, e)
