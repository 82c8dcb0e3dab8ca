"""Puzzle lifecycle operations: upload, lookup, listing and deletion."""

import logging
import uuid
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from puzzle_forge.config import Settings, get_settings
from puzzle_forge.exceptions import PuzzleNotFoundError, PuzzleValidationError
from puzzle_forge.models.puzzle_model import (
    JobParams,
    PuzzleRecord,
    PuzzleStatus,
    PuzzleSummary,
    create_puzzle_progress,
    now_ms,
)
from puzzle_forge.services.coordinator import CoordinatorRegistry, read_record
from puzzle_forge.services.job_orchestrator import plan_grid
from puzzle_forge.services.job_queue import JobTrigger
from puzzle_forge.services.retry import RetryPolicy
from puzzle_forge.services.storage import (
    AdvisoryLock,
    BlobStore,
    MetadataStore,
    job_key,
    original_key,
    piece_key,
    puzzle_asset_keys,
    puzzle_key,
    thumbnail_key,
    tombstone_key,
)

logger = logging.getLogger(__name__)


@dataclass
class DeletionResult:
    """Outcome of an administrative deletion."""

    puzzle_id: str
    deleted: bool
    failed_keys: List[str] = field(default_factory=list)


class PuzzleService:
    """Entry points used by the HTTP layer."""

    def __init__(
        self,
        blobs: BlobStore,
        metadata: MetadataStore,
        coordinators: CoordinatorRegistry,
        trigger: JobTrigger,
        settings: Optional[Settings] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.blobs = blobs
        self.metadata = metadata
        self.coordinators = coordinators
        self.trigger = trigger
        self.store_retry = RetryPolicy.for_store(self.settings)
        self.locks = AdvisoryLock(metadata, ttl_seconds=self.settings.LOCK_TTL_SECONDS)

    def create_puzzle(self, name: str, data: bytes, content_type: str, piece_count: int) -> PuzzleRecord:
        """Store an uploaded image, create its processing record and start the job.

        Args:
            name: Display name of the puzzle.
            data: Encoded source image bytes.
            content_type: MIME type of the upload.
            piece_count: Requested number of pieces.

        Returns:
            The initial record (status processing, version 0).

        Raises:
            PuzzleValidationError: If the name, size, type or piece count is not acceptable.
        """
        name = name.strip()
        if not name:
            raise PuzzleValidationError("Puzzle name must not be empty")
        if not data:
            raise PuzzleValidationError("Uploaded image is empty")
        if len(data) > self.settings.MAX_UPLOAD_SIZE:
            raise PuzzleValidationError(
                f"Image size {len(data)} bytes exceeds maximum {self.settings.MAX_UPLOAD_SIZE} bytes"
            )
        if content_type not in self.settings.ALLOWED_CONTENT_TYPES:
            raise PuzzleValidationError(
                f"Unsupported image type {content_type}. Allowed: {', '.join(self.settings.ALLOWED_CONTENT_TYPES)}"
            )
        grid = plan_grid(piece_count, self.settings.MIN_PIECES, self.settings.MAX_PIECES)

        puzzle_id = str(uuid.uuid4())
        self.store_retry.call(
            lambda: self.blobs.put(original_key(puzzle_id), data, content_type), "Uploading original image"
        )

        record = PuzzleRecord(
            id=puzzle_id,
            name=name,
            piece_count=piece_count,
            grid_cols=grid.cols,
            grid_rows=grid.rows,
            created_at=now_ms(),
            status=PuzzleStatus.PROCESSING,
            version=0,
            progress=create_puzzle_progress(piece_count, 0),
        )
        self.store_retry.call(
            lambda: self.metadata.put(puzzle_key(puzzle_id), record.to_json_dict()), "Creating puzzle record"
        )
        logger.info("Created puzzle %s (%d pieces, %dx%d)", puzzle_id, piece_count, grid.rows, grid.cols)

        self.trigger.enqueue(puzzle_id, JobParams(puzzle_id=puzzle_id))
        return record

    def get_puzzle(self, puzzle_id: str) -> Optional[PuzzleRecord]:
        return self.store_retry.call(lambda: read_record(self.metadata, puzzle_id), f"Reading puzzle {puzzle_id}")

    def list_puzzles(self) -> List[PuzzleSummary]:
        """Summaries of every puzzle, newest first."""
        records = []
        for key in self.metadata.iter_keys("puzzle:"):
            record = read_record(self.metadata, key[len("puzzle:") :])
            if record is not None:
                records.append(record)
        records.sort(key=lambda r: r.created_at, reverse=True)
        return [record.summary() for record in records]

    def get_thumbnail(self, puzzle_id: str) -> Optional[Tuple[bytes, str]]:
        return self._get_blob(thumbnail_key(puzzle_id))

    def get_piece_image(self, puzzle_id: str, piece_id: int) -> Optional[Tuple[bytes, str]]:
        record = self.get_puzzle(puzzle_id)
        if record is None or not 0 <= piece_id < record.piece_count:
            return None
        return self._get_blob(piece_key(puzzle_id, piece_id))

    def _get_blob(self, key: str) -> Optional[Tuple[bytes, str]]:
        data = self.store_retry.call(lambda: self.blobs.get(key), f"Reading {key}")
        if data is None:
            return None
        content_type = self.blobs.get_content_type(key) or "application/octet-stream"
        return data, content_type

    def delete_puzzle(self, puzzle_id: str) -> DeletionResult:
        """Delete a puzzle record and its images.

        A tombstone is written first so a job still running for the puzzle
        cannot write the record back. Blob deletion is best-effort; keys that
        could not be deleted are reported.

        Raises:
            PuzzleNotFoundError: If no such puzzle exists.
        """
        lock_name = f"delete:{puzzle_id}"
        token = self.locks.acquire(lock_name)
        if token is None:
            logger.warning("Deletion of puzzle %s already in progress", puzzle_id)
            return DeletionResult(puzzle_id=puzzle_id, deleted=False)

        try:
            record = self.get_puzzle(puzzle_id)
            if record is None:
                raise PuzzleNotFoundError(puzzle_id)

            self.store_retry.call(
                lambda: self.metadata.put(tombstone_key(puzzle_id), {"deletedAt": now_ms()}), "Writing tombstone"
            )
            blob_result = self.blobs.delete(puzzle_asset_keys(puzzle_id, record.piece_count))
            if not blob_result.success:
                logger.error("Failed to delete %d assets of puzzle %s", len(blob_result.failed_keys), puzzle_id)

            self.store_retry.call(lambda: self.metadata.delete(puzzle_key(puzzle_id)), "Deleting puzzle record")
            self.store_retry.call(lambda: self.metadata.delete(job_key(puzzle_id)), "Deleting job checkpoints")
            self.coordinators.forget(puzzle_id)
            logger.info("Deleted puzzle %s", puzzle_id)
            return DeletionResult(puzzle_id=puzzle_id, deleted=True, failed_keys=blob_result.failed_keys)
        finally:
            self.locks.release(lock_name, token)

    def resume_pending_jobs(self) -> List[str]:
        """Enqueue a job for every puzzle still processing, e.g. after a restart.

        Returns:
            Ids of the puzzles whose jobs were enqueued.
        """
        resumed = []
        for summary in self.list_puzzles():
            if summary.status is PuzzleStatus.PROCESSING:
                self.trigger.enqueue(summary.id, JobParams(puzzle_id=summary.id))
                resumed.append(summary.id)
        if resumed:
            logger.info("Resumed %d pending puzzle jobs", len(resumed))
        return resumed
