"""Metadata consistency coordinator.

The coordinator is the only writer of a puzzle record. There is one instance
per puzzle id, each serializing its own updates, so row checkpoints from a job
apply one after another without any locking protocol on the shared store.

Every update is a two-phase write: the shared store first, then the
coordinator's own durable copy. If either write fails, both are restored to
the previous record before the error is reported.
"""

import logging
import threading
from typing import Any, Dict, Mapping, Optional

from pydantic import ValidationError

from puzzle_forge.exceptions import (
    CoordinatorWriteError,
    InvariantViolationError,
    PuzzleNotFoundError,
    TransientStoreError,
)
from puzzle_forge.models.puzzle_model import PuzzleRecord, PuzzleStatus, validation_diagnostics
from puzzle_forge.services.storage import MetadataStore, puzzle_key, tombstone_key

logger = logging.getLogger(__name__)

# Fields owned by the coordinator itself
PROTECTED_FIELDS = frozenset({"id", "version"})


def read_record(store: MetadataStore, puzzle_id: str) -> Optional[PuzzleRecord]:
    """Read and validate a record from a metadata store.

    A malformed record is logged with diagnostics and treated as absent.
    """
    data = store.get(puzzle_key(puzzle_id))
    if data is None:
        return None
    try:
        return PuzzleRecord.model_validate(data)
    except ValidationError:
        logger.error("Invalid puzzle metadata for %s: %s", puzzle_id, ", ".join(validation_diagnostics(data)))
        return None


def _normalize_updates(updates: Mapping[str, Any]) -> Dict[str, Any]:
    """Map camelCase or snake_case keys to record field names."""
    by_alias = {info.alias or name: name for name, info in PuzzleRecord.model_fields.items()}
    normalized: Dict[str, Any] = {}
    for key, value in updates.items():
        name = key if key in PuzzleRecord.model_fields else by_alias.get(key)
        if name is None:
            raise ValueError(f"Unknown puzzle field: {key}")
        if name in PROTECTED_FIELDS:
            raise ValueError(f"Field {name} cannot be updated")
        normalized[name] = value
    return normalized


class MetadataCoordinator:
    """Single writer for one puzzle's record."""

    def __init__(self, puzzle_id: str, shared_store: MetadataStore, local_store: MetadataStore) -> None:
        """Initialize the coordinator.

        Args:
            puzzle_id: The puzzle this coordinator owns.
            shared_store: The store readers see.
            local_store: The coordinator's own durable copy.
        """
        self.puzzle_id = puzzle_id
        self.shared_store = shared_store
        self.local_store = local_store
        self._lock = threading.Lock()

    def read(self) -> Optional[PuzzleRecord]:
        """Current record: own durable copy if present, else the shared store."""
        with self._lock:
            return self._current()

    def _current(self) -> Optional[PuzzleRecord]:
        return read_record(self.local_store, self.puzzle_id) or read_record(self.shared_store, self.puzzle_id)

    def apply_update(self, updates: Mapping[str, Any]) -> PuzzleRecord:
        """Merge a partial update into the record and persist it.

        Args:
            updates: Field values keyed by attribute or JSON name. id and version
                cannot be set.

        Returns:
            The persisted record with its version incremented.

        Raises:
            ValueError: If the update names an unknown or protected field.
            PuzzleNotFoundError: If the record does not exist or was deleted.
            InvariantViolationError: If the merged record breaks a record invariant.
            CoordinatorWriteError: If persisting failed; nothing was applied.
        """
        changes = _normalize_updates(updates)

        with self._lock:
            if self.shared_store.get(tombstone_key(self.puzzle_id)) is not None:
                raise PuzzleNotFoundError(self.puzzle_id, "has been deleted")

            existing = self._current()
            if existing is None:
                raise PuzzleNotFoundError(self.puzzle_id, "not found in metadata store")

            updated = self._merge(existing, changes)
            self._persist(existing, updated)
            return updated

    def _merge(self, existing: PuzzleRecord, changes: Dict[str, Any]) -> PuzzleRecord:
        data = existing.model_dump()
        data.update(changes)
        data["id"] = existing.id
        data["version"] = existing.version + 1

        status = PuzzleStatus(data["status"])
        if existing.status is not PuzzleStatus.PROCESSING and status is not existing.status:
            # Terminal states never go back to processing or switch outcome
            raise InvariantViolationError(
                f"Puzzle {self.puzzle_id} cannot move from {existing.status.value} to {status.value}"
            )

        if status is PuzzleStatus.READY:
            data["progress"] = None
            data["error"] = None
        elif status is PuzzleStatus.FAILED:
            data["progress"] = None
        else:
            data["error"] = None

        try:
            return PuzzleRecord.model_validate(data)
        except ValidationError as e:
            raise InvariantViolationError(f"Update to puzzle {self.puzzle_id} rejected: {e}") from e

    def _persist(self, previous: PuzzleRecord, updated: PuzzleRecord) -> None:
        key = puzzle_key(self.puzzle_id)
        try:
            self.shared_store.put(key, updated.to_json_dict())
            self.local_store.put(key, updated.to_json_dict())
        except TransientStoreError as e:
            logger.error("Failed to persist metadata for puzzle %s: %s", self.puzzle_id, e)
            self._rollback(previous)
            raise CoordinatorWriteError(f"Failed to persist metadata for puzzle {self.puzzle_id}") from e

    def _rollback(self, previous: PuzzleRecord) -> None:
        key = puzzle_key(self.puzzle_id)
        try:
            self.shared_store.put(key, previous.to_json_dict())
            self.local_store.put(key, previous.to_json_dict())
        except TransientStoreError as e:
            logger.error("Failed to roll back metadata for puzzle %s: %s", self.puzzle_id, e)

    def discard_local_copy(self) -> None:
        """Drop the coordinator's own durable copy."""
        with self._lock:
            self.local_store.delete(puzzle_key(self.puzzle_id))


class CoordinatorRegistry:
    """Hands out one coordinator per puzzle id.

    Coordinators for different puzzles never contend with each other.
    """

    def __init__(self, shared_store: MetadataStore, local_store: MetadataStore) -> None:
        self.shared_store = shared_store
        self.local_store = local_store
        self._coordinators: Dict[str, MetadataCoordinator] = {}
        self._lock = threading.Lock()

    def get(self, puzzle_id: str) -> MetadataCoordinator:
        with self._lock:
            coordinator = self._coordinators.get(puzzle_id)
            if coordinator is None:
                coordinator = MetadataCoordinator(puzzle_id, self.shared_store, self.local_store)
                self._coordinators[puzzle_id] = coordinator
            return coordinator

    def apply_update(self, puzzle_id: str, updates: Mapping[str, Any]) -> PuzzleRecord:
        """Apply a partial update to the named puzzle."""
        return self.get(puzzle_id).apply_update(updates)

    def forget(self, puzzle_id: str) -> None:
        """Drop the coordinator for a deleted puzzle along with its durable copy."""
        with self._lock:
            coordinator = self._coordinators.pop(puzzle_id, None)
        if coordinator is not None:
            coordinator.discard_local_copy()
        else:
            self.local_store.delete(puzzle_key(puzzle_id))
