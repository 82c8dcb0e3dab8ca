"""Blob and metadata storage for puzzles.

Blobs hold image bytes (originals, thumbnails, pieces). The metadata store is
a JSON key-value store holding puzzle records, job checkpoints, tombstones and
advisory locks. Store failures surface as TransientStoreError so callers can
retry them.
"""

import json
import logging
import os
import tempfile
import threading
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple
from urllib.parse import quote, unquote

from azure.core.exceptions import AzureError, ResourceNotFoundError
from azure.storage.blob import BlobServiceClient, ContentSettings

from puzzle_forge.config import Settings
from puzzle_forge.exceptions import TransientStoreError

logger = logging.getLogger(__name__)

DELETE_BATCH_SIZE = 1000
# Azure rejects blob batches with more than 256 sub-requests
AZURE_DELETE_BATCH_SIZE = 256
DEFAULT_CONTENT_TYPE = "application/octet-stream"


# Key helpers


def original_key(puzzle_id: str) -> str:
    return f"puzzles/{puzzle_id}/original"


def thumbnail_key(puzzle_id: str) -> str:
    return f"puzzles/{puzzle_id}/thumbnail.jpg"


def piece_key(puzzle_id: str, piece_id: int) -> str:
    return f"puzzles/{puzzle_id}/pieces/{piece_id}.png"


def piece_image_path(piece_id: int) -> str:
    """Piece image path relative to the puzzle, as stored on the record."""
    return f"pieces/{piece_id}.png"


def puzzle_key(puzzle_id: str) -> str:
    return f"puzzle:{puzzle_id}"


def job_key(puzzle_id: str) -> str:
    return f"job:{puzzle_id}"


def tombstone_key(puzzle_id: str) -> str:
    return f"tombstone:{puzzle_id}"


def lock_key(name: str) -> str:
    return f"lock:{name}"


def puzzle_asset_keys(puzzle_id: str, piece_count: int) -> List[str]:
    """Every blob key a puzzle with piece_count pieces may own."""
    keys = [original_key(puzzle_id), thumbnail_key(puzzle_id)]
    keys.extend(piece_key(puzzle_id, i) for i in range(piece_count))
    return keys


# Blob storage


@dataclass
class DeleteResult:
    """Outcome of a batched delete."""

    failed_keys: List[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.failed_keys


class BlobStore(ABC):
    """Content storage for image bytes."""

    delete_batch_size = DELETE_BATCH_SIZE

    @abstractmethod
    def put(self, key: str, data: bytes, content_type: str) -> None:
        """Store bytes under key, overwriting any existing blob."""

    @abstractmethod
    def get(self, key: str) -> Optional[bytes]:
        """Return the blob bytes, or None if absent."""

    @abstractmethod
    def get_content_type(self, key: str) -> Optional[str]:
        """Return the stored content type, or None if absent."""

    @abstractmethod
    def _delete_batch(self, keys: List[str]) -> List[str]:
        """Delete up to delete_batch_size keys; missing keys are not an error.

        Returns:
            Keys that could not be deleted. A failure of the whole batch is
            raised as TransientStoreError instead.
        """

    def delete(self, keys: List[str]) -> DeleteResult:
        """Best-effort batched delete.

        Returns:
            DeleteResult listing every key that could not be deleted.
        """
        result = DeleteResult()
        for i in range(0, len(keys), self.delete_batch_size):
            batch = keys[i : i + self.delete_batch_size]
            try:
                failed = self._delete_batch(batch)
            except TransientStoreError as e:
                logger.error("Failed to delete batch of %d blobs: %s", len(batch), e)
                result.failed_keys.extend(batch)
                continue
            if failed:
                logger.error("Failed to delete %d of %d blobs in batch", len(failed), len(batch))
                result.failed_keys.extend(failed)
        return result


class InMemoryBlobStore(BlobStore):
    """Blob store kept in process memory, for tests and local runs."""

    def __init__(self) -> None:
        self._blobs: Dict[str, Tuple[bytes, str]] = {}
        self._lock = threading.Lock()

    def put(self, key: str, data: bytes, content_type: str) -> None:
        with self._lock:
            self._blobs[key] = (bytes(data), content_type)

    def get(self, key: str) -> Optional[bytes]:
        with self._lock:
            entry = self._blobs.get(key)
        return entry[0] if entry else None

    def get_content_type(self, key: str) -> Optional[str]:
        with self._lock:
            entry = self._blobs.get(key)
        return entry[1] if entry else None

    def _delete_batch(self, keys: List[str]) -> List[str]:
        with self._lock:
            for key in keys:
                self._blobs.pop(key, None)
        return []

    def keys(self) -> List[str]:
        with self._lock:
            return sorted(self._blobs)


class LocalBlobStore(BlobStore):
    """Blob store backed by a directory on local disk."""

    CONTENT_TYPE_SUFFIX = ".content-type"

    def __init__(self, root: Path) -> None:
        """Initialize the store, creating the root directory if needed."""
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        path = (self.root / key).resolve()
        if self.root.resolve() not in path.parents:
            raise ValueError(f"Blob key escapes the storage root: {key}")
        return path

    def put(self, key: str, data: bytes, content_type: str) -> None:
        path = self._path(key)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            _atomic_write(path, data)
            _atomic_write(path.with_name(path.name + self.CONTENT_TYPE_SUFFIX), content_type.encode("utf-8"))
        except OSError as e:
            raise TransientStoreError(f"Failed to write blob {key}: {e}") from e

    def get(self, key: str) -> Optional[bytes]:
        path = self._path(key)
        try:
            return path.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as e:
            raise TransientStoreError(f"Failed to read blob {key}: {e}") from e

    def get_content_type(self, key: str) -> Optional[str]:
        path = self._path(key)
        try:
            return path.with_name(path.name + self.CONTENT_TYPE_SUFFIX).read_text(encoding="utf-8")
        except FileNotFoundError:
            return DEFAULT_CONTENT_TYPE if path.exists() else None
        except OSError as e:
            raise TransientStoreError(f"Failed to read blob {key}: {e}") from e

    def _delete_batch(self, keys: List[str]) -> List[str]:
        try:
            for key in keys:
                path = self._path(key)
                path.unlink(missing_ok=True)
                path.with_name(path.name + self.CONTENT_TYPE_SUFFIX).unlink(missing_ok=True)
        except OSError as e:
            raise TransientStoreError(f"Failed to delete blobs: {e}") from e
        return []


class AzureBlobStore(BlobStore):
    """Blob store backed by an Azure Storage container."""

    delete_batch_size = AZURE_DELETE_BATCH_SIZE

    def __init__(self, connection_string: str, container_name: str = "puzzle-images") -> None:
        """Initialize the Azure container client."""
        self.container_name = container_name
        self.blob_service_client = BlobServiceClient.from_connection_string(connection_string)
        self.container_client = self.blob_service_client.get_container_client(container_name)

    def put(self, key: str, data: bytes, content_type: str) -> None:
        try:
            blob_client = self.container_client.get_blob_client(key)
            blob_client.upload_blob(data, overwrite=True, content_settings=ContentSettings(content_type=content_type))
        except AzureError as e:
            raise TransientStoreError(f"Failed to upload blob {key} to Azure: {e}") from e

    def get(self, key: str) -> Optional[bytes]:
        try:
            blob_client = self.container_client.get_blob_client(key)
            return blob_client.download_blob().readall()
        except ResourceNotFoundError:
            return None
        except AzureError as e:
            raise TransientStoreError(f"Failed to download blob {key} from Azure: {e}") from e

    def get_content_type(self, key: str) -> Optional[str]:
        try:
            properties = self.container_client.get_blob_client(key).get_blob_properties()
        except ResourceNotFoundError:
            return None
        except AzureError as e:
            raise TransientStoreError(f"Failed to read blob properties for {key}: {e}") from e
        return properties.content_settings.content_type or DEFAULT_CONTENT_TYPE

    def _delete_batch(self, keys: List[str]) -> List[str]:
        try:
            responses = list(self.container_client.delete_blobs(*keys, raise_on_any_failure=False))
        except AzureError as e:
            raise TransientStoreError(f"Failed to delete blobs from Azure: {e}") from e

        # Sub-responses come back in request order; 404 means already gone
        failed: List[str] = list(keys[len(responses) :])
        for key, response in zip(keys, responses):
            if response.status_code not in (200, 202, 404):
                logger.warning("Azure refused to delete blob %s: HTTP %d", key, response.status_code)
                failed.append(key)
        return failed


# Metadata storage


@dataclass
class KeyPage:
    """One page of a key listing."""

    keys: List[str]
    cursor: Optional[str] = None
    complete: bool = True


class MetadataStore(ABC):
    """JSON key-value store."""

    @abstractmethod
    def get(self, key: str) -> Optional[Any]:
        """Return the decoded JSON value, or None if absent."""

    @abstractmethod
    def put(self, key: str, value: Any) -> None:
        """Store a JSON-serializable value."""

    @abstractmethod
    def delete(self, key: str) -> None:
        """Remove a key; missing keys are not an error."""

    @abstractmethod
    def _all_keys(self) -> List[str]:
        """All stored keys."""

    def list(self, prefix: str = "", cursor: Optional[str] = None, limit: int = 1000) -> KeyPage:
        """List keys with the given prefix, in sorted order, one page at a time.

        Args:
            prefix: Only keys starting with this prefix are returned.
            cursor: Cursor from the previous page, or None for the first page.
            limit: Maximum number of keys per page.
        """
        keys = sorted(k for k in self._all_keys() if k.startswith(prefix))
        if cursor is not None:
            keys = [k for k in keys if k > cursor]
        page = keys[:limit]
        complete = len(keys) <= limit
        return KeyPage(keys=page, cursor=None if complete else page[-1], complete=complete)

    def iter_keys(self, prefix: str = "") -> Iterator[str]:
        """Iterate over every key with the prefix, following pagination."""
        cursor: Optional[str] = None
        while True:
            page = self.list(prefix, cursor=cursor)
            yield from page.keys
            if page.complete:
                return
            cursor = page.cursor


class InMemoryMetadataStore(MetadataStore):
    """Metadata store kept in process memory.

    Values are stored as JSON text so callers never share mutable state.
    """

    def __init__(self) -> None:
        self._data: Dict[str, str] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            raw = self._data.get(key)
        return json.loads(raw) if raw is not None else None

    def put(self, key: str, value: Any) -> None:
        raw = json.dumps(value)
        with self._lock:
            self._data[key] = raw

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def _all_keys(self) -> List[str]:
        with self._lock:
            return list(self._data)


class FileMetadataStore(MetadataStore):
    """Metadata store with one JSON file per key in a directory."""

    def __init__(self, root: Path) -> None:
        """Initialize the store, creating the root directory if needed."""
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        return self.root / f"{quote(key, safe='')}.json"

    def get(self, key: str) -> Optional[Any]:
        try:
            raw = self._path(key).read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as e:
            raise TransientStoreError(f"Failed to read metadata {key}: {e}") from e
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            logger.error("Corrupt metadata file for key %s", key)
            return None

    def put(self, key: str, value: Any) -> None:
        try:
            _atomic_write(self._path(key), json.dumps(value).encode("utf-8"))
        except OSError as e:
            raise TransientStoreError(f"Failed to write metadata {key}: {e}") from e

    def delete(self, key: str) -> None:
        try:
            self._path(key).unlink(missing_ok=True)
        except OSError as e:
            raise TransientStoreError(f"Failed to delete metadata {key}: {e}") from e

    def _all_keys(self) -> List[str]:
        try:
            names = os.listdir(self.root)
        except OSError as e:
            raise TransientStoreError(f"Failed to list metadata: {e}") from e
        return [unquote(name[: -len(".json")]) for name in names if name.endswith(".json")]


def _atomic_write(path: Path, data: bytes) -> None:
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=".tmp-")
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


# Advisory locking


class AdvisoryLock:
    """Best-effort lock on top of the metadata store.

    Acquisition is check-then-put and therefore not atomic: two callers can
    both win a race. Only use it where a lost update is harmless; puzzle
    records are serialized by the metadata coordinator instead.
    """

    def __init__(self, store: MetadataStore, ttl_seconds: int = 60) -> None:
        self.store = store
        self.ttl_seconds = ttl_seconds

    def acquire(self, name: str, ttl_seconds: Optional[int] = None) -> Optional[str]:
        """Try to take the lock.

        Returns:
            An ownership token, or None if the lock is held or the store failed.
        """
        ttl = ttl_seconds if ttl_seconds is not None else self.ttl_seconds
        now = time.time()
        try:
            existing = self.store.get(lock_key(name))
            if existing and existing.get("expiresAt", 0) > now:
                return None
            token = uuid.uuid4().hex
            self.store.put(lock_key(name), {"token": token, "expiresAt": now + ttl})
            return token
        except TransientStoreError as e:
            logger.error("Failed to acquire lock %s: %s", name, e)
            return None

    def release(self, name: str, token: str) -> bool:
        """Release the lock if token still owns it.

        Returns:
            True if the lock was released.
        """
        try:
            current = self.store.get(lock_key(name))
            if current and current.get("token") == token:
                self.store.delete(lock_key(name))
                return True
            logger.warning("Lock release for %s aborted: token mismatch", name)
        except TransientStoreError as e:
            logger.error("Failed to release lock %s: %s", name, e)
        return False


@dataclass
class Stores:
    """The storage backends used by a running service."""

    blobs: BlobStore
    metadata: MetadataStore
    coordinator_state: MetadataStore


def create_stores(settings: Settings) -> Stores:
    """Build storage backends from settings.

    Blobs go to Azure when USE_AZURE_STORAGE is set, otherwise to STORAGE_DIR.
    Metadata and the coordinators' own durable copies always live on disk.
    """
    if settings.USE_AZURE_STORAGE:
        if not settings.AZURE_STORAGE_CONNECTION_STRING:
            raise ValueError("USE_AZURE_STORAGE is set but AZURE_STORAGE_CONNECTION_STRING is empty")
        blobs: BlobStore = AzureBlobStore(settings.AZURE_STORAGE_CONNECTION_STRING, settings.AZURE_CONTAINER_NAME)
    else:
        blobs = LocalBlobStore(settings.STORAGE_DIR / "blobs")

    return Stores(
        blobs=blobs,
        metadata=FileMetadataStore(settings.STORAGE_DIR / "metadata"),
        coordinator_state=FileMetadataStore(settings.STORAGE_DIR / "coordinator"),
    )
