"""Durable resource record storage with optimistic concurrency.

Every update carries the resource version it was read at. A mismatch raises
ConflictError and the caller re-fetches and re-applies its change; nothing
here takes a lock. Removing the last finalizer from a record that has a
deletion timestamp erases the record, as the orchestration platform does.

Two backends are provided:
- InMemoryResourceStore: process-local, for tests and embedding.
- YamlResourceStore: one YAML manifest per record on disk, so state such as
  the cleanup start time survives process restarts.
"""

from __future__ import annotations

import asyncio
import logging
import os
import tempfile
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path
from typing import Protocol

import yaml
from pydantic import ValidationError

from .errors import ConflictError, ManifestError, ResourceNotFoundError
from .models import ResourceRecord, ResourceRef

logger = logging.getLogger(__name__)

# Conflict retries for read-modify-write helpers
DEFAULT_CONFLICT_RETRIES = 5

# SECURITY: Manifests larger than this are rejected to bound memory use
MAX_MANIFEST_FILE_SIZE_BYTES = 1024 * 1024


class ResourceStore(Protocol):
    """Storage surface the cleanup machinery depends on."""

    async def get(self, ref: ResourceRef) -> ResourceRecord: ...

    async def create(self, record: ResourceRecord) -> ResourceRecord: ...

    async def update(self, record: ResourceRecord) -> ResourceRecord: ...


def _should_erase(record: ResourceRecord) -> bool:
    return record.is_deleting and not record.metadata.finalizers


class InMemoryResourceStore:
    """Process-local store. Returned records are copies."""

    def __init__(self, records: list[ResourceRecord] | None = None) -> None:
        self._records: dict[ResourceRef, ResourceRecord] = {}
        self.update_count = 0
        self.conflict_count = 0
        for record in records or []:
            self._records[record.ref] = record.model_copy(deep=True)

    def __contains__(self, ref: ResourceRef) -> bool:
        return ref in self._records

    async def list_refs(self) -> list[ResourceRef]:
        return sorted(self._records, key=str)

    async def get(self, ref: ResourceRef) -> ResourceRecord:
        # Yield so concurrent read-modify-write cycles interleave as they would
        # against a remote API server.
        await asyncio.sleep(0)
        record = self._records.get(ref)
        if record is None:
            raise ResourceNotFoundError(f"{ref} not found")
        return record.model_copy(deep=True)

    async def create(self, record: ResourceRecord) -> ResourceRecord:
        await asyncio.sleep(0)
        if record.ref in self._records:
            raise ConflictError(f"{record.ref} already exists")
        stored = record.model_copy(deep=True)
        stored.metadata.resource_version = 1
        self._records[record.ref] = stored
        return stored.model_copy(deep=True)

    async def update(self, record: ResourceRecord) -> ResourceRecord:
        await asyncio.sleep(0)
        current = self._records.get(record.ref)
        if current is None:
            raise ResourceNotFoundError(f"{record.ref} not found")
        if current.metadata.resource_version != record.metadata.resource_version:
            self.conflict_count += 1
            raise ConflictError(
                f"{record.ref} was modified: have version "
                f"{record.metadata.resource_version}, stored version "
                f"{current.metadata.resource_version}"
            )

        stored = record.model_copy(deep=True)
        stored.metadata.resource_version = current.metadata.resource_version + 1
        self.update_count += 1
        if _should_erase(stored):
            del self._records[record.ref]
            logger.info("Resource erased", extra={"resource": str(record.ref)})
        else:
            self._records[record.ref] = stored
        return stored.model_copy(deep=True)


class YamlResourceStore:
    """Store backed by one YAML manifest per record.

    Layout: ``<root>/<kind>/<namespace>/<name>.yaml``. Writes go to a
    temporary file that is atomically renamed into place.
    """

    def __init__(self, root: Path) -> None:
        self._root = root

    @property
    def root(self) -> Path:
        return self._root

    def path_for(self, ref: ResourceRef) -> Path:
        for part in (ref.kind, ref.namespace, ref.name):
            if not part or "/" in part or part.startswith("."):
                raise ValueError(f"Invalid resource reference component: {part!r}")
        return self._root / ref.kind / ref.namespace / f"{ref.name}.yaml"

    def _read(self, ref: ResourceRef) -> ResourceRecord:
        path = self.path_for(ref)
        if not path.exists():
            raise ResourceNotFoundError(f"{ref} not found at {path}")

        try:
            file_size = path.stat().st_size
            if file_size > MAX_MANIFEST_FILE_SIZE_BYTES:
                raise ManifestError(
                    f"Manifest {path} exceeds maximum size of {MAX_MANIFEST_FILE_SIZE_BYTES} bytes"
                )
            with path.open(encoding="utf-8") as f:
                data = yaml.safe_load(f)
        except OSError as e:
            raise ManifestError(f"Cannot read manifest {path}: {e}") from e
        except yaml.YAMLError as e:
            raise ManifestError(f"Invalid YAML in manifest {path}: {e}") from e

        if not isinstance(data, dict):
            raise ManifestError(f"Manifest {path} must contain a mapping")

        try:
            return ResourceRecord.model_validate(data)
        except ValidationError as e:
            errors = [f"{'.'.join(str(loc) for loc in err['loc'])}: {err['msg']}" for err in e.errors()]
            raise ManifestError(f"Manifest {path} failed validation: {'; '.join(errors)}") from e

    def _write(self, record: ResourceRecord) -> None:
        path = self.path_for(record.ref)
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.stem}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                yaml.safe_dump(record.to_manifest(), f, sort_keys=False)
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def _create(self, record: ResourceRecord) -> ResourceRecord:
        if self.path_for(record.ref).exists():
            raise ConflictError(f"{record.ref} already exists")
        stored = record.model_copy(deep=True)
        stored.metadata.resource_version = 1
        self._write(stored)
        return stored

    def _update(self, record: ResourceRecord) -> ResourceRecord:
        current = self._read(record.ref)
        if current.metadata.resource_version != record.metadata.resource_version:
            raise ConflictError(
                f"{record.ref} was modified: have version "
                f"{record.metadata.resource_version}, stored version "
                f"{current.metadata.resource_version}"
            )

        stored = record.model_copy(deep=True)
        stored.metadata.resource_version = current.metadata.resource_version + 1
        if _should_erase(stored):
            self.path_for(record.ref).unlink()
            logger.info("Resource erased", extra={"resource": str(record.ref)})
        else:
            self._write(stored)
        return stored

    def _list_refs(self) -> list[ResourceRef]:
        if not self._root.exists():
            return []
        refs = [
            ResourceRef(kind=path.parent.parent.name, namespace=path.parent.name, name=path.stem)
            for path in self._root.glob("*/*/*.yaml")
            if not path.name.startswith(".")
        ]
        return sorted(refs, key=str)

    async def list_refs(self) -> list[ResourceRef]:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._list_refs)

    async def get(self, ref: ResourceRef) -> ResourceRecord:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._read, ref)

    async def create(self, record: ResourceRecord) -> ResourceRecord:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._create, record)

    async def update(self, record: ResourceRecord) -> ResourceRecord:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._update, record)


async def mutate(
    store: ResourceStore,
    ref: ResourceRef,
    change: Callable[[ResourceRecord], bool],
    retries: int = DEFAULT_CONFLICT_RETRIES,
) -> ResourceRecord:
    """Apply ``change`` to the latest copy of a record, retrying on conflict.

    ``change`` edits the record in place and returns False when there is
    nothing to write, in which case the fetched record is returned as is.

    Raises:
        ConflictError: If every attempt lost the race.
        ResourceNotFoundError: If the record does not exist.
    """
    last_error: ConflictError | None = None
    for attempt in range(retries + 1):
        record = await store.get(ref)
        if not change(record):
            return record
        try:
            return await store.update(record)
        except ConflictError as e:
            last_error = e
            logger.debug(
                "Update conflict, re-fetching",
                extra={"resource": str(ref), "attempt": attempt},
            )

    assert last_error is not None
    raise last_error


async def get_or_set_once(
    store: ResourceStore,
    ref: ResourceRef,
    key: str,
    value: str,
    is_valid: Callable[[str], bool] | None = None,
    retries: int = DEFAULT_CONFLICT_RETRIES,
) -> tuple[str, bool]:
    """Durably record annotation ``key`` unless a usable value already exists.

    First write wins: when a concurrent writer got there first, its value is
    adopted rather than overwritten. An existing value rejected by
    ``is_valid`` is treated as absent and replaced.

    Returns:
        The effective value and whether this call wrote it.
    """
    written = False

    def change(record: ResourceRecord) -> bool:
        nonlocal written
        existing = record.metadata.annotations.get(key)
        if existing is not None and (is_valid is None or is_valid(existing)):
            written = False
            return False
        if existing is not None:
            logger.warning(
                "Discarding unusable annotation value",
                extra={"resource": str(ref), "annotation": key, "value": existing},
            )
        record.metadata.annotations[key] = value
        written = True
        return True

    record = await mutate(store, ref, change, retries=retries)
    return record.metadata.annotations[key], written


def format_timestamp(moment: datetime) -> str:
    """RFC 3339 timestamp with second precision in UTC."""
    return moment.astimezone(UTC).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def parse_timestamp(value: str) -> datetime | None:
    """Parse an RFC 3339 timestamp; None when unparsable."""
    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except (AttributeError, ValueError):
        return None
    if parsed.tzinfo is None:
        return None
    return parsed
