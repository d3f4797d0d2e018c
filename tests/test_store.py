"""Tests for resource record storage."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta, timezone
from pathlib import Path

import pytest
import yaml
from uptimerobot_mock import deleting_record, make_record

from uptime_operator.errors import ConflictError, ManifestError, ResourceNotFoundError
from uptime_operator.models import KIND_MAINTENANCE_WINDOW, ResourceRecord, ResourceRef
from uptime_operator.store import (
    InMemoryResourceStore,
    YamlResourceStore,
    format_timestamp,
    get_or_set_once,
    mutate,
    parse_timestamp,
)


class FlakyStore(InMemoryResourceStore):
    """Store whose first N updates lose the optimistic concurrency race."""

    def __init__(self, records: list[ResourceRecord], conflicts: int) -> None:
        super().__init__(records)
        self._conflicts = conflicts

    async def update(self, record: ResourceRecord) -> ResourceRecord:
        if self._conflicts > 0:
            self._conflicts -= 1
            raise ConflictError("simulated conflict")
        return await super().update(record)


class TestInMemoryResourceStore:
    """Tests for the in-memory store."""

    @pytest.mark.asyncio
    async def test_get_returns_copy(self) -> None:
        """Test mutating a fetched record does not touch stored state."""
        store = InMemoryResourceStore([make_record()])
        ref = ResourceRef("Monitor", "default", "web")

        record = await store.get(ref)
        record.metadata.annotations["touched"] = "yes"

        assert "touched" not in (await store.get(ref)).metadata.annotations

    @pytest.mark.asyncio
    async def test_missing_record(self) -> None:
        store = InMemoryResourceStore()
        with pytest.raises(ResourceNotFoundError):
            await store.get(ResourceRef("Monitor", "default", "missing"))

    @pytest.mark.asyncio
    async def test_create_rejects_duplicates(self) -> None:
        store = InMemoryResourceStore()
        await store.create(make_record())
        with pytest.raises(ConflictError):
            await store.create(make_record())

    @pytest.mark.asyncio
    async def test_update_bumps_version(self) -> None:
        store = InMemoryResourceStore([make_record()])
        record = await store.get(ResourceRef("Monitor", "default", "web"))
        version = record.metadata.resource_version

        updated = await store.update(record)

        assert updated.metadata.resource_version == version + 1
        assert store.update_count == 1

    @pytest.mark.asyncio
    async def test_stale_update_conflicts(self) -> None:
        """Test an update based on an old version is rejected."""
        store = InMemoryResourceStore([make_record()])
        ref = ResourceRef("Monitor", "default", "web")
        first = await store.get(ref)
        second = await store.get(ref)

        await store.update(first)
        with pytest.raises(ConflictError):
            await store.update(second)
        assert store.conflict_count == 1

    @pytest.mark.asyncio
    async def test_removing_last_finalizer_erases_deleting_record(self) -> None:
        store = InMemoryResourceStore([deleting_record()])
        ref = ResourceRef("Monitor", "default", "web")
        record = await store.get(ref)
        record.metadata.finalizers.clear()

        await store.update(record)

        assert ref not in store

    @pytest.mark.asyncio
    async def test_record_without_finalizers_kept_when_not_deleting(self) -> None:
        store = InMemoryResourceStore([make_record(finalizers=[])])
        ref = ResourceRef("Monitor", "default", "web")

        await store.update(await store.get(ref))

        assert ref in store


class TestMutate:
    """Tests for read-modify-write with conflict retry."""

    @pytest.mark.asyncio
    async def test_retries_after_conflict(self) -> None:
        store = FlakyStore([make_record()], conflicts=2)
        ref = ResourceRef("Monitor", "default", "web")

        def change(record: ResourceRecord) -> bool:
            record.metadata.annotations["owner"] = "ops"
            return True

        result = await mutate(store, ref, change)

        assert result.metadata.annotations["owner"] == "ops"

    @pytest.mark.asyncio
    async def test_gives_up_after_retries(self) -> None:
        store = FlakyStore([make_record()], conflicts=10)

        with pytest.raises(ConflictError):
            await mutate(store, ResourceRef("Monitor", "default", "web"), lambda r: True, retries=2)

    @pytest.mark.asyncio
    async def test_no_change_skips_write(self) -> None:
        store = InMemoryResourceStore([make_record()])

        await mutate(store, ResourceRef("Monitor", "default", "web"), lambda r: False)

        assert store.update_count == 0


class TestGetOrSetOnce:
    """Tests for first-write-wins annotations."""

    @pytest.mark.asyncio
    async def test_sets_when_absent(self) -> None:
        store = InMemoryResourceStore([make_record()])
        ref = ResourceRef("Monitor", "default", "web")

        value, written = await get_or_set_once(store, ref, "example.com/key", "first")

        assert (value, written) == ("first", True)
        assert (await store.get(ref)).metadata.annotations["example.com/key"] == "first"

    @pytest.mark.asyncio
    async def test_keeps_existing_value(self) -> None:
        store = InMemoryResourceStore([make_record(annotations={"example.com/key": "first"})])
        ref = ResourceRef("Monitor", "default", "web")

        value, written = await get_or_set_once(store, ref, "example.com/key", "second")

        assert (value, written) == ("first", False)

    @pytest.mark.asyncio
    async def test_concurrent_writers_agree(self) -> None:
        """Test racing writers both observe the single winning value."""
        store = InMemoryResourceStore([make_record()])
        ref = ResourceRef("Monitor", "default", "web")

        results = await asyncio.gather(
            get_or_set_once(store, ref, "example.com/key", "a"),
            get_or_set_once(store, ref, "example.com/key", "b"),
        )

        values = {value for value, _ in results}
        assert len(values) == 1
        assert [written for _, written in results].count(True) == 1

    @pytest.mark.asyncio
    async def test_invalid_existing_value_replaced(self) -> None:
        store = InMemoryResourceStore([make_record(annotations={"example.com/key": "garbage"})])
        ref = ResourceRef("Monitor", "default", "web")

        value, written = await get_or_set_once(
            store, ref, "example.com/key", "2026-01-01T00:00:00Z",
            is_valid=lambda v: parse_timestamp(v) is not None,
        )

        assert written
        assert value == "2026-01-01T00:00:00Z"


class TestYamlResourceStore:
    """Tests for the YAML-file backed store."""

    @pytest.mark.asyncio
    async def test_create_and_get(self, tmp_path: Path) -> None:
        store = YamlResourceStore(tmp_path)
        record = make_record(external_id="123", ready=True, spec={"prune": True})

        await store.create(record)
        loaded = await store.get(record.ref)

        assert loaded.status.id == "123"
        assert loaded.spec == {"prune": True}
        assert loaded.metadata.resource_version == 1

    @pytest.mark.asyncio
    async def test_manifest_layout(self, tmp_path: Path) -> None:
        """Test records are written as camelCase manifests at kind/namespace/name.yaml."""
        store = YamlResourceStore(tmp_path)
        await store.create(deleting_record("window", KIND_MAINTENANCE_WINDOW))

        path = tmp_path / "MaintenanceWindow" / "default" / "window.yaml"
        data = yaml.safe_load(path.read_text())

        assert data["apiVersion"] == "uptimerobot.com/v1alpha1"
        assert data["metadata"]["resourceVersion"] == 1
        assert "deletionTimestamp" in data["metadata"]

    @pytest.mark.asyncio
    async def test_stale_update_conflicts(self, tmp_path: Path) -> None:
        store = YamlResourceStore(tmp_path)
        record = await store.create(make_record())
        await store.update(record)

        with pytest.raises(ConflictError):
            await store.update(record)

    @pytest.mark.asyncio
    async def test_erase_removes_file(self, tmp_path: Path) -> None:
        store = YamlResourceStore(tmp_path)
        record = await store.create(deleting_record())
        record.metadata.finalizers.clear()

        await store.update(record)

        assert not store.path_for(record.ref).exists()
        with pytest.raises(ResourceNotFoundError):
            await store.get(record.ref)

    @pytest.mark.asyncio
    async def test_list_refs(self, tmp_path: Path) -> None:
        store = YamlResourceStore(tmp_path)
        await store.create(make_record("b"))
        await store.create(make_record("a"))

        refs = await store.list_refs()

        assert [r.name for r in refs] == ["a", "b"]

    @pytest.mark.asyncio
    async def test_list_refs_missing_root(self, tmp_path: Path) -> None:
        assert await YamlResourceStore(tmp_path / "nope").list_refs() == []

    def test_path_traversal_rejected(self, tmp_path: Path) -> None:
        store = YamlResourceStore(tmp_path)
        with pytest.raises(ValueError):
            store.path_for(ResourceRef("Monitor", "..", "web"))
        with pytest.raises(ValueError):
            store.path_for(ResourceRef("Monitor", "default", "a/b"))

    @pytest.mark.asyncio
    async def test_invalid_manifest(self, tmp_path: Path) -> None:
        path = tmp_path / "Monitor" / "default" / "web.yaml"
        path.parent.mkdir(parents=True)
        path.write_text("- just\n- a list\n")

        with pytest.raises(ManifestError, match="mapping"):
            await YamlResourceStore(tmp_path).get(ResourceRef("Monitor", "default", "web"))

    @pytest.mark.asyncio
    async def test_unknown_kind_fails_validation(self, tmp_path: Path) -> None:
        path = tmp_path / "Monitor" / "default" / "web.yaml"
        path.parent.mkdir(parents=True)
        path.write_text("kind: Pod\nmetadata:\n  name: web\n")

        with pytest.raises(ManifestError, match="validation"):
            await YamlResourceStore(tmp_path).get(ResourceRef("Monitor", "default", "web"))

    @pytest.mark.asyncio
    async def test_malformed_yaml(self, tmp_path: Path) -> None:
        path = tmp_path / "Monitor" / "default" / "web.yaml"
        path.parent.mkdir(parents=True)
        path.write_text("kind: {bad\n")

        with pytest.raises(ManifestError, match="Invalid YAML"):
            await YamlResourceStore(tmp_path).get(ResourceRef("Monitor", "default", "web"))

    @pytest.mark.asyncio
    async def test_oversized_manifest(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr("uptime_operator.store.MAX_MANIFEST_FILE_SIZE_BYTES", 8)
        path = tmp_path / "Monitor" / "default" / "web.yaml"
        path.parent.mkdir(parents=True)
        path.write_text("kind: Monitor\n")

        with pytest.raises(ManifestError, match="maximum size"):
            await YamlResourceStore(tmp_path).get(ResourceRef("Monitor", "default", "web"))


class TestTimestamps:
    """Tests for RFC 3339 helpers."""

    def test_format_truncates_and_uses_z(self) -> None:
        moment = datetime(2026, 5, 4, 3, 2, 1, 999_999, tzinfo=UTC)
        assert format_timestamp(moment) == "2026-05-04T03:02:01Z"

    def test_format_converts_to_utc(self) -> None:
        moment = datetime(2026, 5, 4, 5, 0, 0, tzinfo=timezone(timedelta(hours=2)))
        assert format_timestamp(moment) == "2026-05-04T03:00:00Z"

    def test_parse_round_trip(self) -> None:
        assert parse_timestamp("2026-05-04T03:02:01Z") == datetime(2026, 5, 4, 3, 2, 1, tzinfo=UTC)

    @pytest.mark.parametrize("value", ["", "yesterday", "2026-05-04T03:02:01"])
    def test_parse_rejects_unusable(self, value: str) -> None:
        """Test garbage and naive timestamps are treated as absent."""
        assert parse_timestamp(value) is None
