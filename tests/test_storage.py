from __future__ import annotations

import pytest

from vendor_compare.errors import StoreError
from vendor_compare.services.storage import (
    ComparisonStorage,
    FileKeyValueStore,
    MemoryKeyValueStore,
    Stage1Snapshot,
    Stage2RowResult,
    Stage2Snapshot,
    StoredCell,
    stage1_key,
)


class _FailingStore(MemoryKeyValueStore):
    """Memory store whose writes can be switched off mid-test."""

    def __init__(self) -> None:
        super().__init__()
        self.fail_writes = False

    def set(self, key: str, value: bytes) -> None:
        if self.fail_writes:
            raise OSError("disk full")
        super().set(key, value)


def _stage1(project_id: str, value: str) -> Stage1Snapshot:
    return Stage1Snapshot(
        project_id=project_id,
        results={"c1": {"v1": StoredCell(status="completed", value=value)}},
    )


def test_stage1_snapshot_round_trip():
    storage = ComparisonStorage(MemoryKeyValueStore(), "p1")

    storage.save_stage1(_stage1("p1", "yes"))

    loaded = storage.load_stage1()
    assert loaded is not None
    assert loaded.results["c1"]["v1"].value == "yes"


def test_rewrite_keeps_a_single_version_per_document():
    store = MemoryKeyValueStore()
    storage = ComparisonStorage(store, "p1")

    storage.save_stage1(_stage1("p1", "yes"))
    storage.save_stage1(_stage1("p1", "no"))

    versions = [key for key in store.data if key.startswith(f"{stage1_key('p1')}@")]
    assert len(versions) == 1
    assert storage.load_stage1().results["c1"]["v1"].value == "no"


def test_failed_write_leaves_previous_snapshot_readable():
    store = _FailingStore()
    storage = ComparisonStorage(store, "p1")
    storage.save_stage1(_stage1("p1", "yes"))

    store.fail_writes = True
    with pytest.raises(StoreError) as exc_info:
        storage.save_stage1(_stage1("p1", "no"))

    assert exc_info.value.operation == "write"
    store.fail_writes = False
    assert storage.load_stage1().results["c1"]["v1"].value == "yes"


def test_load_ignores_snapshot_of_another_project():
    store = MemoryKeyValueStore()
    ComparisonStorage(store, "p1").save_stage1(_stage1("p1", "yes"))
    # Point p2's key at p1's document.
    store.data[stage1_key("p2")] = store.data[stage1_key("p1")]

    assert ComparisonStorage(store, "p2").load_stage1() is None


def test_load_ignores_malformed_document():
    store = MemoryKeyValueStore()
    store.data[stage1_key("p1")] = b"stage1_results_p1@bad"
    store.data["stage1_results_p1@bad"] = b'{"results": "not-a-dict"}'

    assert ComparisonStorage(store, "p1").load_stage1() is None


def test_clear_removes_both_documents():
    store = MemoryKeyValueStore()
    storage = ComparisonStorage(store, "p1")
    storage.save_stage1(_stage1("p1", "yes"))
    storage.save_stage2(
        Stage2Snapshot(
            project_id="p1",
            results={"c1": Stage2RowResult(criterion_id="c1", status="failed", error="x")},
        )
    )

    storage.clear()

    assert store.data == {}
    assert storage.load_stage1() is None
    assert storage.load_stage2() is None


def test_file_store_persists_across_instances(tmp_path):
    ComparisonStorage(FileKeyValueStore(str(tmp_path)), "p1").save_stage1(_stage1("p1", "unknown"))

    reopened = ComparisonStorage(FileKeyValueStore(str(tmp_path)), "p1")

    assert reopened.load_stage1().results["c1"]["v1"].value == "unknown"
    assert not list(tmp_path.glob(".tmp-*"))
