"""Persistence for comparison snapshots.

Two independent documents are kept per project:

- ``stage1_results_{project_id}``: settled Stage-1 cells keyed criterion -> vendor
- ``stage2_results_{project_id}``: ranking outcomes keyed by criterion

Each document is written under a fresh versioned key first and only then is the
pointer key swapped to it, so a failed write always leaves the previous version
readable.
"""
from __future__ import annotations

import os
import tempfile
import uuid
from hashlib import sha256
from pathlib import Path
from typing import Optional, Protocol

from pydantic import BaseModel, Field, ValidationError

from vendor_compare.errors import StoreError
from vendor_compare.models.comparison import utc_now_iso
from vendor_compare.services import logger as log_service

SNAPSHOT_VERSION = 1


class KeyValueStore(Protocol):
    def get(self, key: str) -> bytes | None: ...

    def set(self, key: str, value: bytes) -> None: ...

    def delete(self, key: str) -> None: ...


class MemoryKeyValueStore:
    """Dict-backed store, used by tests and short-lived runs."""

    def __init__(self) -> None:
        self.data: dict[str, bytes] = {}

    def get(self, key: str) -> bytes | None:
        return self.data.get(key)

    def set(self, key: str, value: bytes) -> None:
        self.data[key] = bytes(value)

    def delete(self, key: str) -> None:
        self.data.pop(key, None)


class FileKeyValueStore:
    """One file per key under ``base_dir``; writes replace files atomically."""

    def __init__(self, base_dir: str = ".cache/comparison"):
        self.base_dir = Path(base_dir)
        self.base_dir.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        digest = sha256(key.encode("utf-8")).hexdigest()
        return self.base_dir / f"{digest}.bin"

    def get(self, key: str) -> bytes | None:
        path = self._path(key)
        if not path.exists():
            return None
        return path.read_bytes()

    def set(self, key: str, value: bytes) -> None:
        path = self._path(key)
        fd, tmp_name = tempfile.mkstemp(dir=self.base_dir, prefix=".tmp-", suffix=".bin")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(value)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def delete(self, key: str) -> None:
        self._path(key).unlink(missing_ok=True)


# --- Snapshot documents ---


class StoredCell(BaseModel):
    status: str
    value: Optional[str] = None
    evidence_url: Optional[str] = None
    evidence_description: Optional[str] = None
    vendor_site_evidence: Optional[str] = None
    third_party_evidence: Optional[str] = None
    research_notes: Optional[str] = None
    search_count: Optional[int] = None
    comment: Optional[str] = None
    summary: Optional[str] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    retry_count: int = 0


class Stage1Snapshot(BaseModel):
    version: int = SNAPSHOT_VERSION
    project_id: str
    timestamp: str = Field(default_factory=utc_now_iso)
    is_paused: bool = False
    current_criterion_index: int = 0
    results: dict[str, dict[str, StoredCell]] = Field(default_factory=dict)


class VendorUpdate(BaseModel):
    value: str
    evidence_url: Optional[str] = None
    evidence_description: Optional[str] = None
    comment: Optional[str] = None


class Stage2RowResult(BaseModel):
    criterion_id: str
    status: str  # completed | failed
    error: Optional[str] = None
    criterion_insight: Optional[str] = None
    stars_awarded: Optional[int] = None
    vendor_updates: dict[str, VendorUpdate] = Field(default_factory=dict)
    vendor_summaries: dict[str, str] = Field(default_factory=dict)


class Stage2Snapshot(BaseModel):
    version: int = SNAPSHOT_VERSION
    project_id: str
    timestamp: str = Field(default_factory=utc_now_iso)
    results: dict[str, Stage2RowResult] = Field(default_factory=dict)


def stage1_key(project_id: str) -> str:
    return f"stage1_results_{project_id}"


def stage2_key(project_id: str) -> str:
    return f"stage2_results_{project_id}"


class ComparisonStorage:
    """Versioned, pointer-swapped snapshot documents on top of a KeyValueStore."""

    def __init__(self, store: KeyValueStore, project_id: str):
        self.store = store
        self.project_id = project_id

    # --- generic document plumbing ---

    def _write_document(self, key: str, payload: bytes) -> None:
        version_key = f"{key}@{uuid.uuid4().hex}"
        try:
            previous = self.store.get(key)
            self.store.set(version_key, payload)
            self.store.set(key, version_key.encode("utf-8"))
        except Exception as exc:
            log_service.log_store_operation("write", key, "failed", error=str(exc))
            raise StoreError("write", key, exc) from exc

        if previous:
            old_key = previous.decode("utf-8")
            if old_key != version_key:
                try:
                    self.store.delete(old_key)
                except Exception as exc:
                    # The pointer already moved; an orphaned version is harmless.
                    log_service.log_store_operation(
                        "delete", old_key, "failed", error=str(exc)
                    )
        log_service.log_store_operation("write", key, "success", details=version_key)

    def _read_document(self, key: str) -> bytes | None:
        try:
            pointer = self.store.get(key)
            if pointer is None:
                return None
            return self.store.get(pointer.decode("utf-8"))
        except Exception as exc:
            log_service.log_store_operation("read", key, "failed", error=str(exc))
            raise StoreError("read", key, exc) from exc

    def _delete_document(self, key: str) -> None:
        try:
            pointer = self.store.get(key)
            self.store.delete(key)
            if pointer is not None:
                self.store.delete(pointer.decode("utf-8"))
        except Exception as exc:
            log_service.log_store_operation("delete", key, "failed", error=str(exc))
            raise StoreError("delete", key, exc) from exc
        log_service.log_store_operation("delete", key, "success")

    # --- snapshots ---

    def save_stage1(self, snapshot: Stage1Snapshot) -> None:
        self._write_document(
            stage1_key(self.project_id), snapshot.model_dump_json().encode("utf-8")
        )

    def save_stage2(self, snapshot: Stage2Snapshot) -> None:
        self._write_document(
            stage2_key(self.project_id), snapshot.model_dump_json().encode("utf-8")
        )

    def load_stage1(self) -> Stage1Snapshot | None:
        return self._load(stage1_key(self.project_id), Stage1Snapshot)

    def load_stage2(self) -> Stage2Snapshot | None:
        return self._load(stage2_key(self.project_id), Stage2Snapshot)

    def _load(self, key: str, model: type[BaseModel]):
        raw = self._read_document(key)
        if raw is None:
            return None
        try:
            snapshot = model.model_validate_json(raw)
        except ValidationError as exc:
            log_service.log_store_operation(
                "read", key, "invalid", error=f"Invalid snapshot structure: {exc}"
            )
            return None
        if snapshot.project_id != self.project_id:
            log_service.log_store_operation(
                "read", key, "invalid", error=f"Snapshot belongs to {snapshot.project_id}"
            )
            return None
        return snapshot

    def clear(self) -> None:
        self._delete_document(stage1_key(self.project_id))
        self._delete_document(stage2_key(self.project_id))

    # --- generic JSON documents (battlecards) ---

    def save_model(self, key: str, model: BaseModel) -> None:
        self._write_document(key, model.model_dump_json().encode("utf-8"))

    def load_model(self, key: str, model: type[BaseModel]):
        raw = self._read_document(key)
        if raw is None:
            return None
        try:
            return model.model_validate_json(raw)
        except ValidationError as exc:
            log_service.log_store_operation("read", key, "invalid", error=str(exc))
            return None

    def delete_model(self, key: str) -> None:
        self._delete_document(key)
