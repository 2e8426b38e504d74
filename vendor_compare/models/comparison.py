from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import StrEnum
from typing import Any

from vendor_compare.models.remote import Stage1Result


class CellStatus(StrEnum):
    PENDING = "pending"
    LOADING = "loading"
    COMPLETED = "completed"
    FAILED = "failed"


class CellValue(StrEnum):
    YES = "yes"
    NO = "no"
    UNKNOWN = "unknown"
    STAR = "star"


class ErrorCode(StrEnum):
    TIMEOUT = "TIMEOUT"
    HTTP_4XX = "HTTP_4XX"
    HTTP_5XX = "HTTP_5XX"
    NETWORK_ERROR = "NETWORK_ERROR"
    UNKNOWN = "UNKNOWN"
    DUPLICATE_CATEGORY = "DUPLICATE_CATEGORY"
    SCHEDULING_PRECONDITION_FAILED = "SCHEDULING_PRECONDITION_FAILED"


SETTLED_STATUSES = frozenset({CellStatus.COMPLETED, CellStatus.FAILED})


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(slots=True)
class CellState:
    """One (criterion, vendor) research task."""

    status: CellStatus = CellStatus.PENDING
    value: CellValue | None = None
    evidence_url: str | None = None
    evidence_description: str | None = None
    vendor_site_evidence: str | None = None
    third_party_evidence: str | None = None
    research_notes: str | None = None
    search_count: int | None = None
    comment: str | None = None
    summary: str | None = None
    error: str | None = None
    error_code: str | None = None
    retry_count: int = 0

    @property
    def is_settled(self) -> bool:
        return self.status in SETTLED_STATUSES

    def mark_loading(self) -> None:
        # Only retry_count survives a relaunch.
        retry_count = self.retry_count
        for name in self.__slots__:
            setattr(self, name, None)
        self.status = CellStatus.LOADING
        self.retry_count = retry_count

    def complete(self, result: Stage1Result) -> None:
        self.status = CellStatus.COMPLETED
        self.value = CellValue(result.evidence_strength)
        self.evidence_url = result.evidence_url
        self.evidence_description = result.evidence_description
        self.vendor_site_evidence = result.vendor_site_evidence
        self.third_party_evidence = result.third_party_evidence
        self.research_notes = result.research_notes
        self.search_count = result.search_count
        self.error = None
        self.error_code = None

    def fail(self, code: str, message: str) -> None:
        self.status = CellStatus.FAILED
        self.value = None
        self.error = message or "Stage 1 workflow failed"
        self.error_code = code or ErrorCode.UNKNOWN.value


@dataclass(slots=True)
class CriterionRow:
    """All cells for one criterion plus its ranking outcome."""

    criterion_id: str
    cells: dict[str, CellState] = field(default_factory=dict)
    stage1_complete: bool = False
    stage2_status: CellStatus = CellStatus.PENDING
    stage2_error: str | None = None
    criterion_insight: str | None = None
    stars_awarded: int | None = None

    def counts(self) -> dict[str, int]:
        counts = {status.value: 0 for status in CellStatus}
        for cell in self.cells.values():
            counts[cell.status.value] += 1
        return counts


@dataclass(slots=True)
class ComparisonRunState:
    rows: dict[str, CriterionRow] = field(default_factory=dict)
    active_workflows: int = 0
    is_paused: bool = False
    current_criterion_index: int = 0
    last_updated: str = field(default_factory=utc_now_iso, compare=False)

    def touch(self) -> None:
        self.last_updated = utc_now_iso()

    def row(self, criterion_id: str) -> CriterionRow | None:
        return self.rows.get(criterion_id)

    def cell(self, criterion_id: str, vendor_id: str) -> CellState | None:
        row = self.rows.get(criterion_id)
        return row.cells.get(vendor_id) if row else None

    def count_in_flight(self) -> int:
        """Loading cells plus loading rankings; must equal ``active_workflows``."""
        loading_cells = sum(
            1
            for row in self.rows.values()
            for cell in row.cells.values()
            if cell.status == CellStatus.LOADING
        )
        loading_rows = sum(
            1 for row in self.rows.values() if row.stage2_status == CellStatus.LOADING
        )
        return loading_cells + loading_rows

    def summary(self) -> dict[str, Any]:
        totals = {status.value: 0 for status in CellStatus}
        ranked = 0
        for row in self.rows.values():
            for status, count in row.counts().items():
                totals[status] += count
            if row.stage2_status == CellStatus.COMPLETED:
                ranked += 1
        return {
            "criteria": len(self.rows),
            "cells": totals,
            "ranked_rows": ranked,
            "active_workflows": self.active_workflows,
            "is_paused": self.is_paused,
            "current_criterion_index": self.current_criterion_index,
        }


def is_row_settled(row: CriterionRow) -> bool:
    return all(cell.is_settled for cell in row.cells.values())


def is_row_ready_for_ranking(row: CriterionRow) -> bool:
    return is_row_settled(row) and any(
        cell.status == CellStatus.COMPLETED for cell in row.cells.values()
    )


def completed_cells_have_values(row: CriterionRow) -> bool:
    return all(
        cell.value is not None
        for cell in row.cells.values()
        if cell.status == CellStatus.COMPLETED
    )


class RunStatus(StrEnum):
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
