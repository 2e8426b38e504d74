"""Build, snapshot and rehydrate ComparisonRunState.

``reconcile`` is pure: it replays the Stage-1 and Stage-2 snapshot documents
into a freshly built skeleton and never touches the store.
"""
from __future__ import annotations

from typing import Iterable

from vendor_compare.models.comparison import (
    CellState,
    CellStatus,
    CellValue,
    ComparisonRunState,
    CriterionRow,
    ErrorCode,
    is_row_settled,
)
from vendor_compare.models.remote import CriterionRef, VendorRef
from vendor_compare.services import logger as log_service
from vendor_compare.services.storage import (
    Stage1Snapshot,
    Stage2RowResult,
    Stage2Snapshot,
    StoredCell,
    VendorUpdate,
)


VALID_VALUES = frozenset(value.value for value in CellValue)


def build_skeleton(
    criteria: Iterable[CriterionRef], vendors: Iterable[VendorRef]
) -> ComparisonRunState:
    """Fresh run state with every cell pending."""
    vendor_ids = [vendor.id for vendor in vendors]
    state = ComparisonRunState()
    for criterion in criteria:
        state.rows[criterion.id] = CriterionRow(
            criterion_id=criterion.id,
            cells={vendor_id: CellState() for vendor_id in vendor_ids},
        )
    return state


def _cell_from_stored(stored: StoredCell) -> CellState:
    if stored.status == CellStatus.COMPLETED.value and stored.value in VALID_VALUES:
        return CellState(
            status=CellStatus.COMPLETED,
            value=CellValue(stored.value),
            evidence_url=stored.evidence_url,
            evidence_description=stored.evidence_description,
            vendor_site_evidence=stored.vendor_site_evidence,
            third_party_evidence=stored.third_party_evidence,
            research_notes=stored.research_notes,
            search_count=stored.search_count,
            comment=stored.comment,
            summary=stored.summary,
            retry_count=stored.retry_count,
        )
    if stored.status == CellStatus.FAILED.value:
        return CellState(
            status=CellStatus.FAILED,
            error=stored.error or "Stage 1 workflow failed",
            error_code=stored.error_code or ErrorCode.UNKNOWN.value,
            retry_count=stored.retry_count,
        )
    # Loading/pending cells, or completed cells without a value, are rerun.
    return CellState(retry_count=stored.retry_count)


def _stored_from_cell(cell: CellState) -> StoredCell:
    return StoredCell(
        status=cell.status.value,
        value=cell.value.value if cell.value else None,
        evidence_url=cell.evidence_url,
        evidence_description=cell.evidence_description,
        vendor_site_evidence=cell.vendor_site_evidence,
        third_party_evidence=cell.third_party_evidence,
        research_notes=cell.research_notes,
        search_count=cell.search_count,
        comment=cell.comment,
        summary=cell.summary,
        error=cell.error,
        error_code=cell.error_code,
        retry_count=cell.retry_count,
    )


def apply_vendor_update(cell: CellState, update: VendorUpdate) -> bool:
    """Overlay one ranking result onto a completed Stage-1 cell.

    Stage-1 only evidence (vendor site, third party, notes, search count) is
    kept; URL and description are replaced only when the ranking supplies them.
    """
    if cell.status != CellStatus.COMPLETED:
        return False
    if update.value not in VALID_VALUES:
        return False
    cell.value = CellValue(update.value)
    cell.evidence_url = update.evidence_url or cell.evidence_url
    cell.evidence_description = update.evidence_description or cell.evidence_description
    cell.comment = update.comment or cell.comment
    return True


def reconcile(
    stage1_snapshot: Stage1Snapshot | None,
    stage2_snapshot: Stage2Snapshot | None,
    criteria: Iterable[CriterionRef],
    vendors: Iterable[VendorRef],
) -> ComparisonRunState:
    """Merge the two persisted documents into one run state."""
    criteria = list(criteria)
    vendors = list(vendors)
    state = build_skeleton(criteria, vendors)
    stage1_rows = stage1_snapshot.results if stage1_snapshot else {}
    stage2_rows = stage2_snapshot.results if stage2_snapshot else {}

    if stage1_snapshot is not None:
        state.is_paused = stage1_snapshot.is_paused
        state.current_criterion_index = stage1_snapshot.current_criterion_index

    for criterion_id, row in state.rows.items():
        stored_row = stage1_rows.get(criterion_id)
        if stored_row is None:
            continue

        for vendor_id in row.cells:
            stored = stored_row.get(vendor_id)
            if stored is not None:
                row.cells[vendor_id] = _cell_from_stored(stored)
        row.stage1_complete = is_row_settled(row)

        ranking = stage2_rows.get(criterion_id)
        if ranking is None:
            continue
        if not row.stage1_complete:
            log_service.log_event(
                event_type="reconcile_anomaly",
                message="Ignoring ranking for a criterion whose Stage 1 is not settled",
                criterion_id=criterion_id,
            )
            continue
        _apply_ranking(row, ranking)

    return state


def _apply_ranking(row: CriterionRow, ranking: Stage2RowResult) -> None:
    if ranking.status == CellStatus.FAILED.value:
        row.stage2_status = CellStatus.FAILED
        row.stage2_error = ranking.error or "Stage 2 workflow failed"
        return
    if ranking.status != CellStatus.COMPLETED.value:
        return

    for vendor_id, update in ranking.vendor_updates.items():
        cell = row.cells.get(vendor_id)
        if cell is not None:
            apply_vendor_update(cell, update)
    for vendor_id, summary in ranking.vendor_summaries.items():
        cell = row.cells.get(vendor_id)
        if cell is not None:
            cell.summary = summary
    row.stage2_status = CellStatus.COMPLETED
    row.criterion_insight = ranking.criterion_insight
    row.stars_awarded = ranking.stars_awarded


def build_stage1_snapshot(state: ComparisonRunState, project_id: str) -> Stage1Snapshot:
    """Only settled cells are stored; in-flight cells come back as pending."""
    results: dict[str, dict[str, StoredCell]] = {}
    for criterion_id, row in state.rows.items():
        results[criterion_id] = {
            vendor_id: _stored_from_cell(cell)
            for vendor_id, cell in row.cells.items()
            if cell.is_settled
        }
    return Stage1Snapshot(
        project_id=project_id,
        is_paused=state.is_paused,
        current_criterion_index=state.current_criterion_index,
        results=results,
    )


def build_stage2_snapshot(state: ComparisonRunState, project_id: str) -> Stage2Snapshot:
    results: dict[str, Stage2RowResult] = {}
    for criterion_id, row in state.rows.items():
        if row.stage2_status == CellStatus.FAILED:
            results[criterion_id] = Stage2RowResult(
                criterion_id=criterion_id,
                status=CellStatus.FAILED.value,
                error=row.stage2_error,
            )
        elif row.stage2_status == CellStatus.COMPLETED:
            completed = {
                vendor_id: cell
                for vendor_id, cell in row.cells.items()
                if cell.status == CellStatus.COMPLETED and cell.value is not None
            }
            results[criterion_id] = Stage2RowResult(
                criterion_id=criterion_id,
                status=CellStatus.COMPLETED.value,
                criterion_insight=row.criterion_insight,
                stars_awarded=row.stars_awarded,
                vendor_updates={
                    vendor_id: VendorUpdate(
                        value=cell.value.value,
                        evidence_url=cell.evidence_url,
                        evidence_description=cell.evidence_description,
                        comment=cell.comment,
                    )
                    for vendor_id, cell in completed.items()
                },
                vendor_summaries={
                    vendor_id: cell.summary
                    for vendor_id, cell in row.cells.items()
                    if cell.summary
                },
            )
    return Stage2Snapshot(project_id=project_id, results=results)
