from __future__ import annotations

from vendor_compare.models.comparison import CellStatus, CellValue, ErrorCode
from vendor_compare.models.remote import CriterionRef, Stage1Result, VendorRef
from vendor_compare.services.reconcile import (
    build_skeleton,
    build_stage1_snapshot,
    build_stage2_snapshot,
    reconcile,
)
from vendor_compare.services.storage import (
    Stage1Snapshot,
    Stage2RowResult,
    Stage2Snapshot,
    StoredCell,
    VendorUpdate,
)

CRITERIA = [CriterionRef(id="c1", name="SSO"), CriterionRef(id="c2", name="Audit log")]
VENDORS = [VendorRef(id="v1", name="Alpha"), VendorRef(id="v2", name="Beta")]


def _settled_state():
    state = build_skeleton(CRITERIA, VENDORS)
    row = state.rows["c1"]
    row.cells["v1"].complete(
        Stage1Result(
            evidence_strength="yes",
            evidence_url="https://alpha.test/sso",
            vendor_site_evidence="docs page",
            search_count=3,
        )
    )
    row.cells["v2"].fail(ErrorCode.HTTP_5XX.value, "HTTP error: 502")
    row.cells["v2"].retry_count = 1
    row.stage1_complete = True
    row.stage2_status = CellStatus.COMPLETED
    row.cells["v1"].value = CellValue.STAR
    row.cells["v1"].comment = "Best SSO coverage"
    row.criterion_insight = "Alpha leads"
    row.stars_awarded = 1
    # c2 is mid-flight: one loading, one pending.
    state.rows["c2"].cells["v1"].mark_loading()
    state.active_workflows = 1
    state.current_criterion_index = 1
    return state


def test_snapshot_then_reconcile_restores_settled_work():
    state = _settled_state()

    restored = reconcile(
        build_stage1_snapshot(state, "p1"),
        build_stage2_snapshot(state, "p1"),
        CRITERIA,
        VENDORS,
    )

    row = restored.rows["c1"]
    assert row.stage1_complete is True
    assert row.stage2_status == CellStatus.COMPLETED
    assert row.cells["v1"].value == CellValue.STAR
    assert row.cells["v1"].comment == "Best SSO coverage"
    assert row.cells["v1"].vendor_site_evidence == "docs page"
    assert row.cells["v2"].status == CellStatus.FAILED
    assert row.cells["v2"].error_code == ErrorCode.HTTP_5XX.value
    assert row.cells["v2"].retry_count == 1
    assert restored.current_criterion_index == 1


def test_in_flight_cells_come_back_pending():
    restored = reconcile(
        build_stage1_snapshot(_settled_state(), "p1"), None, CRITERIA, VENDORS
    )

    row = restored.rows["c2"]
    assert row.cells["v1"].status == CellStatus.PENDING
    assert row.stage1_complete is False
    assert restored.active_workflows == 0


def test_reconcile_is_idempotent_over_its_own_output():
    state = _settled_state()
    once = reconcile(build_stage1_snapshot(state, "p1"), build_stage2_snapshot(state, "p1"), CRITERIA, VENDORS)
    twice = reconcile(build_stage1_snapshot(once, "p1"), build_stage2_snapshot(once, "p1"), CRITERIA, VENDORS)

    assert once == twice


def test_completed_cell_without_valid_value_is_rerun():
    stage1 = Stage1Snapshot(
        project_id="p1",
        results={"c1": {"v1": StoredCell(status="completed", value="maybe")}},
    )

    restored = reconcile(stage1, None, CRITERIA, VENDORS)

    assert restored.rows["c1"].cells["v1"].status == CellStatus.PENDING


def test_ranking_for_unsettled_row_is_ignored():
    stage1 = Stage1Snapshot(
        project_id="p1",
        results={"c1": {"v1": StoredCell(status="completed", value="yes")}},
    )
    stage2 = Stage2Snapshot(
        project_id="p1",
        results={
            "c1": Stage2RowResult(
                criterion_id="c1",
                status="completed",
                vendor_updates={"v1": VendorUpdate(value="star")},
            )
        },
    )

    restored = reconcile(stage1, stage2, CRITERIA, VENDORS)

    row = restored.rows["c1"]
    assert row.stage2_status == CellStatus.PENDING
    assert row.cells["v1"].value == CellValue.YES


def test_failed_ranking_keeps_stage1_values():
    stage1 = Stage1Snapshot(
        project_id="p1",
        results={
            "c1": {
                "v1": StoredCell(status="completed", value="no"),
                "v2": StoredCell(status="completed", value="yes"),
            }
        },
    )
    stage2 = Stage2Snapshot(
        project_id="p1",
        results={"c1": Stage2RowResult(criterion_id="c1", status="failed", error="HTTP error: 500")},
    )

    row = reconcile(stage1, stage2, CRITERIA, VENDORS).rows["c1"]

    assert row.stage2_status == CellStatus.FAILED
    assert row.stage2_error == "HTTP error: 500"
    assert row.cells["v1"].value == CellValue.NO
    assert row.cells["v2"].value == CellValue.YES


def test_criteria_added_after_snapshot_start_pending():
    stage1 = Stage1Snapshot(
        project_id="p1",
        results={"c1": {"v1": StoredCell(status="completed", value="yes")}},
    )
    criteria = [*CRITERIA, CriterionRef(id="c3", name="SCIM")]

    restored = reconcile(stage1, None, criteria, VENDORS)

    assert set(restored.rows) == {"c1", "c2", "c3"}
    assert all(cell.status == CellStatus.PENDING for cell in restored.rows["c3"].cells.values())
