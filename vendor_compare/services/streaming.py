from __future__ import annotations

from typing import Any

from vendor_compare.models.events import ComparisonEvent, EventType


def run_started(project_id: str, criteria_count: int, **kwargs: Any) -> ComparisonEvent:
    return ComparisonEvent(
        event=EventType.RUN_STARTED,
        data={"project_id": project_id, "criteria_count": criteria_count, **kwargs},
    )


def run_paused(project_id: str, criterion_index: int) -> ComparisonEvent:
    return ComparisonEvent(
        event=EventType.RUN_PAUSED,
        data={"project_id": project_id, "criterion_index": criterion_index},
    )


def run_completed(project_id: str, summary: dict[str, Any]) -> ComparisonEvent:
    return ComparisonEvent(
        event=EventType.RUN_COMPLETED,
        data={"project_id": project_id, **summary},
    )


def run_reset(project_id: str) -> ComparisonEvent:
    return ComparisonEvent(event=EventType.RUN_RESET, data={"project_id": project_id})


def criterion_started(criterion_id: str, index: int) -> ComparisonEvent:
    return ComparisonEvent(
        event=EventType.CRITERION_STARTED,
        data={"criterion_id": criterion_id, "index": index},
    )


def cell_started(criterion_id: str, vendor_id: str, active_workflows: int) -> ComparisonEvent:
    return ComparisonEvent(
        event=EventType.CELL_STARTED,
        data={
            "criterion_id": criterion_id,
            "vendor_id": vendor_id,
            "active_workflows": active_workflows,
        },
    )


def cell_completed(criterion_id: str, vendor_id: str, value: str) -> ComparisonEvent:
    return ComparisonEvent(
        event=EventType.CELL_COMPLETED,
        data={"criterion_id": criterion_id, "vendor_id": vendor_id, "value": value},
    )


def cell_failed(
    criterion_id: str, vendor_id: str, error_code: str, message: str
) -> ComparisonEvent:
    return ComparisonEvent(
        event=EventType.CELL_FAILED,
        data={
            "criterion_id": criterion_id,
            "vendor_id": vendor_id,
            "error_code": error_code,
            "message": message,
        },
    )


def stage1_complete(criterion_id: str, counts: dict[str, int]) -> ComparisonEvent:
    return ComparisonEvent(
        event=EventType.STAGE1_COMPLETE,
        data={"criterion_id": criterion_id, **counts},
    )


def ranking_started(criterion_id: str, vendors_count: int) -> ComparisonEvent:
    return ComparisonEvent(
        event=EventType.RANKING_STARTED,
        data={"criterion_id": criterion_id, "vendors_count": vendors_count},
    )


def ranking_completed(criterion_id: str, stars_awarded: int) -> ComparisonEvent:
    return ComparisonEvent(
        event=EventType.RANKING_COMPLETED,
        data={"criterion_id": criterion_id, "stars_awarded": stars_awarded},
    )


def ranking_failed(criterion_id: str, message: str) -> ComparisonEvent:
    return ComparisonEvent(
        event=EventType.RANKING_FAILED,
        data={"criterion_id": criterion_id, "message": message},
    )


def battlecard_row_started(row_id: str, category: str | None) -> ComparisonEvent:
    return ComparisonEvent(
        event=EventType.BATTLECARD_ROW_STARTED,
        data={"row_id": row_id, "category": category},
    )


def battlecard_row_completed(row_id: str, category: str) -> ComparisonEvent:
    return ComparisonEvent(
        event=EventType.BATTLECARD_ROW_COMPLETED,
        data={"row_id": row_id, "category": category},
    )


def battlecard_row_failed(row_id: str, error_code: str, message: str) -> ComparisonEvent:
    return ComparisonEvent(
        event=EventType.BATTLECARD_ROW_FAILED,
        data={"row_id": row_id, "error_code": error_code, "message": message},
    )


def scheduling_anomaly(criterion_id: str, reason: str) -> ComparisonEvent:
    return ComparisonEvent(
        event=EventType.SCHEDULING_ANOMALY,
        data={"criterion_id": criterion_id, "reason": reason},
    )


def error(message: str, **kwargs: Any) -> ComparisonEvent:
    return ComparisonEvent(event=EventType.ERROR, data={"message": message, **kwargs})
