from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable


class EventType(str, Enum):
    RUN_STARTED = "run_started"
    RUN_PAUSED = "run_paused"
    RUN_COMPLETED = "run_completed"
    RUN_RESET = "run_reset"
    CRITERION_STARTED = "criterion_started"
    CELL_STARTED = "cell_started"
    CELL_COMPLETED = "cell_completed"
    CELL_FAILED = "cell_failed"
    STAGE1_COMPLETE = "stage1_complete"
    RANKING_STARTED = "ranking_started"
    RANKING_COMPLETED = "ranking_completed"
    RANKING_FAILED = "ranking_failed"
    BATTLECARD_ROW_STARTED = "battlecard_row_started"
    BATTLECARD_ROW_COMPLETED = "battlecard_row_completed"
    BATTLECARD_ROW_FAILED = "battlecard_row_failed"
    SCHEDULING_ANOMALY = "scheduling_anomaly"
    ERROR = "error"


@dataclass
class ComparisonEvent:
    event: EventType
    data: dict[str, Any] = field(default_factory=dict)
    at: float = field(default_factory=time.monotonic)


EventListener = Callable[[ComparisonEvent], None]
