from __future__ import annotations

import re
from typing import Optional

from pydantic import BaseModel, Field

from vendor_compare.models.remote import BattlecardCell

# Always generated first, in this order.
MANDATORY_CATEGORIES = (
    "Ideal For",
    "Target Verticals",
    "Key Customers",
    "Pricing Model",
    "Company Stage",
    "Primary Geo",
    "Main Integrations",
)


class BattlecardRowState(BaseModel):
    row_id: str
    category_title: str
    category_definition: str = ""
    status: str = "pending"  # pending | loading | completed | failed
    cells: list[BattlecardCell] = Field(default_factory=list)
    error: Optional[str] = None
    error_code: Optional[str] = None
    retry_count: int = 0
    timestamp: Optional[str] = None


class BattlecardsState(BaseModel):
    project_id: str
    rows: list[BattlecardRowState] = Field(default_factory=list)
    status: str = "idle"  # idle | running | paused | completed | failed
    current_row_index: int = 0
    total_rows_target: int = 10
    already_filled_categories: list[str] = Field(default_factory=list)
    error: Optional[str] = None

    def is_filled(self, category: str, *, ignore: str | None = None) -> bool:
        """Case-insensitive membership in the exclusion set."""
        target = category.strip().lower()
        skip = ignore.strip().lower() if ignore else None
        return any(
            filled.strip().lower() == target
            for filled in self.already_filled_categories
            if filled.strip().lower() != skip
        )

    def find_row(self, row_id: str) -> BattlecardRowState | None:
        return next((row for row in self.rows if row.row_id == row_id), None)

    def has_row_for(self, category: str) -> bool:
        target = category.lower()
        return any(
            row.category_title.lower() == target and row.status != "loading"
            for row in self.rows
        )


def category_slug(category: str) -> str:
    return re.sub(r"\s+", "_", category.strip()).lower() or "unknown"


def battlecard_row_id(project_id: str, index: int, category: str) -> str:
    return f"{project_id}_battlecard_{index}_{category_slug(category)}"


def battlecards_key(project_id: str) -> str:
    return f"battlecards_state_{project_id}"
