from __future__ import annotations

from typing import Callable, Sequence

from vendor_compare.models.remote import CriterionRef

STANDARD_CATEGORIES = ("feature", "technical", "business", "compliance")

# (criteria of one category, category) -> same criteria in the user's manual order
ManualOrder = Callable[[list[CriterionRef], str], list[CriterionRef]]


def keep_given_order(criteria: list[CriterionRef], category: str) -> list[CriterionRef]:
    return list(criteria)


def order_criteria(
    criteria: Sequence[CriterionRef],
    manual_order: ManualOrder | None = None,
) -> list[CriterionRef]:
    """Criteria in display order: standard categories first, then custom ones.

    Grouping is by ``criterion.type`` (case-insensitive for the standard
    categories); custom categories keep their first-seen order. Within each
    group ``manual_order`` decides.
    """
    manual_order = manual_order or keep_given_order
    groups: dict[str, list[CriterionRef]] = {}
    for criterion in criteria:
        category = (criterion.type or "other").strip() or "other"
        key = category.lower() if category.lower() in STANDARD_CATEGORIES else category
        groups.setdefault(key, []).append(criterion)

    custom = [key for key in groups if key not in STANDARD_CATEGORIES]
    ordered: list[CriterionRef] = []
    for category in [*STANDARD_CATEGORIES, *custom]:
        group = groups.get(category)
        if not group:
            continue
        arranged = manual_order(list(group), category)
        if sorted(c.id for c in arranged) != sorted(c.id for c in group):
            raise ValueError(
                f"Manual order for category {category!r} must return the same criteria"
            )
        ordered.extend(arranged)
    return ordered
