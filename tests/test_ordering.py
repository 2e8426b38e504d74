from __future__ import annotations

import pytest

from vendor_compare.models.remote import CriterionRef
from vendor_compare.services.ordering import order_criteria


def _criterion(cid: str, ctype: str) -> CriterionRef:
    return CriterionRef(id=cid, name=cid.upper(), type=ctype)


def test_standard_categories_come_first_in_fixed_order():
    criteria = [
        _criterion("a", "Compliance"),
        _criterion("b", "usability"),
        _criterion("c", "feature"),
        _criterion("d", "business"),
        _criterion("e", "technical"),
        _criterion("f", "feature"),
    ]

    ordered = [c.id for c in order_criteria(criteria)]

    assert ordered == ["c", "f", "e", "d", "a", "b"]


def test_custom_categories_keep_first_seen_order():
    criteria = [
        _criterion("a", "security"),
        _criterion("b", "support"),
        _criterion("c", "security"),
    ]

    assert [c.id for c in order_criteria(criteria)] == ["a", "c", "b"]


def test_manual_order_applies_within_category():
    criteria = [_criterion("a", "feature"), _criterion("b", "feature"), _criterion("c", "business")]

    ordered = order_criteria(criteria, lambda group, category: list(reversed(group)))

    assert [c.id for c in ordered] == ["b", "a", "c"]


def test_manual_order_cannot_drop_criteria():
    criteria = [_criterion("a", "feature"), _criterion("b", "feature")]

    with pytest.raises(ValueError):
        order_criteria(criteria, lambda group, category: group[:1])
