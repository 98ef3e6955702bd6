from __future__ import annotations

import pytest

from racebook.core.errors import InvariantViolation
from racebook.domain.models import MarketStatus
from racebook.engine.lifecycle import can_transition, ensure_settleable, transition


@pytest.mark.parametrize(
    ("current", "target"),
    [
        (MarketStatus.OPEN, MarketStatus.CLOSED),
        (MarketStatus.CLOSED, MarketStatus.CLOSED),
        (MarketStatus.CLOSED, MarketStatus.SETTLING),
        (MarketStatus.SETTLING, MarketStatus.SETTLED),
    ],
)
def test_allowed_transitions(current, target):
    assert can_transition(current, target)
    assert transition(current, target) is target


@pytest.mark.parametrize(
    ("current", "target"),
    [
        (MarketStatus.OPEN, MarketStatus.SETTLING),
        (MarketStatus.OPEN, MarketStatus.SETTLED),
        (MarketStatus.CLOSED, MarketStatus.OPEN),
        (MarketStatus.SETTLING, MarketStatus.CLOSED),
        (MarketStatus.SETTLED, MarketStatus.OPEN),
        (MarketStatus.SETTLED, MarketStatus.SETTLED),
    ],
)
def test_illegal_transitions_raise(current, target):
    assert not can_transition(current, target)
    with pytest.raises(InvariantViolation) as excinfo:
        transition(current, target)
    assert excinfo.value.details == {"from": current.value, "to": target.value}


def test_only_closed_markets_are_settleable():
    ensure_settleable(MarketStatus.CLOSED)
    for status in (MarketStatus.OPEN, MarketStatus.SETTLING, MarketStatus.SETTLED):
        with pytest.raises(InvariantViolation):
            ensure_settleable(status)
