from __future__ import annotations

import pytest

from racebook.core.errors import ValidationError
from racebook.domain.models import DriverAggregate, InvalidationMode, LapRecord
from racebook.engine.laps import (
    apply_lap,
    mark_invalidated,
    next_lap_number,
    parse_lap_input,
    recompute_aggregate,
    select_lap_to_invalidate,
)


def _lap(number: int, ms: int, *, invalidated: bool = False, removed: bool = False) -> LapRecord:
    return LapRecord(
        lap_id=f"lap-{number}",
        session_id="s1",
        driver_id="d1",
        lap_number=number,
        lap_time_ms=ms,
        invalidated=invalidated,
        removed=removed,
    )


def test_recompute_empty():
    aggregate = recompute_aggregate("s1", "d1", [])
    assert aggregate == DriverAggregate(session_id="s1", driver_id="d1")


def test_recompute_excludes_invalidated_time_but_counts_lap():
    laps = [_lap(1, 60000), _lap(2, 65000, invalidated=True), _lap(3, 70000)]
    aggregate = recompute_aggregate("s1", "d1", laps)
    assert aggregate.laps == 3
    assert aggregate.last_lap_ms == 70000
    assert aggregate.best_lap_ms == 60000
    assert aggregate.total_time_ms == 130000


def test_recompute_excludes_removed_laps_from_count():
    laps = [_lap(1, 60000), _lap(2, 55000, invalidated=True, removed=True)]
    aggregate = recompute_aggregate("s1", "d1", laps)
    assert aggregate.laps == 1
    assert aggregate.last_lap_ms == 60000
    assert aggregate.best_lap_ms == 60000


def test_recompute_orders_by_lap_number():
    aggregate = recompute_aggregate("s1", "d1", [_lap(3, 61000), _lap(1, 64000), _lap(2, 62000)])
    assert aggregate.last_lap_ms == 61000


def test_recompute_is_idempotent():
    laps = [_lap(1, 60000), _lap(2, 65000, invalidated=True), _lap(3, 59000)]
    assert recompute_aggregate("s1", "d1", laps) == recompute_aggregate("s1", "d1", laps)


def test_apply_lap_matches_recompute():
    laps = [_lap(1, 65000), _lap(2, 63000)]
    incremental = apply_lap(recompute_aggregate("s1", "d1", laps[:1]), 63000)
    assert incremental == recompute_aggregate("s1", "d1", laps)


def test_apply_lap_rejects_non_positive_time():
    with pytest.raises(ValidationError):
        apply_lap(DriverAggregate(session_id="s1", driver_id="d1"), 0)


def test_next_lap_number_never_reuses_removed_numbers():
    assert next_lap_number([]) == 1
    assert next_lap_number([_lap(1, 60000), _lap(2, 60000, invalidated=True, removed=True)]) == 3


def test_select_time_only_skips_already_invalidated_lap():
    laps = [_lap(1, 60000), _lap(2, 61000), _lap(3, 62000, invalidated=True)]
    assert select_lap_to_invalidate(laps, InvalidationMode.TIME_ONLY).lap_number == 2


def test_select_remove_lap_takes_last_surviving_lap():
    laps = [_lap(1, 60000), _lap(2, 61000, invalidated=True), _lap(3, 62000, invalidated=True, removed=True)]
    assert select_lap_to_invalidate(laps, InvalidationMode.REMOVE_LAP).lap_number == 2


def test_select_returns_none_without_eligible_lap():
    assert select_lap_to_invalidate([], InvalidationMode.TIME_ONLY) is None
    assert select_lap_to_invalidate([_lap(1, 60000, invalidated=True)], InvalidationMode.TIME_ONLY) is None
    assert (
        select_lap_to_invalidate([_lap(1, 60000, invalidated=True, removed=True)], InvalidationMode.REMOVE_LAP)
        is None
    )


def test_mark_invalidated_flags():
    lap = _lap(1, 60000)
    assert mark_invalidated(lap, InvalidationMode.TIME_ONLY).invalidated
    assert not mark_invalidated(lap, InvalidationMode.TIME_ONLY).removed
    removed = mark_invalidated(lap, InvalidationMode.REMOVE_LAP)
    assert removed.invalidated and removed.removed


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("1:05.321", 65321),
        ("0:59.9", 59900),
        ("2:00", 120000),
        ("65.321", 65321),
        ("65.3215", 65322),
        ("75", 75000),
        ("90000", 90000),
        (" 1:05.321 ", 65321),
    ],
)
def test_parse_lap_input(raw, expected):
    assert parse_lap_input(raw) == expected


@pytest.mark.parametrize("raw", ["", "   ", "abc", "1:75", "0", "-5", "1:2:3"])
def test_parse_lap_input_rejects_bad_entries(raw):
    with pytest.raises(ValidationError):
        parse_lap_input(raw)
