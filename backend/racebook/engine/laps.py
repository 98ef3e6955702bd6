"""Lap aggregate math shared by every lap ledger implementation."""

from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import replace
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from racebook.core.errors import ValidationError
from racebook.domain.models import DriverAggregate, InvalidationMode, LapRecord

_CLOCK_PATTERN = re.compile(r"^(?P<minutes>\d+):(?P<seconds>\d{1,2}(?:\.\d+)?)$")


def next_lap_number(laps: Iterable[LapRecord]) -> int:
    """Lap numbers are monotonic per driver and never reused, removed laps included."""

    return max((lap.lap_number for lap in laps), default=0) + 1


def recompute_aggregate(session_id: str, driver_id: str, laps: Iterable[LapRecord]) -> DriverAggregate:
    """Rebuild the aggregate from scratch.

    ``laps`` counts every lap that was not removed. ``last``/``best``/``total`` only consider
    laps that are neither removed nor invalidated, ordered by lap number.
    """

    ordered = sorted(laps, key=lambda lap: lap.lap_number)
    counted = [lap for lap in ordered if not lap.removed]
    timed = [lap for lap in counted if not lap.invalidated]
    return DriverAggregate(
        session_id=session_id,
        driver_id=driver_id,
        laps=len(counted),
        last_lap_ms=timed[-1].lap_time_ms if timed else None,
        best_lap_ms=min((lap.lap_time_ms for lap in timed), default=None),
        total_time_ms=sum(lap.lap_time_ms for lap in timed),
    )


def apply_lap(aggregate: DriverAggregate, lap_time_ms: int) -> DriverAggregate:
    """Fold one freshly appended valid lap into an aggregate."""

    ensure_lap_time(lap_time_ms)
    best = lap_time_ms if aggregate.best_lap_ms is None else min(aggregate.best_lap_ms, lap_time_ms)
    return replace(
        aggregate,
        laps=aggregate.laps + 1,
        last_lap_ms=lap_time_ms,
        best_lap_ms=best,
        total_time_ms=aggregate.total_time_ms + lap_time_ms,
    )


def select_lap_to_invalidate(laps: Iterable[LapRecord], mode: InvalidationMode) -> LapRecord | None:
    if mode is InvalidationMode.TIME_ONLY:
        eligible = [lap for lap in laps if not lap.removed and not lap.invalidated]
    else:
        eligible = [lap for lap in laps if not lap.removed]
    return max(eligible, key=lambda lap: lap.lap_number, default=None)


def mark_invalidated(lap: LapRecord, mode: InvalidationMode) -> LapRecord:
    if mode is InvalidationMode.REMOVE_LAP:
        return replace(lap, invalidated=True, removed=True)
    return replace(lap, invalidated=True)


def ensure_lap_time(lap_time_ms: int) -> int:
    if isinstance(lap_time_ms, bool) or not isinstance(lap_time_ms, int) or lap_time_ms <= 0:
        raise ValidationError(f"lap time must be a positive number of milliseconds, got {lap_time_ms!r}")
    return lap_time_ms


def parse_lap_input(raw: str) -> int:
    """Parse marshal entry into milliseconds.

    Accepts ``m:ss.fff`` clock notation, decimal seconds (``65.321``), whole seconds below
    1000 (``75``) and raw milliseconds (``65321``).
    """

    text = (raw or "").strip()
    if not text:
        raise ValidationError("lap time is required")

    match = _CLOCK_PATTERN.match(text)
    try:
        if match:
            seconds = Decimal(match.group("seconds"))
            if seconds >= 60:
                raise ValidationError(f"seconds must be below 60 in '{text}'")
            millis = (Decimal(match.group("minutes")) * 60 + seconds) * 1000
        elif "." in text:
            millis = Decimal(text) * 1000
        else:
            value = Decimal(text)
            millis = value if value >= 1000 else value * 1000
    except InvalidOperation as exc:
        raise ValidationError(f"could not parse lap time '{text}'") from exc

    if not millis.is_finite():
        raise ValidationError(f"could not parse lap time '{text}'")
    result = int(millis.quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    return ensure_lap_time(result)
