"""Strict mapping from backend rows to typed domain records.

Rows may be PostgREST dictionaries or SQLAlchemy objects. Each field is read from exactly one
column name; missing required columns and malformed values raise ``ValidationError``.
"""

from __future__ import annotations

import math
from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Any, Iterable

from dateutil import parser as date_parser

from racebook.core.errors import ValidationError

from .models import (
    DriverAggregate,
    LapRecord,
    Market,
    MarketStatus,
    Outcome,
    ProposalStatus,
    SettlementProposal,
    Wager,
    WagerStatus,
)

_MISSING = object()


def _read(row: Any, column: str, *, entity: str, required: bool = True, default: Any = None) -> Any:
    if isinstance(row, Mapping):
        value = row.get(column, _MISSING)
    else:
        value = getattr(row, column, _MISSING)
    if value is _MISSING or (required and value is None):
        if required:
            raise ValidationError(f"{entity} row is missing required column '{column}'")
        return default
    return value


def _as_str(value: Any, *, column: str, entity: str) -> str:
    if isinstance(value, str) and value:
        return value
    if isinstance(value, int) and not isinstance(value, bool):
        return str(value)
    raise ValidationError(f"{entity}.{column} must be a non-empty identifier, got {value!r}")


def _as_optional_str(value: Any, *, column: str, entity: str) -> str | None:
    if value is None:
        return None
    return _as_str(value, column=column, entity=entity)


def _as_int(value: Any, *, column: str, entity: str) -> int:
    if isinstance(value, bool):
        raise ValidationError(f"{entity}.{column} must be an integer, got {value!r}")
    if isinstance(value, int):
        return value
    if isinstance(value, float) and math.isfinite(value) and value.is_integer():
        return int(value)
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            pass
    raise ValidationError(f"{entity}.{column} must be an integer, got {value!r}")


def _as_optional_int(value: Any, *, column: str, entity: str) -> int | None:
    if value is None:
        return None
    return _as_int(value, column=column, entity=entity)


def _as_bool(value: Any, *, column: str, entity: str) -> bool:
    if isinstance(value, bool):
        return value
    if value in (0, 1):
        return bool(value)
    raise ValidationError(f"{entity}.{column} must be a boolean, got {value!r}")


def _as_datetime(value: Any, *, column: str, entity: str) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        try:
            parsed = date_parser.isoparse(value)
        except (ValueError, TypeError) as exc:
            raise ValidationError(f"{entity}.{column} is not an ISO-8601 timestamp: {value!r}") from exc
    else:
        raise ValidationError(f"{entity}.{column} must be a timestamp, got {value!r}")
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _as_enum(enum_cls, value: Any, *, column: str, entity: str):
    try:
        return enum_cls(str(value).lower())
    except ValueError as exc:
        allowed = ", ".join(member.value for member in enum_cls)
        raise ValidationError(f"{entity}.{column} must be one of {allowed}, got {value!r}") from exc


def normalize_outcome(row: Any, *, market_id: str | None = None) -> Outcome:
    entity = "outcome"
    owner = market_id if market_id is not None else _read(row, "market_id", entity=entity)
    return Outcome(
        outcome_id=_as_str(_read(row, "id", entity=entity), column="id", entity=entity),
        market_id=_as_str(owner, column="market_id", entity=entity),
        label=str(_read(row, "label", entity=entity)),
        driver_id=_as_optional_str(
            _read(row, "driver_id", entity=entity, required=False), column="driver_id", entity=entity
        ),
        sort_order=_as_int(
            _read(row, "sort_order", entity=entity, required=False, default=0) or 0,
            column="sort_order",
            entity=entity,
        ),
    )


def normalize_market(row: Any) -> Market:
    entity = "market"
    market_id = _as_str(_read(row, "id", entity=entity), column="id", entity=entity)
    rake_bps = _as_int(_read(row, "rake_bps", entity=entity), column="rake_bps", entity=entity)
    if not 0 <= rake_bps <= 2000:
        raise ValidationError(f"market.rake_bps must be within 0-2000, got {rake_bps}")
    raw_outcomes = _read(row, "outcomes", entity=entity, required=False, default=()) or ()
    outcomes = tuple(
        sorted(
            (normalize_outcome(item, market_id=market_id) for item in raw_outcomes),
            key=lambda outcome: (outcome.sort_order, outcome.outcome_id),
        )
    )
    return Market(
        market_id=market_id,
        name=str(_read(row, "name", entity=entity)),
        status=_as_enum(MarketStatus, _read(row, "status", entity=entity), column="status", entity=entity),
        rake_bps=rake_bps,
        closes_at=_as_datetime(
            _read(row, "closes_at", entity=entity, required=False), column="closes_at", entity=entity
        ),
        outcomes=outcomes,
    )


def normalize_wager(row: Any) -> Wager:
    entity = "wager"
    stake = _as_int(_read(row, "stake", entity=entity), column="stake", entity=entity)
    if stake <= 0:
        raise ValidationError(f"wager.stake must be positive, got {stake}")
    return Wager(
        wager_id=_as_str(_read(row, "id", entity=entity), column="id", entity=entity),
        user_id=_as_str(_read(row, "user_id", entity=entity), column="user_id", entity=entity),
        market_id=_as_str(_read(row, "market_id", entity=entity), column="market_id", entity=entity),
        outcome_id=_as_str(_read(row, "outcome_id", entity=entity), column="outcome_id", entity=entity),
        stake=stake,
        status=_as_enum(WagerStatus, _read(row, "status", entity=entity), column="status", entity=entity),
        placed_at=_as_datetime(
            _read(row, "placed_at", entity=entity, required=False), column="placed_at", entity=entity
        ),
        payout=_as_optional_int(
            _read(row, "payout", entity=entity, required=False), column="payout", entity=entity
        ),
        reviewed_by=_as_optional_str(
            _read(row, "reviewed_by", entity=entity, required=False), column="reviewed_by", entity=entity
        ),
        rejection_reason=_read(row, "rejection_reason", entity=entity, required=False),
    )


def normalize_wagers(rows: Iterable[Any]) -> list[Wager]:
    return [normalize_wager(row) for row in rows]


def normalize_proposal(row: Any) -> SettlementProposal:
    entity = "settlement_proposal"
    evidence = _read(row, "evidence", entity=entity, required=False)
    if evidence is not None and not isinstance(evidence, Mapping):
        raise ValidationError("settlement_proposal.evidence must be a JSON object")
    return SettlementProposal(
        proposal_id=_as_str(_read(row, "id", entity=entity), column="id", entity=entity),
        market_id=_as_str(_read(row, "market_id", entity=entity), column="market_id", entity=entity),
        winning_outcome_id=_as_optional_str(
            _read(row, "winning_outcome_id", entity=entity, required=False),
            column="winning_outcome_id",
            entity=entity,
        ),
        proposed_by=_as_str(_read(row, "proposed_by", entity=entity), column="proposed_by", entity=entity),
        status=_as_enum(ProposalStatus, _read(row, "status", entity=entity), column="status", entity=entity),
        evidence=dict(evidence) if evidence is not None else None,
        proposed_at=_as_datetime(
            _read(row, "proposed_at", entity=entity, required=False), column="proposed_at", entity=entity
        ),
        reviewed_at=_as_datetime(
            _read(row, "reviewed_at", entity=entity, required=False), column="reviewed_at", entity=entity
        ),
        reviewed_by=_as_optional_str(
            _read(row, "reviewed_by", entity=entity, required=False), column="reviewed_by", entity=entity
        ),
        rejection_reason=_read(row, "rejection_reason", entity=entity, required=False),
    )


def normalize_lap(row: Any) -> LapRecord:
    entity = "lap"
    lap_time_ms = _as_int(_read(row, "lap_time_ms", entity=entity), column="lap_time_ms", entity=entity)
    if lap_time_ms <= 0:
        raise ValidationError(f"lap.lap_time_ms must be positive, got {lap_time_ms}")
    return LapRecord(
        lap_id=_as_str(_read(row, "id", entity=entity), column="id", entity=entity),
        session_id=_as_str(_read(row, "session_id", entity=entity), column="session_id", entity=entity),
        driver_id=_as_str(_read(row, "driver_id", entity=entity), column="driver_id", entity=entity),
        lap_number=_as_int(_read(row, "lap_number", entity=entity), column="lap_number", entity=entity),
        lap_time_ms=lap_time_ms,
        invalidated=_as_bool(
            _read(row, "invalidated", entity=entity, required=False, default=False) or False,
            column="invalidated",
            entity=entity,
        ),
        removed=_as_bool(
            _read(row, "removed", entity=entity, required=False, default=False) or False,
            column="removed",
            entity=entity,
        ),
        recorded_at=_as_datetime(
            _read(row, "recorded_at", entity=entity, required=False), column="recorded_at", entity=entity
        ),
        source=str(_read(row, "source", entity=entity, required=False, default="manual") or "manual"),
    )


def normalize_driver_aggregate(row: Any, *, session_id: str | None = None, driver_id: str | None = None) -> DriverAggregate:
    """Map a ``drivers`` row, or an empty aggregate when the driver has no row yet."""

    entity = "driver"
    if row is None:
        if session_id is None or driver_id is None:
            raise ValidationError("driver aggregate requires session_id and driver_id when no row exists")
        return DriverAggregate(session_id=session_id, driver_id=driver_id)
    return DriverAggregate(
        session_id=_as_str(
            session_id if session_id is not None else _read(row, "session_id", entity=entity),
            column="session_id",
            entity=entity,
        ),
        driver_id=_as_str(
            driver_id if driver_id is not None else _read(row, "id", entity=entity),
            column="id",
            entity=entity,
        ),
        laps=_as_int(_read(row, "laps", entity=entity, required=False, default=0) or 0, column="laps", entity=entity),
        last_lap_ms=_as_optional_int(
            _read(row, "last_lap_ms", entity=entity, required=False), column="last_lap_ms", entity=entity
        ),
        best_lap_ms=_as_optional_int(
            _read(row, "best_lap_ms", entity=entity, required=False), column="best_lap_ms", entity=entity
        ),
        total_time_ms=_as_int(
            _read(row, "total_time_ms", entity=entity, required=False, default=0) or 0,
            column="total_time_ms",
            entity=entity,
        ),
    )
