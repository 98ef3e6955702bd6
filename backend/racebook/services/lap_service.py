"""Lap ledger implementations.

``AtomicLapLedger`` hands each write to one backend operation. ``ComposedLapLedger`` is the
multi-round-trip path for deployments without the atomic operations: each step runs in its
own transaction, so it assumes a single marshal logs laps for any given driver. A concurrent
writer collides on the ``(session_id, driver_id, lap_number)`` unique constraint and fails
loudly rather than silently duplicating a lap number.
"""

from __future__ import annotations

from typing import Protocol

from loguru import logger
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from racebook.backends import build_backend
from racebook.backends.base import LapBackend, LapInvalidationResult, LapLogResult
from racebook.backends.sql import translate_db_errors
from racebook.core.config import Settings, settings as default_settings
from racebook.core.errors import ConflictError
from racebook.db import SessionLocal, session_scope
from racebook.domain.models import InvalidationMode
from racebook.domain.normalize import normalize_driver_aggregate, normalize_lap
from racebook.engine.laps import (
    apply_lap,
    ensure_lap_time,
    mark_invalidated,
    recompute_aggregate,
    select_lap_to_invalidate,
)
from racebook.repositories import LapRepository

LAP_NUMBER_CONFLICT = "lap_number_conflict"


class LapLedger(Protocol):
    def log_lap(self, session_id: str, driver_id: str, lap_time_ms: int) -> LapLogResult:
        ...

    def invalidate_last_lap(
        self,
        session_id: str,
        driver_id: str,
        mode: InvalidationMode = InvalidationMode.TIME_ONLY,
    ) -> LapInvalidationResult | None:
        ...


class AtomicLapLedger:
    def __init__(self, backend: LapBackend) -> None:
        self._backend = backend

    def log_lap(self, session_id: str, driver_id: str, lap_time_ms: int) -> LapLogResult:
        ensure_lap_time(lap_time_ms)
        return self._backend.log_lap_atomic(session_id, driver_id, lap_time_ms)

    def invalidate_last_lap(
        self,
        session_id: str,
        driver_id: str,
        mode: InvalidationMode = InvalidationMode.TIME_ONLY,
    ) -> LapInvalidationResult | None:
        return self._backend.invalidate_last_lap_atomic(session_id, driver_id, InvalidationMode(mode))


class ComposedLapLedger:
    def __init__(self, session_factory: sessionmaker[Session] | None = None) -> None:
        self._session_factory = session_factory or SessionLocal

    def log_lap(self, session_id: str, driver_id: str, lap_time_ms: int) -> LapLogResult:
        ensure_lap_time(lap_time_ms)

        with translate_db_errors("log_lap"):
            with session_scope(self._session_factory) as session:
                laps = LapRepository(session)
                laps.require_driver(session_id, driver_id)
                lap_number = laps.last_lap_number(session_id, driver_id) + 1

            try:
                with session_scope(self._session_factory) as session:
                    lap_id = LapRepository(session).add_lap(
                        session_id=session_id,
                        driver_id=driver_id,
                        lap_number=lap_number,
                        lap_time_ms=lap_time_ms,
                    ).id
            except IntegrityError as exc:
                raise ConflictError(
                    f"lap {lap_number} for driver {driver_id} was written concurrently",
                    code=LAP_NUMBER_CONFLICT,
                    details={"session_id": session_id, "driver_id": driver_id, "lap_number": lap_number},
                ) from exc

            with session_scope(self._session_factory) as session:
                current = normalize_driver_aggregate(
                    LapRepository(session).get_driver(session_id, driver_id),
                    session_id=session_id,
                    driver_id=driver_id,
                )

            aggregate = apply_lap(current, lap_time_ms)

            with session_scope(self._session_factory) as session:
                laps = LapRepository(session)
                laps.write_aggregate(laps.require_driver(session_id, driver_id), aggregate)

        logger.debug("Logged lap {} for driver {} in session {} (composed)", lap_number, driver_id, session_id)
        return LapLogResult(lap_id=lap_id, lap_number=lap_number, lap_time_ms=lap_time_ms, aggregate=aggregate)

    def invalidate_last_lap(
        self,
        session_id: str,
        driver_id: str,
        mode: InvalidationMode = InvalidationMode.TIME_ONLY,
    ) -> LapInvalidationResult | None:
        mode = InvalidationMode(mode)
        with translate_db_errors("invalidate_last_lap"):
            with session_scope(self._session_factory) as session:
                laps = LapRepository(session)
                laps.require_driver(session_id, driver_id)
                target = select_lap_to_invalidate(
                    [normalize_lap(row) for row in laps.list_laps(session_id, driver_id)],
                    mode,
                )
            if target is None:
                return None

            updated = mark_invalidated(target, mode)
            with session_scope(self._session_factory) as session:
                LapRepository(session).set_flags(
                    target.lap_id, invalidated=updated.invalidated, removed=updated.removed
                )

            with session_scope(self._session_factory) as session:
                aggregate = recompute_aggregate(
                    session_id,
                    driver_id,
                    [normalize_lap(row) for row in LapRepository(session).list_laps(session_id, driver_id)],
                )

            with session_scope(self._session_factory) as session:
                laps = LapRepository(session)
                laps.write_aggregate(laps.require_driver(session_id, driver_id), aggregate)

        logger.info(
            "Invalidated lap {} for driver {} in session {} mode={} (composed)",
            target.lap_number,
            driver_id,
            session_id,
            mode.value,
        )
        return LapInvalidationResult(lap_id=target.lap_id, lap_number=target.lap_number, mode=mode, aggregate=aggregate)


def build_lap_ledger(
    config: Settings | None = None,
    *,
    backend: LapBackend | None = None,
    session_factory: sessionmaker[Session] | None = None,
) -> AtomicLapLedger | ComposedLapLedger:
    """Pick the lap write path once, from ``lap_write_mode``."""

    config = config or default_settings
    if config.lap_write_mode == "composed":
        return ComposedLapLedger(session_factory)
    return AtomicLapLedger(backend or build_backend(config, session_factory=session_factory))
