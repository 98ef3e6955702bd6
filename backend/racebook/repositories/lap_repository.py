"""Lap records and the per-driver aggregate cache."""

from __future__ import annotations

from collections.abc import Sequence

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from racebook.core.errors import NotFoundError
from racebook.domain.models import DriverAggregate
from racebook.models import Driver, Lap


class LapRepository:
    def __init__(self, session: Session) -> None:
        self._session = session

    # ------------------------------------------------------------------
    # Drivers

    def add_driver(
        self,
        session_id: str,
        driver_id: str,
        *,
        name: str | None = None,
        number: str | None = None,
    ) -> Driver:
        record = Driver(id=driver_id, session_id=session_id, name=name, number=number)
        self._session.add(record)
        self._session.flush()
        return record

    def get_driver(self, session_id: str, driver_id: str, *, for_update: bool = False) -> Driver | None:
        stmt = select(Driver).where(Driver.session_id == session_id, Driver.id == driver_id)
        if for_update:
            stmt = stmt.with_for_update()
        return self._session.execute(stmt).scalars().first()

    def require_driver(self, session_id: str, driver_id: str, *, for_update: bool = False) -> Driver:
        driver = self.get_driver(session_id, driver_id, for_update=for_update)
        if driver is None:
            raise NotFoundError(f"driver {driver_id} not found in session {session_id}")
        return driver

    def write_aggregate(self, driver: Driver, aggregate: DriverAggregate) -> Driver:
        driver.laps = aggregate.laps
        driver.last_lap_ms = aggregate.last_lap_ms
        driver.best_lap_ms = aggregate.best_lap_ms
        driver.total_time_ms = aggregate.total_time_ms
        self._session.flush()
        return driver

    # ------------------------------------------------------------------
    # Laps

    def list_laps(self, session_id: str, driver_id: str, *, for_update: bool = False) -> Sequence[Lap]:
        stmt = (
            select(Lap)
            .where(Lap.session_id == session_id, Lap.driver_id == driver_id)
            .order_by(Lap.lap_number)
        )
        if for_update:
            stmt = stmt.with_for_update()
        return self._session.execute(stmt).scalars().all()

    def last_lap_number(self, session_id: str, driver_id: str) -> int:
        stmt = select(func.max(Lap.lap_number)).where(Lap.session_id == session_id, Lap.driver_id == driver_id)
        return int(self._session.execute(stmt).scalar() or 0)

    def add_lap(
        self,
        *,
        session_id: str,
        driver_id: str,
        lap_number: int,
        lap_time_ms: int,
        source: str = "manual",
    ) -> Lap:
        record = Lap(
            session_id=session_id,
            driver_id=driver_id,
            lap_number=lap_number,
            lap_time_ms=lap_time_ms,
            invalidated=False,
            removed=False,
            source=source,
        )
        self._session.add(record)
        self._session.flush()
        return record

    def set_flags(self, lap_id: str, *, invalidated: bool, removed: bool) -> Lap:
        record = self._session.get(Lap, lap_id)
        if record is None:
            raise NotFoundError(f"lap {lap_id} not found")
        record.invalidated = invalidated
        record.removed = removed
        self._session.flush()
        return record
