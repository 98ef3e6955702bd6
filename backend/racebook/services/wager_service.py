"""Wager placement orchestration."""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import replace
from datetime import datetime
from typing import Sequence

from loguru import logger
from sqlalchemy.orm import Session, sessionmaker

from racebook.backends.base import PlacementReceipt, PlacementRequest, WagerBackend
from racebook.backends.sql import translate_db_errors
from racebook.core.config import settings
from racebook.core.errors import (
    DUPLICATE_PLACEMENT,
    ConflictError,
    RpcUnavailableError,
    TransientBackendError,
    WagerRejected,
)
from racebook.db import SessionLocal, session_scope
from racebook.domain.models import Market, Wager
from racebook.domain.normalize import normalize_market, normalize_wagers
from racebook.engine.validation import validate_wager
from racebook.repositories import MarketRepository, WagerRepository, WalletRepository


class WagerService:
    """Validate locally, then hand the placement to one atomic backend operation.

    Transient failures are retried only for requests carrying a ``client_request_id``: the
    unique ``(user_id, client_request_id)`` constraint turns a replay of an already-committed
    placement into ``duplicate_placement``, which is then resolved to the existing wager.
    """

    def __init__(
        self,
        backend: WagerBackend,
        *,
        session_factory: sessionmaker[Session] | None = None,
        retry_attempts: int | None = None,
        backoff_schedule: Sequence[float] | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._backend = backend
        self._session_factory = session_factory or SessionLocal
        self._retry_attempts = settings.transient_retry_attempts if retry_attempts is None else retry_attempts
        self._backoff_schedule = tuple(
            settings.transient_retry_backoff_schedule if backoff_schedule is None else backoff_schedule
        ) or (0.0,)
        self._sleep = sleep

    def _snapshot(self, request: PlacementRequest) -> tuple[Market | None, int | None]:
        with translate_db_errors("load_wager_snapshot"):
            with session_scope(self._session_factory) as session:
                market_row = MarketRepository(session).get(request.market_id)
                market = normalize_market(market_row) if market_row is not None else None
                balance = WalletRepository(session).get_balance(request.user_id)
        return market, balance

    def check(self, request: PlacementRequest, *, now: datetime | None = None) -> None:
        """Run the client-side checks against the current market and balance snapshot."""

        market, balance = self._snapshot(request)
        validation = validate_wager(
            stake=request.stake,
            balance=balance,
            market=market,
            outcome=market.find_outcome(request.outcome_id) if market else None,
            now=now,
        )
        if not validation.valid:
            logger.info(
                "Rejected wager locally user={} market={} reasons={}",
                request.user_id,
                request.market_id,
                [violation.value for violation in validation.violations],
            )
        validation.raise_for_violation()

    def list_wagers(self, user_id: str) -> list[Wager]:
        with translate_db_errors("list_wagers"):
            with session_scope(self._session_factory) as session:
                return normalize_wagers(WagerRepository(session).list_for_user(user_id))

    # ------------------------------------------------------------------
    # Review of pending wagers

    def list_pending(self, market_id: str | None = None) -> list[Wager]:
        return self._backend.list_pending_wagers(market_id)

    def approve_pending(self, wager_id: str, reviewer: str) -> Wager:
        return self._backend.approve_wager(wager_id, reviewer)

    def reject_pending(self, wager_id: str, reviewer: str, reason: str | None = None) -> Wager:
        """Refund a pending wager in full and drop it from its pool."""

        return self._backend.reject_wager(wager_id, reviewer, reason)

    # ------------------------------------------------------------------
    # Placement

    def place_wager(self, request: PlacementRequest, *, now: datetime | None = None) -> PlacementReceipt:
        self.check(request, now=now)
        if not isinstance(request.stake, int):
            request = replace(request, stake=int(request.stake))

        attempts = max(self._retry_attempts, 1) if request.client_request_id else 1
        for attempt in range(1, attempts + 1):
            try:
                return self._backend.place_wager(request)
            except ConflictError as exc:
                if attempt > 1 and exc.code == DUPLICATE_PLACEMENT and request.client_request_id:
                    existing = self._backend.find_placement(request.user_id, request.client_request_id)
                    if existing is not None:
                        logger.info(
                            "Resolved retried placement {} to committed wager {}",
                            request.client_request_id,
                            existing.wager_id,
                        )
                        return existing
                raise
            except WagerRejected as exc:
                logger.info("Backend rejected wager user={} code={}: {}", request.user_id, exc.code, exc.message)
                raise
            except RpcUnavailableError:
                raise
            except TransientBackendError as exc:
                if attempt >= attempts:
                    raise
                delay = self._backoff_schedule[min(attempt - 1, len(self._backoff_schedule) - 1)]
                logger.warning(
                    "Transient failure placing wager {} attempt={}/{}; retrying in {}s: {}",
                    request.client_request_id,
                    attempt,
                    attempts,
                    delay,
                    exc.message,
                )
                self._sleep(delay)
        raise AssertionError("unreachable")  # pragma: no cover
