"""Atomic ledger operations executed as single SQLAlchemy transactions.

Every public method opens one ``session_scope``; the wallet, market and driver rows it
touches are locked with ``SELECT ... FOR UPDATE`` so concurrent callers serialize on the
database. Any failure rolls the whole operation back.
"""

from __future__ import annotations

from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from typing import Any

from loguru import logger
from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError, SQLAlchemyError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.orm import Session, sessionmaker

from racebook.core.errors import (
    DUPLICATE_PLACEMENT,
    INVALID_WAGER,
    SETTLEMENT_ALREADY_PENDING,
    ConflictError,
    InvariantViolation,
    RacebookError,
    TransientBackendError,
    UnknownBackendError,
    ValidationError,
    WagerRejected,
)
from racebook.db import SessionLocal, session_scope
from racebook.domain.models import (
    InvalidationMode,
    Market,
    MarketStatus,
    SettlementProposal,
    Wager,
    WagerStatus,
    WalletTransactionKind,
)
from racebook.domain.normalize import (
    normalize_lap,
    normalize_market,
    normalize_proposal,
    normalize_wager,
    normalize_wagers,
)
from racebook.engine import approval
from racebook.engine.laps import (
    ensure_lap_time,
    mark_invalidated,
    next_lap_number,
    recompute_aggregate,
    select_lap_to_invalidate,
)
from racebook.engine.lifecycle import ensure_settleable, transition
from racebook.engine.settlement import SettlementResult, calculate_settlement
from racebook.engine.validation import validate_wager
from racebook.engine.wager_review import approve_wager, ensure_reviewed, initial_status, reject_wager
from racebook.models import new_id, utcnow
from racebook.repositories import (
    LapRepository,
    MarketRepository,
    SettlementRepository,
    WagerRepository,
    WalletRepository,
)

from .base import (
    LapInvalidationResult,
    LapLogResult,
    PlacementReceipt,
    PlacementRequest,
    SettlementApproval,
)


@contextmanager
def translate_db_errors(operation: str) -> Iterator[None]:
    """Map driver-level failures onto the backend error taxonomy."""

    try:
        yield
    except RacebookError:
        raise
    except IntegrityError as exc:
        raise ConflictError(f"{operation} violated a database constraint") from exc
    except (OperationalError, InterfaceError, PoolTimeoutError) as exc:
        logger.warning("Transient database failure during {}: {}", operation, exc)
        raise TransientBackendError(f"{operation} failed with a transient database error") from exc
    except SQLAlchemyError as exc:
        logger.exception("Unexpected database failure during {}", operation)
        raise UnknownBackendError(f"{operation} failed: {exc.__class__.__name__}") from exc


class SqlLedgerBackend:
    """Wager placement, review, settlement and lap writes against the relational store."""

    def __init__(
        self,
        session_factory: sessionmaker[Session] | None = None,
        *,
        review_threshold: int | None = None,
    ) -> None:
        self._session_factory = session_factory or SessionLocal
        self._review_threshold = review_threshold

    def close(self) -> None:
        """Nothing to release; sessions are scoped to each operation."""

    # ------------------------------------------------------------------
    # Wagers

    def place_wager(self, request: PlacementRequest) -> PlacementReceipt:
        with translate_db_errors("place_wager"):
            try:
                with session_scope(self._session_factory) as session:
                    receipt = self._place(session, request)
            except IntegrityError as exc:
                if request.client_request_id is None:
                    raise
                raise ConflictError(
                    "This wager was already submitted.",
                    code=DUPLICATE_PLACEMENT,
                    details={"client_request_id": request.client_request_id},
                ) from exc

        logger.info(
            "Wager {} {} user={} market={} outcome={} stake={} balance={}",
            receipt.wager_id,
            receipt.status.value,
            receipt.user_id,
            receipt.market_id,
            receipt.outcome_id,
            receipt.stake,
            receipt.new_balance,
        )
        return receipt

    def _place(self, session: Session, request: PlacementRequest) -> PlacementReceipt:
        markets = MarketRepository(session)
        wallets = WalletRepository(session)
        wagers = WagerRepository(session)

        market_row = markets.get(request.market_id, for_update=True)
        if market_row is None:
            raise WagerRejected("Market not found.", code=INVALID_WAGER)
        market = normalize_market(market_row)
        account = wallets.get_account(request.user_id, for_update=True)

        validate_wager(
            stake=request.stake,
            balance=account.balance if account is not None else None,
            market=market,
            outcome=market.find_outcome(request.outcome_id),
        ).raise_for_violation()

        if request.client_request_id is not None:
            existing = wagers.find_by_request(request.user_id, request.client_request_id)
            if existing is not None:
                raise ConflictError(
                    "This wager was already submitted.",
                    code=DUPLICATE_PLACEMENT,
                    details={"wager_id": existing.id, "client_request_id": request.client_request_id},
                )

        status = initial_status(request.stake, self._review_threshold)
        wager = wagers.add(
            user_id=request.user_id,
            market_id=request.market_id,
            outcome_id=request.outcome_id,
            stake=request.stake,
            status=status,
            client_request_id=request.client_request_id,
        )
        new_balance = wallets.debit(account, request.stake, market_id=request.market_id, wager_id=wager.id)
        return PlacementReceipt(
            wager_id=wager.id,
            user_id=wager.user_id,
            market_id=wager.market_id,
            outcome_id=wager.outcome_id,
            stake=wager.stake,
            new_balance=new_balance,
            placed_at=wager.placed_at,
            status=status,
        )

    def find_placement(self, user_id: str, client_request_id: str) -> PlacementReceipt | None:
        with translate_db_errors("find_placement"):
            with session_scope(self._session_factory) as session:
                wager = WagerRepository(session).find_by_request(user_id, client_request_id)
                if wager is None:
                    return None
                balance = WalletRepository(session).get_balance(user_id)
                return PlacementReceipt(
                    wager_id=wager.id,
                    user_id=wager.user_id,
                    market_id=wager.market_id,
                    outcome_id=wager.outcome_id,
                    stake=wager.stake,
                    new_balance=balance,
                    placed_at=wager.placed_at,
                    replayed=True,
                    status=WagerStatus(wager.status),
                )

    def list_pending_wagers(self, market_id: str | None = None) -> list[Wager]:
        with translate_db_errors("list_pending_wagers"):
            with session_scope(self._session_factory) as session:
                return normalize_wagers(WagerRepository(session).list_pending(market_id))

    def approve_wager(self, wager_id: str, reviewer: str) -> Wager:
        with translate_db_errors("approve_wager"):
            with session_scope(self._session_factory) as session:
                wagers = WagerRepository(session)
                record = wagers.require(wager_id, for_update=True)
                approved = approve_wager(normalize_wager(record), reviewer)
                wagers.save_review(record, approved, reviewed_at=utcnow())

        logger.info("Pending wager {} approved by {}", wager_id, reviewer)
        return approved

    def reject_wager(self, wager_id: str, reviewer: str, reason: str | None = None) -> Wager:
        with translate_db_errors("reject_wager"):
            with session_scope(self._session_factory) as session:
                wagers = WagerRepository(session)
                wallets = WalletRepository(session)
                record = wagers.require(wager_id, for_update=True)
                rejected = reject_wager(normalize_wager(record), reviewer, reason)
                wagers.save_review(record, rejected, reviewed_at=utcnow())
                wallets.credit(
                    wallets.lock_or_open(rejected.user_id),
                    rejected.stake,
                    kind=WalletTransactionKind.REFUND,
                    market_id=rejected.market_id,
                    wager_id=rejected.wager_id,
                )

        logger.info("Pending wager {} rejected by {}; refunded {} to {}", wager_id, reviewer, rejected.stake, rejected.user_id)
        return rejected

    # ------------------------------------------------------------------
    # Markets

    def close_market(self, market_id: str) -> Market:
        """Stop accepting wagers. Closing an already-closed market is a no-op."""

        with translate_db_errors("close_market"):
            with session_scope(self._session_factory) as session:
                markets = MarketRepository(session)
                record = markets.require(market_id, for_update=True)
                current = MarketStatus(record.status)
                markets.set_status(record, transition(current, MarketStatus.CLOSED))
                market = normalize_market(record)
        if current is MarketStatus.OPEN:
            logger.info("Closed market {}", market_id)
        return market

    # ------------------------------------------------------------------
    # Settlement

    def propose_settlement(
        self,
        market_id: str,
        winning_outcome_id: str | None,
        proposer: str,
        evidence: Mapping[str, Any] | None = None,
    ) -> SettlementProposal:
        try:
            with translate_db_errors("propose_settlement"):
                with session_scope(self._session_factory) as session:
                    market = MarketRepository(session).require(market_id, for_update=True)
                    if market.status != MarketStatus.CLOSED.value:
                        raise ValidationError(
                            f"market {market_id} must be closed before settlement is proposed",
                            code="market_not_closed",
                            details={"status": market.status},
                        )
                    if winning_outcome_id is not None and winning_outcome_id not in {o.id for o in market.outcomes}:
                        raise ValidationError(
                            f"outcome {winning_outcome_id} does not belong to market {market_id}",
                            code="invalid_target",
                        )

                    proposals = SettlementRepository(session)
                    approval.ensure_no_pending(
                        market_id, [normalize_proposal(row) for row in proposals.pending_for_market(market_id)]
                    )
                    proposal = approval.open_proposal(
                        proposal_id=new_id(),
                        market_id=market_id,
                        winning_outcome_id=winning_outcome_id,
                        proposed_by=proposer,
                        evidence=evidence,
                    )
                    proposals.add_proposal(proposal)
        except ConflictError as exc:
            if isinstance(exc.__cause__, IntegrityError):
                raise ConflictError(
                    f"market {market_id} already has a pending settlement proposal",
                    code=SETTLEMENT_ALREADY_PENDING,
                ) from exc
            raise
        return proposal

    def approve_settlement(self, proposal_id: str, reviewer: str) -> SettlementApproval:
        with translate_db_errors("approve_settlement"):
            with session_scope(self._session_factory) as session:
                proposals = SettlementRepository(session)
                record = proposals.require_proposal(proposal_id, for_update=True)
                approved = approval.approve(normalize_proposal(record), reviewer)
                result = self._settle(session, approved)
                proposals.save_review(record, approved)
        return SettlementApproval(proposal=approved, result=result)

    def reject_settlement(self, proposal_id: str, reviewer: str, reason: str | None) -> SettlementProposal:
        with translate_db_errors("reject_settlement"):
            with session_scope(self._session_factory) as session:
                proposals = SettlementRepository(session)
                record = proposals.require_proposal(proposal_id, for_update=True)
                rejected = approval.reject(normalize_proposal(record), reviewer, reason)
                proposals.save_review(record, rejected)
        return rejected

    def cancel_settlement(self, proposal_id: str, actor: str) -> SettlementProposal:
        with translate_db_errors("cancel_settlement"):
            with session_scope(self._session_factory) as session:
                proposals = SettlementRepository(session)
                record = proposals.require_proposal(proposal_id, for_update=True)
                cancelled = approval.cancel(normalize_proposal(record), actor)
                proposals.save_review(record, cancelled)
        return cancelled

    def list_pending_settlements(self) -> list[SettlementProposal]:
        with translate_db_errors("list_pending_settlements"):
            with session_scope(self._session_factory) as session:
                return [normalize_proposal(row) for row in SettlementRepository(session).list_pending()]

    def _settle(self, session: Session, proposal: SettlementProposal) -> SettlementResult:
        """Pay out the market named by an approved proposal inside the approval transaction."""

        market_id = proposal.market_id
        winning_outcome_id = proposal.winning_outcome_id
        markets = MarketRepository(session)
        wagers = WagerRepository(session)
        wallets = WalletRepository(session)
        settlements = SettlementRepository(session)

        market = markets.require(market_id, for_update=True)
        status = MarketStatus(market.status)
        ensure_settleable(status)
        if winning_outcome_id is not None and winning_outcome_id not in {outcome.id for outcome in market.outcomes}:
            raise InvariantViolation(f"outcome {winning_outcome_id} does not belong to market {market_id}")

        rows = wagers.list_for_market(market_id, live_only=True, for_update=True)
        live = normalize_wagers(rows)
        ensure_reviewed(market_id, live)

        markets.set_status(market, transition(status, MarketStatus.SETTLING))
        result = calculate_settlement(market_id, live, winning_outcome_id, market.rake_bps)

        settled_at = utcnow()
        rows_by_id = {row.id: row for row in rows}
        for entry in result.wagers:
            wagers.mark_settled(rows_by_id[entry.wager_id], status=entry.status, payout=entry.payout, settled_at=settled_at)
            if entry.payout > 0:
                kind = WalletTransactionKind.REFUND if entry.status is WagerStatus.REFUNDED else WalletTransactionKind.PAYOUT
                wallets.credit(
                    wallets.lock_or_open(entry.user_id),
                    entry.payout,
                    kind=kind,
                    market_id=market_id,
                    wager_id=entry.wager_id,
                )

        settlements.record_settlement(result, proposal_id=proposal.proposal_id)
        markets.set_status(market, transition(MarketStatus.SETTLING, MarketStatus.SETTLED))

        logger.info(
            "Settled market {} winner={} total={} rake={} paid={} dust={} refunded={}",
            market_id,
            winning_outcome_id,
            result.total_pool,
            result.rake_amount,
            result.total_paid,
            result.dust,
            result.refunded,
        )
        return result

    # ------------------------------------------------------------------
    # Laps

    def log_lap_atomic(self, session_id: str, driver_id: str, lap_time_ms: int) -> LapLogResult:
        ensure_lap_time(lap_time_ms)
        with translate_db_errors("log_lap_atomic"):
            with session_scope(self._session_factory) as session:
                laps = LapRepository(session)
                driver = laps.require_driver(session_id, driver_id, for_update=True)
                existing = [normalize_lap(row) for row in laps.list_laps(session_id, driver_id, for_update=True)]
                lap_number = next_lap_number(existing)
                record = laps.add_lap(
                    session_id=session_id,
                    driver_id=driver_id,
                    lap_number=lap_number,
                    lap_time_ms=lap_time_ms,
                )
                aggregate = recompute_aggregate(session_id, driver_id, [*existing, normalize_lap(record)])
                laps.write_aggregate(driver, aggregate)
                lap_id = record.id

        logger.debug("Logged lap {} for driver {} in session {}: {} ms", lap_number, driver_id, session_id, lap_time_ms)
        return LapLogResult(lap_id=lap_id, lap_number=lap_number, lap_time_ms=lap_time_ms, aggregate=aggregate)

    def invalidate_last_lap_atomic(
        self,
        session_id: str,
        driver_id: str,
        mode: InvalidationMode,
    ) -> LapInvalidationResult | None:
        with translate_db_errors("invalidate_last_lap_atomic"):
            with session_scope(self._session_factory) as session:
                laps = LapRepository(session)
                driver = laps.require_driver(session_id, driver_id, for_update=True)
                records = [normalize_lap(row) for row in laps.list_laps(session_id, driver_id, for_update=True)]
                target = select_lap_to_invalidate(records, mode)
                if target is None:
                    return None
                updated = mark_invalidated(target, mode)
                laps.set_flags(target.lap_id, invalidated=updated.invalidated, removed=updated.removed)
                aggregate = recompute_aggregate(
                    session_id,
                    driver_id,
                    [updated if lap.lap_id == target.lap_id else lap for lap in records],
                )
                laps.write_aggregate(driver, aggregate)

        logger.info(
            "Invalidated lap {} for driver {} in session {} mode={}",
            target.lap_number,
            driver_id,
            session_id,
            mode.value,
        )
        return LapInvalidationResult(
            lap_id=target.lap_id,
            lap_number=target.lap_number,
            mode=mode,
            aggregate=aggregate,
        )
