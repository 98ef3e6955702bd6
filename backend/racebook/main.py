from __future__ import annotations

from typing import Annotated

from fastapi import Depends, FastAPI, Header, Request
from fastapi.responses import JSONResponse
from loguru import logger
from sqlalchemy.orm import Session, sessionmaker

from . import schemas
from .backends import LedgerBackend, close_shared_backends, shared_backend
from .backends.base import PlacementRequest
from .core.config import settings
from .core.errors import (
    ConflictError,
    InvariantViolation,
    NotFoundError,
    RacebookError,
    TransientBackendError,
    ValidationError,
)
from .core.logging import configure_logging
from .db import SessionLocal, init_db
from .domain.models import MarketStatus
from .engine.laps import parse_lap_input
from .services import MarketService, SettlementWorkflow, WagerService, build_lap_ledger
from .services.lap_service import AtomicLapLedger, ComposedLapLedger

app = FastAPI(
    title="Racebook API",
    version="0.1.0",
    debug=settings.debug,
    responses={status: {"model": schemas.ErrorOut} for status in (400, 404, 409, 503)},
)


@app.on_event("startup")
def on_startup() -> None:
    """Install logging and create tables when the API boots."""

    configure_logging()
    init_db()


@app.on_event("shutdown")
def on_shutdown() -> None:
    """Release the HTTP connections held by the shared ledger backend."""

    close_shared_backends()


def _status_for(exc: RacebookError) -> int:
    if isinstance(exc, NotFoundError):
        return 404
    if isinstance(exc, ConflictError):
        return 409
    if isinstance(exc, TransientBackendError):
        return 503
    if isinstance(exc, ValidationError):
        return 400
    return 500


@app.exception_handler(RacebookError)
def _handle_racebook_error(request: Request, exc: RacebookError) -> JSONResponse:
    status_code = _status_for(exc)
    if isinstance(exc, InvariantViolation) or status_code == 500:
        logger.error("{} {} failed: {} ({})", request.method, request.url.path, exc.message, exc.code)
    return JSONResponse(status_code=status_code, content=exc.to_payload())


@app.get("/healthz", tags=["system"])
def healthcheck() -> dict[str, str]:
    """Basic readiness check consumed by infrastructure monitors."""

    return {"status": "ok"}


# ----------------------------------------------------------------------
# Dependencies


def _session_factory() -> sessionmaker[Session]:
    return SessionLocal


def _current_user(x_user_id: Annotated[str, Header(alias="X-User-Id")]) -> str:
    """Acting user id supplied by the identity layer in front of the API."""

    return x_user_id


def _ledger_backend(factory: sessionmaker[Session] = Depends(_session_factory)) -> LedgerBackend:
    """One backend per process; building it per request would leak HTTP clients."""

    return shared_backend(settings, session_factory=factory)


def _market_service(
    factory: sessionmaker[Session] = Depends(_session_factory),
    backend: LedgerBackend = Depends(_ledger_backend),
) -> MarketService:
    return MarketService(factory, backend=backend)


def _wager_service(
    factory: sessionmaker[Session] = Depends(_session_factory),
    backend: LedgerBackend = Depends(_ledger_backend),
) -> WagerService:
    return WagerService(backend, session_factory=factory)


def _settlement_workflow(backend: LedgerBackend = Depends(_ledger_backend)) -> SettlementWorkflow:
    return SettlementWorkflow(backend=backend)


def _lap_ledger(
    factory: sessionmaker[Session] = Depends(_session_factory),
    backend: LedgerBackend = Depends(_ledger_backend),
) -> AtomicLapLedger | ComposedLapLedger:
    return build_lap_ledger(settings, backend=backend, session_factory=factory)


# ----------------------------------------------------------------------
# Markets


@app.get("/markets", response_model=list[schemas.MarketOut], tags=["markets"])
def list_markets(status: MarketStatus | None = None, service: MarketService = Depends(_market_service)):
    return service.list_markets(status)


@app.get("/markets/{market_id}", response_model=schemas.MarketOut, tags=["markets"])
def get_market(market_id: str, service: MarketService = Depends(_market_service)):
    return service.get_market(market_id)


@app.get("/markets/{market_id}/pool", response_model=schemas.PoolOut, tags=["markets"])
def get_pool(market_id: str, service: MarketService = Depends(_market_service)):
    """Pool totals and baseline odds per outcome, largest pool first."""

    ledger, rows = service.odds(market_id)
    return schemas.PoolOut(
        market_id=market_id,
        total=ledger.total,
        outcomes=[schemas.OutcomeOddsOut.model_validate(row) for row in rows],
    )


@app.post("/markets/{market_id}/quote", response_model=schemas.QuoteResponse, tags=["markets"])
def quote(market_id: str, payload: schemas.QuoteRequest, service: MarketService = Depends(_market_service)):
    result = service.quote(market_id, payload.outcome_id, payload.stake)
    return schemas.QuoteResponse(
        market_id=market_id,
        outcome_id=payload.outcome_id,
        quote=schemas.QuoteOut.model_validate(result) if result is not None else None,
    )


@app.post("/markets/{market_id}/close", response_model=schemas.MarketOut, tags=["markets"])
def close_market(
    market_id: str,
    user_id: str = Depends(_current_user),
    service: MarketService = Depends(_market_service),
):
    logger.info("Close requested for market {} by {}", market_id, user_id)
    return service.close_market(market_id)


# ----------------------------------------------------------------------
# Wagers


@app.get("/wagers", response_model=list[schemas.WagerOut], tags=["wagers"])
def list_my_wagers(user_id: str = Depends(_current_user), service: WagerService = Depends(_wager_service)):
    """Wagers placed by the acting user, newest first."""

    return service.list_wagers(user_id)


@app.post("/wagers", response_model=schemas.WagerReceiptOut, status_code=201, tags=["wagers"])
def place_wager(
    payload: schemas.WagerCreate,
    user_id: str = Depends(_current_user),
    service: WagerService = Depends(_wager_service),
):
    request = PlacementRequest(
        user_id=user_id,
        market_id=payload.market_id,
        outcome_id=payload.outcome_id,
        stake=payload.stake,
        client_request_id=payload.client_request_id,
    )
    return service.place_wager(request)


@app.get("/admin/wagers/pending", response_model=list[schemas.WagerOut], tags=["wagers"])
def list_pending_wagers(market_id: str | None = None, service: WagerService = Depends(_wager_service)):
    """Wagers held for review, oldest first."""

    return service.list_pending(market_id)


@app.post("/wagers/{wager_id}/approve", response_model=schemas.WagerOut, tags=["wagers"])
def approve_pending_wager(
    wager_id: str,
    user_id: str = Depends(_current_user),
    service: WagerService = Depends(_wager_service),
):
    return service.approve_pending(wager_id, user_id)


@app.post("/wagers/{wager_id}/reject", response_model=schemas.WagerOut, tags=["wagers"])
def reject_pending_wager(
    wager_id: str,
    payload: schemas.WagerReviewRequest | None = None,
    user_id: str = Depends(_current_user),
    service: WagerService = Depends(_wager_service),
):
    return service.reject_pending(wager_id, user_id, payload.reason if payload is not None else None)


# ----------------------------------------------------------------------
# Settlement


@app.post(
    "/markets/{market_id}/proposals",
    response_model=schemas.ProposalOut,
    status_code=201,
    tags=["settlement"],
)
def propose_settlement(
    market_id: str,
    payload: schemas.ProposalCreate,
    user_id: str = Depends(_current_user),
    workflow: SettlementWorkflow = Depends(_settlement_workflow),
):
    return workflow.propose(market_id, payload.winning_outcome_id, user_id, payload.evidence)


@app.get("/proposals", response_model=list[schemas.ProposalOut], tags=["settlement"])
def list_pending_proposals(workflow: SettlementWorkflow = Depends(_settlement_workflow)):
    return workflow.list_pending()


@app.post("/proposals/{proposal_id}/approve", response_model=schemas.ApprovalOut, tags=["settlement"])
def approve_proposal(
    proposal_id: str,
    user_id: str = Depends(_current_user),
    workflow: SettlementWorkflow = Depends(_settlement_workflow),
):
    outcome = workflow.approve(proposal_id, user_id)
    return schemas.ApprovalOut(
        proposal=schemas.ProposalOut.model_validate(outcome.proposal),
        settlement=schemas.SettlementOut.model_validate(outcome.result),
    )


@app.post("/proposals/{proposal_id}/reject", response_model=schemas.ProposalOut, tags=["settlement"])
def reject_proposal(
    proposal_id: str,
    payload: schemas.RejectRequest,
    user_id: str = Depends(_current_user),
    workflow: SettlementWorkflow = Depends(_settlement_workflow),
):
    return workflow.reject(proposal_id, user_id, payload.reason)


@app.post("/proposals/{proposal_id}/cancel", response_model=schemas.ProposalOut, tags=["settlement"])
def cancel_proposal(
    proposal_id: str,
    user_id: str = Depends(_current_user),
    workflow: SettlementWorkflow = Depends(_settlement_workflow),
):
    return workflow.cancel(proposal_id, user_id)


# ----------------------------------------------------------------------
# Laps


@app.post(
    "/sessions/{session_id}/drivers/{driver_id}/laps",
    response_model=schemas.LapLogOut,
    status_code=201,
    tags=["laps"],
)
def log_lap(
    session_id: str,
    driver_id: str,
    payload: schemas.LapCreate,
    ledger: AtomicLapLedger | ComposedLapLedger = Depends(_lap_ledger),
):
    lap_time_ms = payload.lap_time_ms if payload.lap_time_ms is not None else parse_lap_input(payload.lap_time or "")
    return ledger.log_lap(session_id, driver_id, lap_time_ms)


@app.post(
    "/sessions/{session_id}/drivers/{driver_id}/laps/invalidate",
    response_model=schemas.LapInvalidationOut,
    tags=["laps"],
)
def invalidate_last_lap(
    session_id: str,
    driver_id: str,
    payload: schemas.InvalidateRequest | None = None,
    ledger: AtomicLapLedger | ComposedLapLedger = Depends(_lap_ledger),
):
    mode = payload.mode if payload is not None else schemas.InvalidateRequest().mode
    result = ledger.invalidate_last_lap(session_id, driver_id, mode)
    if result is None:
        return schemas.LapInvalidationOut(invalidated=False, mode=mode)
    return schemas.LapInvalidationOut(
        invalidated=True,
        lap_id=result.lap_id,
        lap_number=result.lap_number,
        mode=result.mode,
        aggregate=schemas.DriverAggregateOut.model_validate(result.aggregate),
    )
