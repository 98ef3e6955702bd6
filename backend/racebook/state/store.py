"""Injectable client-side store for the wagering screen.

State is immutable; ``reduce`` is a pure function of ``(state, action)`` and ``Store`` is a
small dispatcher around it. While a placement is in flight no second placement may start,
which is what keeps the submit control disabled.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Union

from loguru import logger

from racebook.backends.base import PlacementReceipt, PlacementRequest
from racebook.core.errors import PLACEMENT_IN_FLIGHT, ConflictError, RacebookError
from racebook.domain.models import Market, MarketStatus, WagerStatus
from racebook.engine.pools import PoolLedger


class LoadStatus:
    IDLE = "idle"
    LOADING = "loading"
    READY = "ready"
    ERROR = "error"


@dataclass(slots=True, frozen=True)
class Toast:
    kind: str
    message: str


@dataclass(slots=True, frozen=True)
class Placement:
    is_placing: bool = False
    market_id: str | None = None
    outcome_id: str | None = None
    error: str | None = None
    last_wager_id: str | None = None


@dataclass(slots=True, frozen=True)
class ParimutuelState:
    status: str = LoadStatus.IDLE
    markets: tuple[Market, ...] = ()
    pools: Mapping[str, PoolLedger] = field(default_factory=dict)
    selected_market_id: str | None = None
    placement: Placement = field(default_factory=Placement)
    toast: Toast | None = None
    error: str | None = None
    last_loaded_at: datetime | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "pools", MappingProxyType(dict(self.pools)))

    @property
    def selected_market(self) -> Market | None:
        return next((market for market in self.markets if market.market_id == self.selected_market_id), None)

    def pool_for(self, market_id: str) -> PoolLedger:
        return self.pools.get(market_id) or PoolLedger.empty(market_id)


# ----------------------------------------------------------------------
# Actions


@dataclass(slots=True, frozen=True)
class LoadStart:
    pass


@dataclass(slots=True, frozen=True)
class LoadSuccess:
    markets: tuple[Market, ...]
    pools: Mapping[str, PoolLedger] = field(default_factory=dict)


@dataclass(slots=True, frozen=True)
class LoadError:
    message: str = "Failed to load markets."


@dataclass(slots=True, frozen=True)
class SelectMarket:
    market_id: str | None


@dataclass(slots=True, frozen=True)
class PlaceWagerStart:
    market_id: str
    outcome_id: str


@dataclass(slots=True, frozen=True)
class PlaceWagerSuccess:
    market_id: str
    outcome_id: str
    stake: int
    wager_id: str
    message: str | None = None


@dataclass(slots=True, frozen=True)
class PlaceWagerError:
    market_id: str
    outcome_id: str
    message: str = "Failed to place wager."


@dataclass(slots=True, frozen=True)
class SettleMarket:
    market_id: str
    winning_outcome_id: str | None = None


@dataclass(slots=True, frozen=True)
class ClearToast:
    pass


Action = Union[
    LoadStart,
    LoadSuccess,
    LoadError,
    SelectMarket,
    PlaceWagerStart,
    PlaceWagerSuccess,
    PlaceWagerError,
    SettleMarket,
    ClearToast,
]


def _load_success(state: ParimutuelState, action: LoadSuccess) -> ParimutuelState:
    markets = tuple(action.markets)
    pools = {market.market_id: PoolLedger.empty(market.market_id, market.outcome_ids) for market in markets}
    pools.update(action.pools)
    known = {market.market_id for market in markets}
    selected = state.selected_market_id if state.selected_market_id in known else None
    if selected is None and markets:
        selected = markets[0].market_id
    return replace(
        state,
        status=LoadStatus.READY,
        markets=markets,
        pools=pools,
        selected_market_id=selected,
        error=None,
        last_loaded_at=datetime.now(timezone.utc),
    )


def reduce(state: ParimutuelState, action: Action) -> ParimutuelState:
    if isinstance(action, LoadStart):
        return replace(state, status=LoadStatus.LOADING, error=None)
    if isinstance(action, LoadSuccess):
        return _load_success(state, action)
    if isinstance(action, LoadError):
        return replace(state, status=LoadStatus.ERROR, error=action.message, markets=(), pools={})
    if isinstance(action, SelectMarket):
        return replace(state, selected_market_id=action.market_id, toast=None)
    if isinstance(action, PlaceWagerStart):
        if state.placement.is_placing:
            raise ConflictError("A wager is already being placed.", code=PLACEMENT_IN_FLIGHT)
        return replace(
            state,
            placement=Placement(is_placing=True, market_id=action.market_id, outcome_id=action.outcome_id),
            toast=None,
        )
    if isinstance(action, PlaceWagerSuccess):
        pools = dict(state.pools)
        pools[action.market_id] = state.pool_for(action.market_id).apply_stake(action.outcome_id, action.stake)
        return replace(
            state,
            pools=pools,
            placement=Placement(
                is_placing=False,
                market_id=action.market_id,
                outcome_id=action.outcome_id,
                last_wager_id=action.wager_id,
            ),
            toast=Toast("success", action.message or "Wager placed successfully."),
        )
    if isinstance(action, PlaceWagerError):
        return replace(
            state,
            placement=Placement(
                is_placing=False,
                market_id=action.market_id,
                outcome_id=action.outcome_id,
                error=action.message,
            ),
            toast=Toast("error", action.message),
        )
    if isinstance(action, SettleMarket):
        markets = tuple(
            replace(market, status=MarketStatus.SETTLED) if market.market_id == action.market_id else market
            for market in state.markets
        )
        return replace(state, markets=markets)
    if isinstance(action, ClearToast):
        return replace(state, toast=None)
    raise TypeError(f"unknown action {type(action).__name__}")


Listener = Callable[[ParimutuelState], None]


class Store:
    def __init__(
        self,
        initial: ParimutuelState | None = None,
        reducer: Callable[[ParimutuelState, Action], ParimutuelState] = reduce,
    ) -> None:
        self._state = initial or ParimutuelState()
        self._reducer = reducer
        self._listeners: list[Listener] = []

    @property
    def state(self) -> ParimutuelState:
        return self._state

    def dispatch(self, action: Action) -> ParimutuelState:
        self._state = self._reducer(self._state, action)
        for listener in list(self._listeners):
            listener(self._state)
        return self._state

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def place_wager(
        self,
        submit: Callable[[PlacementRequest], PlacementReceipt],
        request: PlacementRequest,
    ) -> PlacementReceipt:
        """Drive one placement through start, submit and success or error."""

        self.dispatch(PlaceWagerStart(request.market_id, request.outcome_id))
        try:
            receipt = submit(request)
        except RacebookError as exc:
            logger.info("Placement failed market={} code={}: {}", request.market_id, exc.code, exc.message)
            self.dispatch(PlaceWagerError(request.market_id, request.outcome_id, exc.message))
            raise
        except Exception:
            logger.exception("Placement crashed market={} outcome={}", request.market_id, request.outcome_id)
            self.dispatch(PlaceWagerError(request.market_id, request.outcome_id))
            raise
        self.dispatch(
            PlaceWagerSuccess(
                market_id=receipt.market_id,
                outcome_id=receipt.outcome_id,
                stake=receipt.stake,
                wager_id=receipt.wager_id,
                message="Wager submitted for review." if receipt.status is WagerStatus.PENDING else None,
            )
        )
        return receipt
