"""Atomic ledger backends: direct SQL transactions or Supabase remote procedures."""

from __future__ import annotations

import httpx
from loguru import logger
from sqlalchemy.orm import Session, sessionmaker

from racebook.core.config import Settings, settings as default_settings

from .base import (
    LapBackend,
    LapInvalidationResult,
    LapLogResult,
    PlacementReceipt,
    PlacementRequest,
    SettlementApproval,
    SettlementBackend,
    WagerBackend,
)
from .sql import SqlLedgerBackend
from .supabase import SupabaseRpcBackend

LedgerBackend = SqlLedgerBackend | SupabaseRpcBackend

_shared: dict[tuple[str, sessionmaker[Session] | None], LedgerBackend] = {}


def build_backend(
    config: Settings | None = None,
    *,
    session_factory: sessionmaker[Session] | None = None,
    transport: httpx.BaseTransport | None = None,
) -> LedgerBackend:
    """Construct the backend named by ``ledger_backend``."""

    config = config or default_settings
    if config.ledger_backend == "supabase":
        return SupabaseRpcBackend(
            base_url=str(config.supabase_url) if config.supabase_url else None,
            service_key=config.supabase_service_role_key,
            timeout=config.rpc_timeout_seconds,
            transport=transport,
        )
    return SqlLedgerBackend(session_factory, review_threshold=config.wager_review_threshold)


def shared_backend(
    config: Settings | None = None,
    *,
    session_factory: sessionmaker[Session] | None = None,
) -> LedgerBackend:
    """Build or reuse the process-wide backend for a session factory."""

    config = config or default_settings
    key = (config.ledger_backend, session_factory)
    backend = _shared.get(key)
    if backend is None:
        backend = _shared[key] = build_backend(config, session_factory=session_factory)
        logger.debug("Created shared {} ledger backend", config.ledger_backend)
    return backend


def close_shared_backends() -> None:
    while _shared:
        _, backend = _shared.popitem()
        backend.close()


__all__ = [
    "LapBackend",
    "LapInvalidationResult",
    "LapLogResult",
    "LedgerBackend",
    "PlacementReceipt",
    "PlacementRequest",
    "SettlementApproval",
    "SettlementBackend",
    "SqlLedgerBackend",
    "SupabaseRpcBackend",
    "WagerBackend",
    "build_backend",
    "close_shared_backends",
    "shared_backend",
]
