from functools import lru_cache
from typing import Any
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

from pydantic import AnyUrl, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _ensure_sqlalchemy_postgres_scheme(value: str) -> str:
    if not value.lower().startswith("postgres"):
        return value

    parsed = urlparse(value)
    scheme = parsed.scheme.lower()

    if scheme == "postgres":
        scheme = "postgresql"

    if scheme == "postgresql":
        scheme = "postgresql+psycopg"

    if scheme not in {"postgresql+psycopg", "postgresql+asyncpg"}:
        scheme = "postgresql+psycopg"

    query_params = dict(parse_qsl(parsed.query, keep_blank_values=True))
    query_params.setdefault("sslmode", "require")
    query_params.setdefault("target_session_attrs", "read-write")
    new_query = urlencode(query_params, doseq=True)

    return urlunparse(parsed._replace(scheme=scheme, query=new_query))


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    debug: bool = Field(False, description="Enable FastAPI debug mode")
    environment: str = Field(
        default="development",
        description="Runtime environment (development|staging|production)",
    )
    database_url: AnyUrl | str = Field(
        default="sqlite:///./data/racebook.db",
        description="SQLAlchemy compatible database URL",
    )
    supabase_db_url: AnyUrl | str | None = Field(
        default=None,
        description="Supabase pooled Postgres connection string for production runs",
    )
    supabase_url: AnyUrl | str | None = Field(
        default=None,
        description="Supabase project URL used for PostgREST remote procedure calls",
    )
    supabase_service_role_key: str | None = Field(
        default=None,
        description="Supabase service role key for privileged RPC calls",
    )
    ledger_backend: str = Field(
        default="sql",
        description="Atomic operation backend: 'sql' (direct transactions) or 'supabase' (PostgREST RPC)",
    )
    lap_write_mode: str = Field(
        default="atomic",
        description="Lap ledger write path: 'atomic' (single operation) or 'composed' (multi-step fallback)",
    )
    max_rake_bps: int = Field(
        default=2000,
        description="Upper bound for a market's rake in basis points",
        ge=0,
        le=2000,
    )
    default_rake_bps: int = Field(
        default=0,
        description="Rake applied to markets created without an explicit rake",
        ge=0,
        le=2000,
    )
    wager_review_threshold: int | None = Field(
        default=None,
        description="Stakes at or above this amount are held as pending until an admin reviews them",
        gt=0,
    )
    transient_retry_attempts: int = Field(
        default=3,
        description="Attempts for idempotent operations when the backend reports a transient failure",
        ge=1,
    )
    transient_retry_backoff_seconds: list[float] | tuple[float, ...] | str = Field(
        default_factory=lambda: [0.2, 0.5, 1.0],
        description="Comma-separated list or array of backoff delays (seconds) between transient retries",
    )
    rpc_timeout_seconds: float = Field(
        default=10.0,
        description="Timeout applied to PostgREST remote procedure calls",
        gt=0,
    )
    log_level: str = Field(default="INFO", description="Minimum loguru level emitted")
    log_json: bool = Field(default=False, description="Serialize log records as JSON lines")

    @field_validator("database_url", "supabase_db_url", mode="before")
    @classmethod
    def _normalize_postgres_urls(cls, value: Any) -> Any:
        if value is None or not isinstance(value, str):
            return value
        if value.startswith("postgres://"):
            return "postgresql://" + value[len("postgres://") :]
        return value

    @field_validator("ledger_backend")
    @classmethod
    def _validate_ledger_backend(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in {"sql", "supabase"}:
            raise ValueError("ledger_backend must be 'sql' or 'supabase'")
        return normalized

    @field_validator("lap_write_mode")
    @classmethod
    def _validate_lap_write_mode(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in {"atomic", "composed"}:
            raise ValueError("lap_write_mode must be 'atomic' or 'composed'")
        return normalized

    @field_validator("transient_retry_backoff_seconds", mode="before")
    @classmethod
    def _parse_retry_backoff(cls, value: Any) -> list[float]:
        if value in (None, "", []):
            return [0.2, 0.5, 1.0]
        if isinstance(value, str):
            tokens = [token.strip() for token in value.split(",") if token.strip()]
            if not tokens:
                raise ValueError("TRANSIENT_RETRY_BACKOFF_SECONDS must contain at least one value")
            value = tokens
        if isinstance(value, (list, tuple)):
            backoff: list[float] = []
            for item in value:
                try:
                    delay = float(item)
                except (TypeError, ValueError) as exc:
                    raise ValueError("TRANSIENT_RETRY_BACKOFF_SECONDS entries must be numeric") from exc
                if delay < 0:
                    raise ValueError("TRANSIENT_RETRY_BACKOFF_SECONDS entries must not be negative")
                backoff.append(delay)
            if not backoff:
                raise ValueError("TRANSIENT_RETRY_BACKOFF_SECONDS must contain at least one value")
            return backoff
        raise ValueError(
            "TRANSIENT_RETRY_BACKOFF_SECONDS must be provided as a comma-separated string or list of numbers"
        )

    @property
    def resolved_database_url(self) -> str:
        environment = self.environment.lower()
        if environment == "production":
            if not self.supabase_db_url:
                raise ValueError(
                    "SUPABASE_DB_URL must be set when ENVIRONMENT=production"
                )
            return _ensure_sqlalchemy_postgres_scheme(str(self.supabase_db_url))
        return _ensure_sqlalchemy_postgres_scheme(str(self.database_url))

    @property
    def transient_retry_backoff_schedule(self) -> tuple[float, ...]:
        sequence = tuple(float(value) for value in self.transient_retry_backoff_seconds)
        if not sequence:
            return (0.0,)
        return sequence


@lru_cache
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
