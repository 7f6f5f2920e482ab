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

    normalized = urlunparse(
        parsed._replace(
            scheme=scheme,
            query=new_query,
        )
    )
    return normalized


RESOLVER_COUNT_MODES = {"likes", "power_likes"}


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
        default="sqlite:///../data/castpredict.db",
        description="SQLAlchemy compatible database URL",
    )
    supabase_db_url: AnyUrl | str | None = Field(
        default=None,
        description="Supabase pooled Postgres connection string for production runs",
    )
    app_url: str = Field(
        default="https://basedorerased.vercel.app",
        description="Public base URL used in frame links and webhook replies",
    )

    # Ledger
    rpc_url: str = Field(
        default="https://sepolia.base.org",
        description="JSON-RPC endpoint of the chain hosting the market contract",
    )
    chain_id: int = Field(default=84532, description="EIP-155 chain id (Base Sepolia by default)")
    contract_address: str | None = Field(
        default=None,
        description="Address of the prediction market contract",
    )
    usdc_address: str | None = Field(
        default=None,
        description="Address of the USDC token used as collateral",
    )
    admin_private_key: str | None = Field(
        default=None,
        description="Key used to sign resolve and create transactions",
    )
    rpc_timeout_seconds: float = Field(default=30.0, gt=0)
    tx_receipt_timeout_seconds: float = Field(default=120.0, gt=0)
    default_bet_amount_usdc: str = Field(
        default="1",
        description="Bet size used by frame transactions when the caller does not provide one",
    )

    # Neynar
    neynar_api_key: str | None = Field(default=None, description="Neynar API key")
    neynar_base_url: AnyUrl = Field(
        default="https://api.neynar.com",
        description="Base URL for the Neynar API",
    )
    neynar_signer_uuid: str | None = Field(
        default=None,
        description="Signer used to publish webhook replies",
    )
    neynar_webhook_secret: str | None = Field(
        default=None,
        description="Shared secret for webhook HMAC validation (blank disables validation)",
    )
    neynar_timeout_seconds: float = Field(default=10.0, gt=0)

    # Jobs
    cron_secret: str | None = Field(
        default=None,
        description="Bearer token guarding the scheduled job endpoints (blank disables auth)",
    )
    indexer_delay_seconds: float = Field(default=0.1, ge=0)
    resolver_delay_seconds: float = Field(default=0.5, ge=0)
    resolver_reaction_page_limit: int = Field(
        default=5,
        description="Maximum number of reaction pages read per cast when counting likes",
        ge=1,
    )
    resolver_reaction_page_size: int = Field(default=100, ge=1, le=100)
    resolver_count_mode: str = Field(
        default="likes",
        description="Engagement count driving resolution (likes|power_likes)",
    )
    power_user_score_threshold: float = Field(default=0.7, ge=0, le=1)
    user_score_ttl_hours: float = Field(default=24.0, gt=0)
    sync_batch_size: int = Field(default=50, ge=1, le=100)
    sync_short_hash_length: int = Field(
        default=20,
        description="Cached identifiers shorter than this are re-resolved through Neynar",
        ge=1,
    )
    cache_retention_days: int = Field(
        default=30,
        description="Resolved rows whose deadline is older than this are pruned (0 disables)",
        ge=0,
    )

    # Webhook command parsing
    webhook_mention_handle: str = Field(default="basedorerased")
    default_threshold: int = Field(default=100, ge=1)
    max_threshold: int = Field(default=100_000, ge=1)
    default_duration_hours: int = Field(default=24, ge=1)
    max_duration_hours: int = Field(default=168, ge=1)

    admin_wallets: list[str] | str = Field(
        default_factory=list,
        description="Comma-separated wallet addresses allowed to soft-cancel markets",
    )

    @field_validator("admin_wallets", mode="after")
    @classmethod
    def _parse_admin_wallets(cls, value: Any) -> list[str]:
        if value in (None, "", []):
            return []
        if isinstance(value, str):
            candidate = value.strip()
            if not candidate:
                return []
            return [
                item.lower()
                for item in (part.strip() for part in candidate.split(","))
                if item
            ]
        if isinstance(value, (list, tuple, set)):
            return [str(item).strip().lower() for item in value if str(item).strip()]
        raise ValueError("ADMIN_WALLETS must be provided as a list or comma-separated string")

    @field_validator("resolver_count_mode")
    @classmethod
    def _validate_count_mode(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in RESOLVER_COUNT_MODES:
            raise ValueError(
                "RESOLVER_COUNT_MODE must be one of: " + ", ".join(sorted(RESOLVER_COUNT_MODES))
            )
        return normalized

    @field_validator("webhook_mention_handle")
    @classmethod
    def _strip_mention_prefix(cls, value: str) -> str:
        handle = value.strip().lstrip("@")
        if not handle:
            raise ValueError("WEBHOOK_MENTION_HANDLE must not be empty")
        return handle

    @field_validator(
        "contract_address",
        "usdc_address",
        "admin_private_key",
        "neynar_api_key",
        "neynar_signer_uuid",
        "neynar_webhook_secret",
        "cron_secret",
        mode="before",
    )
    @classmethod
    def _blank_to_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("database_url", "supabase_db_url", mode="before")
    @classmethod
    def _normalize_postgres_urls(cls, value: Any) -> Any:
        if value is None or not isinstance(value, str):
            return value

        if value.startswith("postgresql+psycopg://") or value.startswith(
            "postgresql+asyncpg://"
        ):
            return value

        normalized = value
        if normalized.startswith("postgres://"):
            normalized = "postgresql://" + normalized[len("postgres://") :]

        return normalized

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
    def neynar_api_root(self) -> str:
        return str(self.neynar_base_url).rstrip("/")


@lru_cache
def get_settings() -> Settings:
    return Settings()
