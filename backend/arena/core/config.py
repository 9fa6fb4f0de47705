from functools import lru_cache
from typing import Any
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

from pydantic import AnyUrl, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from web3 import Web3

DEFAULT_CHAIN_RPC_URLS: dict[int, str] = {
    8453: "https://mainnet.base.org",
    57073: "https://rpc-qnd.inkonchain.com",
    1868: "https://rpc.soneium.org",
    747474: "https://rpc.katana.network",
    4326: "https://mainnet.megaeth.com/rpc",
}


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
        default="sqlite:///../data/arena.db",
        description="SQLAlchemy compatible database URL for the mirror store",
    )
    supabase_db_url: AnyUrl | str | None = Field(
        default=None,
        description="Supabase pooled Postgres connection string for production runs",
    )
    chain_id: int = Field(default=8453, description="Chain hosting the arena contract")
    contract_address: str = Field(
        default="0x6102f5893EF6cDE8Eabf67f59845D7704b228a2c",
        description="Address of the prediction arena contract",
    )
    rpc_url: str = Field(
        default="https://mainnet.base.org",
        description="Primary JSON-RPC endpoint used for contract reads",
    )
    fallback_rpc_url: str | None = Field(
        default="https://base-rpc.publicnode.com",
        description="Secondary JSON-RPC endpoint for correctness-critical single reads",
    )
    chain_rpc_urls: dict[int, str] = Field(
        default_factory=lambda: dict(DEFAULT_CHAIN_RPC_URLS),
        description="Per-chain RPC endpoints used by the receipt verifier",
    )
    rpc_max_attempts: int = Field(
        default=4,
        description="Attempts per read when the provider signals rate limiting",
        ge=1,
        le=10,
    )
    rpc_backoff_base_seconds: float = Field(
        default=0.4,
        description="Base delay for the attempt-squared rate-limit backoff",
        ge=0,
    )
    rpc_timeout_seconds: float = Field(
        default=10.0, description="Timeout applied to every RPC request", gt=0
    )
    sync_debounce_seconds: float = Field(
        default=3.5,
        description="Full resync requests within this window of the previous run are coalesced",
        ge=0,
    )
    sync_concurrency: int = Field(
        default=8, description="Concurrent market reads per full resync", ge=1
    )
    backfill_limit: int = Field(
        default=20, description="Maximum missing markets repaired per backfill call", ge=1
    )
    reconcile_interval_seconds: float = Field(
        default=15.0, description="Minimum spacing between reconciliation passes", ge=0
    )
    reconcile_batch_size: int = Field(
        default=8, description="Stale markets re-synced per reconciliation pass", ge=1
    )
    receipt_initial_delay_seconds: float = Field(
        default=3.0, description="Propagation delay before polling for a receipt", ge=0
    )
    receipt_poll_attempts: int = Field(
        default=8, description="Receipt lookups performed by the verifier", ge=1
    )
    receipt_poll_interval_seconds: float = Field(
        default=2.0, description="Spacing between receipt lookups", ge=0
    )
    confirmation_timeout_seconds: float = Field(
        default=120.0,
        description="Upper bound on waiting for a submitted transaction to be mined",
        gt=0,
    )
    confirmation_poll_interval_seconds: float = Field(
        default=1.5, description="Spacing between confirmation polls", gt=0
    )
    reward_policy: str = Field(
        default="confirm_first",
        description="When reward grants are requested (confirm_first|hash_only)",
    )
    reward_points_create_market: int = Field(default=2000, ge=0)
    reward_points_place_bet: int = Field(default=200, ge=0)
    reward_source: str = Field(
        default="web", description="Source channel tag attached to reward grants"
    )

    @field_validator("contract_address")
    @classmethod
    def _validate_contract_address(cls, value: str) -> str:
        candidate = value.strip()
        # Mixed case would be checked as an EIP-55 checksum; only the shape matters here.
        if not candidate.startswith("0x") or not Web3.is_address(candidate.lower()):
            raise ValueError("CONTRACT_ADDRESS must be a 0x-prefixed 20 byte hex address")
        return candidate

    @field_validator("reward_policy")
    @classmethod
    def _validate_reward_policy(cls, value: str) -> str:
        normalized = value.strip().lower().replace("-", "_")
        if normalized not in {"confirm_first", "hash_only"}:
            raise ValueError("REWARD_POLICY must be confirm_first or hash_only")
        return normalized

    @field_validator("fallback_rpc_url", mode="before")
    @classmethod
    def _blank_fallback(cls, value: Any) -> Any:
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

    def rpc_url_for_chain(self, chain_id: int) -> str:
        return (
            self.chain_rpc_urls.get(chain_id)
            or self.chain_rpc_urls.get(8453)
            or DEFAULT_CHAIN_RPC_URLS[8453]
        )


@lru_cache
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
