from functools import lru_cache
from typing import Dict, List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ─────────── APP ───────────
    app_name: str = "Tokenized Asset Redemption Service"
    environment: str = "dev"
    log_level: str = "INFO"

    # ─────────── API ───────────
    api_prefix: str = "/api/v1"
    request_id_header: str = "X-Request-Id"

    # ─────────── DATABASE ───────────
    database_url: str

    # ─────────── JWT / AUTH ───────────
    jwt_secret_key: str
    jwt_algorithm: str = "HS256"
    jwt_access_token_minutes: int = 1440  # 24 hours

    # ─────────── SETTLEMENT ───────────
    settlement_max_retries: int = Field(default=5, ge=1)
    settlement_backoff_base_seconds: float = 1.0
    settlement_backoff_max_seconds: float = 60.0
    confirmation_poll_attempts: int = Field(default=10, ge=1)
    confirmation_poll_interval_seconds: float = 2.0
    reconciliation_pending_timeout_seconds: int = 300
    settlement_currency: str = "USDC"
    currency_precision: int = Field(default=6, ge=0, le=18)

    # ─────────── WINDOWS ───────────
    window_processing_sla_seconds: int = 86400

    # ─────────── APPROVERS ───────────
    # role -> approver ids, e.g. {"compliance_officer": ["alice", "bob"]}
    approver_directory: Dict[str, List[str]] = {}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
