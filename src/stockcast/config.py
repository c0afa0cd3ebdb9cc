from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv


@dataclass(frozen=True)
class DatabaseConfig:
    host: str
    port: int
    database: str
    user: str
    password: str

    @property
    def dsn(self) -> str:
        return f"postgresql://{self.user}:{self.password}@{self.host}:{self.port}/{self.database}"


@dataclass(frozen=True)
class AppConfig:
    db_dsn: str
    auth_secret_key: str = ""
    auth_token_expiry_hours: int = 168
    price_source: str = "registry"
    price_max_age_seconds: int = 900
    price_timeout_seconds: float = 5.0
    evaluation_interval_seconds: int = 60
    evaluation_batch_size: int = 500
    evaluation_workers: int = 8
    claim_lease_seconds: int = 120
    enable_scheduler: bool = True
    rate_limit_max: int = 5
    rate_limit_window_minutes: int = 60
    abuse_threshold: int = 10
    abuse_window_seconds: int = 60
    leaderboard_size: int = 10


def _env_bool(name: str, default: str) -> bool:
    return os.environ.get(name, default).lower() in ("1", "true", "yes")


def _database_dsn() -> str:
    """DATABASE_URL, or a DSN assembled from DB_HOST and friends."""
    dsn = os.environ.get("DATABASE_URL", "")
    if dsn or not os.environ.get("DB_HOST"):
        return dsn
    return DatabaseConfig(
        host=os.environ["DB_HOST"],
        port=int(os.environ.get("DB_PORT", "5432")),
        database=os.environ.get("DB_NAME", "stockcast"),
        user=os.environ.get("DB_USER", "stockcast"),
        password=os.environ.get("DB_PASSWORD", ""),
    ).dsn


def load_config() -> AppConfig:
    """Load application config from environment variables.

    Loads .env file if present in the current directory.
    """
    env_path = Path(".env")
    if env_path.exists():
        load_dotenv(env_path)

    return AppConfig(
        db_dsn=_database_dsn(),
        auth_secret_key=os.environ.get("AUTH_SECRET_KEY", ""),
        auth_token_expiry_hours=int(os.environ.get("AUTH_TOKEN_EXPIRY_HOURS", "168")),
        price_source=os.environ.get("PRICE_SOURCE", "registry").lower(),
        price_max_age_seconds=int(os.environ.get("PRICE_MAX_AGE_SECONDS", "900")),
        price_timeout_seconds=float(os.environ.get("PRICE_TIMEOUT_SECONDS", "5.0")),
        evaluation_interval_seconds=int(os.environ.get("EVALUATION_INTERVAL_SECONDS", "60")),
        evaluation_batch_size=int(os.environ.get("EVALUATION_BATCH_SIZE", "500")),
        evaluation_workers=int(os.environ.get("EVALUATION_WORKERS", "8")),
        claim_lease_seconds=int(os.environ.get("CLAIM_LEASE_SECONDS", "120")),
        enable_scheduler=_env_bool("ENABLE_SCHEDULER", "true"),
        rate_limit_max=int(os.environ.get("RATE_LIMIT_MAX", "5")),
        rate_limit_window_minutes=int(os.environ.get("RATE_LIMIT_WINDOW_MINUTES", "60")),
        abuse_threshold=int(os.environ.get("ABUSE_THRESHOLD", "10")),
        abuse_window_seconds=int(os.environ.get("ABUSE_WINDOW_SECONDS", "60")),
        leaderboard_size=int(os.environ.get("LEADERBOARD_SIZE", "10")),
    )
