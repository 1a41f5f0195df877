"""
Process configuration, read once from environment variables.
"""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path


def _default_db_path() -> Path:
    return Path(__file__).resolve().parent.parent / "data" / "squadmarket.db"


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    return int(raw) if raw not in (None, "") else default


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    return float(raw) if raw not in (None, "") else default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw in (None, ""):
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    db_path: Path
    initial_budget: int = 5_000_000
    db_busy_timeout: float = 5.0
    tx_retries: int = 3
    tx_backoff: float = 0.05
    provision_attempts: int = 3
    claim_stale_seconds: float = 300.0
    event_lease_seconds: float = 60.0
    event_max_deliveries: int = 10
    workers: int = 4
    poll_interval: float = 1.0
    run_consumer: bool = True
    admin_usernames: frozenset[str] = field(default_factory=frozenset)
    jwt_secret: str = "squadmarket-dev-secret-change-in-production"
    log_level: str = "INFO"


def load_settings() -> Settings:
    """Build Settings from the environment; unset variables fall back to defaults."""
    admins = os.environ.get("SQUADMARKET_ADMIN_USERNAMES", "")
    return Settings(
        db_path=Path(os.environ.get("SQUADMARKET_DB_PATH") or _default_db_path()),
        initial_budget=_env_int("SQUADMARKET_INITIAL_BUDGET", 5_000_000),
        db_busy_timeout=_env_float("SQUADMARKET_DB_BUSY_TIMEOUT", 5.0),
        tx_retries=_env_int("SQUADMARKET_TX_RETRIES", 3),
        tx_backoff=_env_float("SQUADMARKET_TX_BACKOFF", 0.05),
        provision_attempts=_env_int("SQUADMARKET_PROVISION_ATTEMPTS", 3),
        claim_stale_seconds=_env_float("SQUADMARKET_CLAIM_STALE_SECONDS", 300.0),
        event_lease_seconds=_env_float("SQUADMARKET_EVENT_LEASE_SECONDS", 60.0),
        event_max_deliveries=_env_int("SQUADMARKET_EVENT_MAX_DELIVERIES", 10),
        workers=_env_int("SQUADMARKET_WORKERS", 4),
        poll_interval=_env_float("SQUADMARKET_POLL_INTERVAL", 1.0),
        run_consumer=_env_bool("SQUADMARKET_RUN_CONSUMER", True),
        admin_usernames=frozenset(u.strip() for u in admins.split(",") if u.strip()),
        jwt_secret=os.environ.get("JWT_SECRET_KEY", "squadmarket-dev-secret-change-in-production"),
        log_level=os.environ.get("SQUADMARKET_LOG_LEVEL", "INFO").upper(),
    )


_settings: Settings | None = None


def get_settings() -> Settings:
    """Cached settings for the process."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings


def reset_settings() -> None:
    """Drop the cache so the next get_settings() re-reads the environment."""
    global _settings
    _settings = None
