import os
from dataclasses import dataclass, field


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, str(default)))
    except ValueError:
        return default


SHOPIFY_API_VERSION = os.getenv("SHOPIFY_API_VERSION", "2025-04")
BASE_URL = os.getenv("BASE_URL")
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///storesync.db")
STORES_FILE = os.getenv("STORES_FILE")
SCHEDULER_ENABLED = _env_bool("SCHEDULER_ENABLED", True)

HTTP_TIMEOUT = _env_int("HTTP_TIMEOUT", 30)
PAGE_SIZE = _env_int("SYNC_PAGE_SIZE", 50)


@dataclass(frozen=True)
class SyncSettings:
    max_concurrent_syncs: int = 3
    retry_failed_sync: bool = True
    max_retry_attempts: int = 3
    retry_delay: int = 300  # seconds
    inter_rule_delay: float = 2.0
    log_retention_days: int = 30
    webhook_secret: str | None = None
    cron: dict = field(default_factory=lambda: {
        "product": "0 * * * *",
        "inventory": "*/15 * * * *",
        "order": "*/30 * * * *",
        "cleanup": "0 2 * * *",
    })
    tick_seconds: float = 15.0

    @classmethod
    def from_env(cls) -> "SyncSettings":
        return cls(
            max_concurrent_syncs=max(1, _env_int("MAX_CONCURRENT_SYNCS", 3)),
            retry_failed_sync=_env_bool("RETRY_FAILED_SYNC", True),
            max_retry_attempts=_env_int("MAX_RETRY_ATTEMPTS", 3),
            retry_delay=_env_int("RETRY_DELAY", 300),
            inter_rule_delay=_env_float("INTER_RULE_DELAY", 2.0),
            log_retention_days=_env_int("LOG_RETENTION_DAYS", 30),
            webhook_secret=os.getenv("WEBHOOK_SECRET") or None,
            cron={
                "product": os.getenv("PRODUCT_SYNC_CRON", "0 * * * *"),
                "inventory": os.getenv("INVENTORY_SYNC_CRON", "*/15 * * * *"),
                "order": os.getenv("ORDER_SYNC_CRON", "*/30 * * * *"),
                "cleanup": os.getenv("LOG_CLEANUP_CRON", "0 2 * * *"),
            },
            tick_seconds=_env_float("SCHEDULER_TICK_SECONDS", 15.0),
        )
