import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        default_currency: str,
        default_locale: str,
        scheduler_enabled: bool,
        recent_limit: int,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.default_currency = default_currency
        self.default_locale = default_locale
        self.scheduler_enabled = scheduler_enabled
        self.recent_limit = recent_limit


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("LEDGER_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "ledger.db"
    database_url = os.getenv("LEDGER_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("LEDGER_TIMEZONE", "Asia/Jakarta")
    default_currency = os.getenv("LEDGER_DEFAULT_CURRENCY", "IDR").upper()
    default_locale = os.getenv("LEDGER_DEFAULT_LOCALE", "id-ID")
    scheduler_enabled = _env_flag("LEDGER_SCHEDULER_ENABLED", "true")
    recent_limit = int(os.getenv("LEDGER_RECENT_LIMIT", "10"))
    return Settings(
        database_url=database_url,
        timezone=timezone,
        default_currency=default_currency,
        default_locale=default_locale,
        scheduler_enabled=scheduler_enabled,
        recent_limit=recent_limit,
    )
