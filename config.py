import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        default_anchor_day: int,
        max_execution_retries: int,
        max_catch_up: int,
        scheduler_enabled: bool,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.default_anchor_day = default_anchor_day
        self.max_execution_retries = max_execution_retries
        self.max_catch_up = max_catch_up
        self.scheduler_enabled = scheduler_enabled


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("FINANCE_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "finance.db"
    database_url = os.getenv("FINANCE_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("FINANCE_TIMEZONE", "Europe/Rome")
    default_anchor_day = int(os.getenv("FINANCE_DEFAULT_ANCHOR_DAY", "1"))
    if not 1 <= default_anchor_day <= 31:
        raise ValueError("FINANCE_DEFAULT_ANCHOR_DAY must be between 1 and 31")
    max_execution_retries = int(os.getenv("FINANCE_MAX_EXECUTION_RETRIES", "3"))
    max_catch_up = int(os.getenv("FINANCE_MAX_CATCH_UP", "366"))
    scheduler_enabled = _env_flag("FINANCE_SCHEDULER_ENABLED", "1")
    return Settings(
        database_url=database_url,
        timezone=timezone,
        default_anchor_day=default_anchor_day,
        max_execution_retries=max_execution_retries,
        max_catch_up=max_catch_up,
        scheduler_enabled=scheduler_enabled,
    )
