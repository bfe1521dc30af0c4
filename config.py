import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        log_level: str,
        plan_write_attempts: int,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.log_level = log_level
        self.plan_write_attempts = plan_write_attempts


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("SAVINGS_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "savings.db"
    database_url = os.getenv("SAVINGS_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("SAVINGS_TIMEZONE", "UTC")
    log_level = os.getenv("SAVINGS_LOG_LEVEL", "INFO").upper()
    plan_write_attempts = max(1, int(os.getenv("SAVINGS_PLAN_WRITE_ATTEMPTS", "5")))
    return Settings(
        database_url=database_url,
        timezone=timezone,
        log_level=log_level,
        plan_write_attempts=plan_write_attempts,
    )
