import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        session_secret: str,
        session_max_age_hours: int,
        scheduler_secret: str,
        scheduler_enabled: bool,
        reset_timeout_secs: float,
        voucher_name_marker: str,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.session_secret = session_secret
        self.session_max_age_hours = session_max_age_hours
        self.scheduler_secret = scheduler_secret
        self.scheduler_enabled = scheduler_enabled
        self.reset_timeout_secs = reset_timeout_secs
        self.voucher_name_marker = voucher_name_marker


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("CARDS_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "cards.db"
    database_url = os.getenv("CARDS_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("CARDS_TIMEZONE", "America/Sao_Paulo")
    session_secret = os.getenv(
        "CARDS_SESSION_SECRET",
        "5d0f3c6a1be94e7f9b2a4c8d7e6f1a2b3c4d5e6f7a8b9c0d1e2f3a4b5c6d7e8f",
    )
    session_max_age_hours = int(os.getenv("CARDS_SESSION_MAX_AGE_HOURS", "24"))
    scheduler_secret = os.getenv("CARDS_SCHEDULER_SECRET", "scheduler-token")
    scheduler_enabled = _env_flag("CARDS_SCHEDULER_ENABLED", "1")
    reset_timeout_secs = float(os.getenv("CARDS_RESET_TIMEOUT_SECS", "30"))
    voucher_name_marker = os.getenv("CARDS_VOUCHER_NAME_MARKER", "[Vale Alimentação]")
    return Settings(
        database_url=database_url,
        timezone=timezone,
        session_secret=session_secret,
        session_max_age_hours=session_max_age_hours,
        scheduler_secret=scheduler_secret,
        scheduler_enabled=scheduler_enabled,
        reset_timeout_secs=reset_timeout_secs,
        voucher_name_marker=voucher_name_marker,
    )
