import os
from datetime import time
from functools import lru_cache
from pathlib import Path
from typing import Optional


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        daily_run_time: time,
        alert_interval_hours: int,
        budget_alert_cooldown_hours: int,
        store_timeout_secs: float,
        notify_timeout_secs: float,
        smtp_host: str,
        smtp_port: int,
        smtp_user: Optional[str],
        smtp_pass: Optional[str],
        smtp_from: Optional[str],
        currency_symbol: str,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.daily_run_time = daily_run_time
        self.alert_interval_hours = alert_interval_hours
        self.budget_alert_cooldown_hours = budget_alert_cooldown_hours
        self.store_timeout_secs = store_timeout_secs
        self.notify_timeout_secs = notify_timeout_secs
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_pass = smtp_pass
        self.smtp_from = smtp_from
        self.currency_symbol = currency_symbol

    @property
    def smtp_configured(self) -> bool:
        return bool(self.smtp_user and self.smtp_pass)


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("FINANCE_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def parse_run_time(value: str) -> time:
    try:
        hour_str, minute_str = value.strip().split(":", 1)
        return time(int(hour_str), int(minute_str))
    except ValueError as exc:
        raise ValueError(f"Invalid daily run time {value!r}, expected HH:MM") from exc


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "finance.db"
    database_url = os.getenv("FINANCE_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("FINANCE_TIMEZONE", "Europe/Berlin")
    daily_run_time = parse_run_time(os.getenv("FINANCE_DAILY_RUN_TIME", "00:00"))
    alert_interval_hours = int(os.getenv("FINANCE_ALERT_INTERVAL_HOURS", "6"))
    budget_alert_cooldown_hours = int(
        os.getenv("FINANCE_BUDGET_ALERT_COOLDOWN_HOURS", "0")
    )
    store_timeout_secs = float(os.getenv("FINANCE_STORE_TIMEOUT_SECS", "10"))
    notify_timeout_secs = float(os.getenv("FINANCE_NOTIFY_TIMEOUT_SECS", "10"))
    smtp_host = os.getenv("FINANCE_SMTP_HOST", "smtp.gmail.com")
    smtp_port = int(os.getenv("FINANCE_SMTP_PORT", "587"))
    smtp_user = os.getenv("FINANCE_SMTP_USER") or None
    smtp_pass = os.getenv("FINANCE_SMTP_PASS") or None
    smtp_from = os.getenv("FINANCE_SMTP_FROM") or smtp_user
    currency_symbol = os.getenv("FINANCE_CURRENCY_SYMBOL", "€")
    return Settings(
        database_url=database_url,
        timezone=timezone,
        daily_run_time=daily_run_time,
        alert_interval_hours=alert_interval_hours,
        budget_alert_cooldown_hours=budget_alert_cooldown_hours,
        store_timeout_secs=store_timeout_secs,
        notify_timeout_secs=notify_timeout_secs,
        smtp_host=smtp_host,
        smtp_port=smtp_port,
        smtp_user=smtp_user,
        smtp_pass=smtp_pass,
        smtp_from=smtp_from,
        currency_symbol=currency_symbol,
    )
