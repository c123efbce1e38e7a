from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Literal

# Unbid monitor defaults (used when env values are missing, zero or garbage)
DEFAULT_UNBID_ALERT_MINUTES = 10
DEFAULT_UNBID_MONITOR_INTERVAL_MS = 60_000
DEFAULT_UNBID_ALERT_BATCH = 25


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Application
    app_env: Literal["dev", "staging", "prod"] = "dev"
    run_mode: Literal["all", "web", "worker"] = "all"
    log_level: str = "INFO"

    # Storage
    # "memory"   - process-local store (dev / tests only, no cross-process CAS)
    # "postgres" - asyncpg-backed store, conditional UPDATEs give CAS semantics
    store_backend: Literal["memory", "postgres"] = "memory"
    expected_schema_version: str = "002_capabilities.sql"  # Update on deploy when new migrations are added
    database_url: str | None = None
    pghost: str = "localhost"
    pgport: int = 5432
    pguser: str = "postgres"
    pgpassword: str = ""
    pgdatabase: str = "postgres"
    pg_pool_min: int = 2
    pg_pool_max: int = 20
    pg_connect_timeout: int = 5
    pg_statement_timeout_ms: int = 30000

    # Security
    admin_token: str | None = None
    allowed_origins: list[str] = ["*"]
    rate_limit_per_minute: int = 60  # Public token endpoints (bids, customer pages)

    # Public links
    public_base_url: str = "http://localhost:3000"  # Client app origin used to build status/vendor/customer links

    # Unbid Monitor
    disable_unbid_alerts: bool = False
    unbid_alert_minutes: float = DEFAULT_UNBID_ALERT_MINUTES      # Grace window before a bid-less job is escalated
    unbid_monitor_interval_ms: int = DEFAULT_UNBID_MONITOR_INTERVAL_MS
    unbid_alert_batch: int = DEFAULT_UNBID_ALERT_BATCH            # Candidates examined per tick

    # Alert delivery
    # "log"      - write alerts to the application log only
    # "telegram" - send via Telegram Bot API (requires bot token + chat id)
    alert_channel: Literal["log", "telegram"] = "log"
    telegram_bot_token: str | None = None
    telegram_chat_id: str | None = None

    # Monitoring
    enable_metrics: bool = True
    enable_request_logging: bool = True

    @field_validator("unbid_alert_minutes", mode="before")
    @classmethod
    def _alert_minutes_fallback(cls, v):
        return _positive_or(v, DEFAULT_UNBID_ALERT_MINUTES, float)

    @field_validator("unbid_monitor_interval_ms", mode="before")
    @classmethod
    def _interval_fallback(cls, v):
        return _positive_or(v, DEFAULT_UNBID_MONITOR_INTERVAL_MS, int)

    @field_validator("unbid_alert_batch", mode="before")
    @classmethod
    def _batch_fallback(cls, v):
        return _positive_or(v, DEFAULT_UNBID_ALERT_BATCH, int)

    @property
    def is_production(self) -> bool:
        return self.app_env == "prod"

    @property
    def is_staging(self) -> bool:
        return self.app_env == "staging"

    @property
    def database_dsn(self) -> str:
        if self.database_url:
            return self.database_url

        return (
            f"postgresql://{self.pguser}:{self.pgpassword}"
            f"@{self.pghost}:{self.pgport}/{self.pgdatabase}"
        )

    @property
    def unbid_alert_window_seconds(self) -> float:
        return self.unbid_alert_minutes * 60

    @property
    def unbid_monitor_interval_seconds(self) -> float:
        return self.unbid_monitor_interval_ms / 1000

    @property
    def telegram_enabled(self) -> bool:
        return bool(self.telegram_bot_token and self.telegram_chat_id)

    def validate_required_for_production(self) -> list[str]:
        """Validate that required settings exist for production"""
        if not self.is_production:
            return []

        missing = []

        required_fields = [
            ("admin_token", self.admin_token),
        ]
        if self.alert_channel == "telegram":
            required_fields.extend([
                ("telegram_bot_token", self.telegram_bot_token),
                ("telegram_chat_id", self.telegram_chat_id),
            ])

        for field_name, value in required_fields:
            if not value:
                missing.append(field_name)

        if self.store_backend != "postgres":
            missing.append("store_backend=postgres")

        return missing


def _positive_or(value, fallback, cast):
    """Coerce ``value`` to a positive number, else return ``fallback``."""
    try:
        num = cast(float(value))
    except (TypeError, ValueError):
        return fallback
    return num if num > 0 else fallback


def warn_on_risky_config(s: "Settings") -> list[str]:
    warnings: list[str] = []

    if s.is_production and s.allowed_origins == ["*"]:
        warnings.append("prod: allowed_origins=['*'] (CORS is wide open).")

    if s.store_backend == "memory" and s.run_mode != "all":
        warnings.append(
            f"store_backend=memory with run_mode={s.run_mode}: web and worker processes "
            "will not share state."
        )

    if s.disable_unbid_alerts:
        warnings.append("disable_unbid_alerts=True: bid-less jobs will not be escalated.")

    if s.alert_channel == "telegram" and not s.telegram_enabled:
        warnings.append("alert_channel=telegram but telegram_bot_token/telegram_chat_id is missing.")

    if not s.admin_token:
        warnings.append("admin_token is not set (admin endpoints will return 503).")

    return warnings


def validate_or_warn(s: "Settings") -> None:
    """
    In prod: enforce required settings (hard fail).
    In non-prod: warn only.
    """
    missing = s.validate_required_for_production()

    if missing:
        raise RuntimeError(f"Missing required settings for production: {', '.join(missing)}")

    for msg in warn_on_risky_config(s):
        print(f"[WARN][config] {msg}")


settings = Settings()
