from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Literal

from app.core.dispatch.commission import CommissionConfig
from app.infra.circuit_breaker import BreakerConfig


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Application
    app_env: Literal["dev", "staging", "prod"] = "dev"
    log_level: str = "INFO"
    client_base_url: str = "http://localhost:3000"  # Used to build vendor/customer portal links

    # Database
    expected_schema_version: str = "003_add_job_version.sql"  # Update on deploy when new migrations are added
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
    pg_idle_in_tx_timeout_ms: int = 30000

    # Security
    admin_token: str | None = None  # Bearer token for dispatcher/admin endpoints
    allowed_origins: list[str] = ["*"]

    # Commission
    commission_enabled: bool = True
    commission_default_rate: float = 0.30
    commission_tolerance_pct: float = 0.15  # Under-report flag: relative shortfall
    commission_tolerance_amount: float = 25.0  # Under-report flag: absolute shortfall
    commission_auto_charge: bool = True

    # Outbound notifications (resilient sender)
    notify_timeout_seconds: float = 4.0  # Per attempt, enforced locally
    notify_max_attempts: int = 3
    notify_backoff_seconds: float = 0.5  # Linear: backoff * attempt
    breaker_failure_threshold: int = 5
    breaker_cooldown_seconds: float = 60.0

    # Twilio SMS
    twilio_account_sid: str | None = None
    twilio_auth_token: str | None = None
    twilio_from_number: str | None = None

    # Push gateway
    push_gateway_url: str | None = None  # e.g. https://push.example.com/v1/send
    push_gateway_token: str | None = None

    # Unbid monitor
    unbid_monitor_enabled: bool = False  # Enable explicitly in the worker process
    unbid_monitor_interval_seconds: float = 60.0
    unbid_alert_minutes: int = 10
    unbid_alert_batch: int = 25
    ops_alert_recipient: str = "ops"  # Push topic for dispatcher alerts

    # Mission control
    scorecard_window_days: int = 45
    scorecard_report_window_days: int = 90

    # Monitoring & Metrics
    enable_metrics: bool = True
    enable_request_logging: bool = True

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
            f"postgresql://{self.pguser}:{self.pgpassword}@{self.pghost}:{self.pgport}/{self.pgdatabase}"
        )

    @property
    def sms_enabled(self) -> bool:
        """Check if Twilio SMS is configured"""
        return bool(
            self.twilio_account_sid
            and self.twilio_auth_token
            and self.twilio_from_number
        )

    @property
    def push_enabled(self) -> bool:
        return bool(self.push_gateway_url)

    def commission_config(self) -> CommissionConfig:
        """Immutable commission policy handed to the settlement service."""
        return CommissionConfig(
            enabled=self.commission_enabled,
            default_rate=self.commission_default_rate,
            tolerance_pct=self.commission_tolerance_pct,
            tolerance_amount=self.commission_tolerance_amount,
            auto_charge=self.commission_auto_charge,
        )

    def breaker_config(self) -> BreakerConfig:
        return BreakerConfig(
            failure_threshold=self.breaker_failure_threshold,
            cooldown_seconds=self.breaker_cooldown_seconds,
        )

    def validate_required_for_production(self) -> list[str]:
        """Validate that required settings exist for production"""
        if not self.is_production:
            return []

        missing = []

        required_fields = [
            ("admin_token", self.admin_token),
            ("database_url", self.database_url),
        ]

        for field_name, value in required_fields:
            if not value:
                missing.append(field_name)

        return missing

def warn_on_risky_config(s: "Settings") -> list[str]:
    warnings: list[str] = []

    # --- Admin / Security ---
    if not s.admin_token:
        warnings.append("admin_token is not set (dispatcher endpoints will return 503).")

    if s.is_production and s.allowed_origins == ["*"]:
        warnings.append("prod: allowed_origins=['*'] (CORS is wide open).")

    # --- Commission ---
    if not 0 <= s.commission_default_rate <= 1:
        warnings.append(
            f"commission_default_rate={s.commission_default_rate} is outside [0, 1] and will be clamped."
        )
    if s.commission_enabled and not s.commission_auto_charge:
        warnings.append("commission_auto_charge=False: completed jobs will be settled manually.")

    # --- Provider configuration ---
    if not s.sms_enabled:
        warnings.append("Twilio SMS is not configured (SMS notifications will be queued in the outbox).")
    if not s.push_enabled:
        warnings.append("push_gateway_url is not set (push notifications will be queued in the outbox).")

    # --- Resilient sender ---
    worst_case = s.notify_timeout_seconds * s.notify_max_attempts
    if worst_case > 30:
        warnings.append(
            f"notify_timeout_seconds * notify_max_attempts = {worst_case:.0f}s; "
            "callers may block for that long on a flaky provider."
        )

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
validate_or_warn(settings)
