# tests/test_config.py
"""Tests for settings and startup validation"""
import pytest

from app.config import Settings, validate_or_warn, warn_on_risky_config


def make_settings(**overrides) -> Settings:
    return Settings(_env_file=None, **overrides)


class TestSettings:
    def test_defaults(self):
        s = make_settings()
        assert s.app_env == "dev"
        assert not s.is_production
        assert s.commission_default_rate == 0.30
        assert s.unbid_monitor_enabled is False

    def test_database_dsn_from_parts(self):
        s = make_settings(pguser="dispatch", pgpassword="pw", pghost="db", pgport=6543, pgdatabase="jobs")
        assert s.database_dsn == "postgresql://dispatch:pw@db:6543/jobs"

    def test_database_url_wins(self):
        s = make_settings(database_url="postgresql://u@h/d")
        assert s.database_dsn == "postgresql://u@h/d"

    def test_invalid_env_rejected(self):
        with pytest.raises(ValueError):
            make_settings(app_env="production")

    def test_env_vars(self, monkeypatch):
        monkeypatch.setenv("COMMISSION_DEFAULT_RATE", "0.2")
        monkeypatch.setenv("UNBID_ALERT_MINUTES", "15")
        s = make_settings()
        assert s.commission_default_rate == 0.2
        assert s.unbid_alert_minutes == 15

    def test_channel_flags(self):
        assert not make_settings().sms_enabled
        assert make_settings(
            twilio_account_sid="AC1", twilio_auth_token="tok", twilio_from_number="+1555",
        ).sms_enabled
        assert make_settings(push_gateway_url="https://push.example.com").push_enabled


class TestDerivedConfig:
    def test_commission_config(self):
        cfg = make_settings(
            commission_default_rate=0.25,
            commission_tolerance_pct=0.1,
            commission_tolerance_amount=10,
            commission_auto_charge=False,
        ).commission_config()
        assert cfg.default_rate == 0.25
        assert cfg.tolerance_pct == 0.1
        assert cfg.tolerance_amount == 10
        assert cfg.auto_charge is False

    def test_breaker_config(self):
        cfg = make_settings(breaker_failure_threshold=2, breaker_cooldown_seconds=5).breaker_config()
        assert cfg.failure_threshold == 2
        assert cfg.cooldown_seconds == 5


class TestValidation:
    def test_production_requires_token_and_database(self):
        s = make_settings(app_env="prod")
        assert sorted(s.validate_required_for_production()) == ["admin_token", "database_url"]
        with pytest.raises(RuntimeError):
            validate_or_warn(s)

    def test_dev_never_requires(self):
        assert make_settings().validate_required_for_production() == []

    def test_warnings(self):
        warnings = warn_on_risky_config(make_settings(commission_default_rate=1.5))
        assert any("admin_token" in w for w in warnings)
        assert any("outside [0, 1]" in w for w in warnings)
        assert any("Twilio" in w for w in warnings)

    def test_slow_sender_warning(self):
        warnings = warn_on_risky_config(make_settings(notify_timeout_seconds=20, notify_max_attempts=3))
        assert any("callers may block" in w for w in warnings)

    def test_prod_wide_open_cors(self):
        s = make_settings(app_env="prod", admin_token="x" * 40, database_url="postgresql://u@h/d")
        assert any("CORS" in w for w in warn_on_risky_config(s))
        validate_or_warn(s)
