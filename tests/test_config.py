from datetime import timedelta

import pytest
from pydantic import ValidationError

from citizenauth.config import ConfigurationError, Settings, parse_duration


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("15m", timedelta(minutes=15)),
        ("2h", timedelta(hours=2)),
        ("7d", timedelta(days=7)),
        (" 30s ", timedelta(seconds=30)),
    ],
)
def test_parse_duration(raw, expected):
    assert parse_duration(raw) == expected


@pytest.mark.parametrize("raw", ["", "15", "m15", "1.5h", "2w", "-1m"])
def test_parse_duration_rejects_garbage(raw):
    with pytest.raises(ValueError):
        parse_duration(raw)


def test_defaults():
    settings = Settings()
    assert settings.max_login_attempts == 5
    assert settings.lock_timedelta == timedelta(minutes=15)
    assert settings.access_token_timedelta == timedelta(hours=2)
    assert settings.refresh_token_timedelta == timedelta(days=7)
    assert settings.password_change_token_timedelta == timedelta(minutes=15)
    assert settings.password_reset_timedelta == timedelta(hours=1)
    assert settings.min_password_length == 8
    assert settings.password_history_size == 5


def test_invalid_duration_rejected_at_load():
    with pytest.raises(ValidationError):
        Settings(lock_duration="forever")


def test_from_env_reads_environment(monkeypatch):
    monkeypatch.setenv("MAX_LOGIN_ATTEMPTS", "3")
    monkeypatch.setenv("LOCK_DURATION", "30m")
    monkeypatch.setenv("CORS_ALLOW_ORIGINS", "https://a.example, https://b.example,")

    settings = Settings.from_env()

    assert settings.max_login_attempts == 3
    assert settings.lock_timedelta == timedelta(minutes=30)
    assert settings.cors_allow_origins == ["https://a.example", "https://b.example"]


def test_from_env_reads_dotenv(monkeypatch, tmp_path):
    monkeypatch.delenv("PASSWORD_HISTORY_SIZE", raising=False)
    (tmp_path / ".env").write_text("PASSWORD_HISTORY_SIZE=2\n")
    monkeypatch.chdir(tmp_path)
    assert Settings.from_env().password_history_size == 2


class TestRequireSecrets:
    def test_missing_access_secret(self):
        settings = Settings(jwt_refresh_secret="refresh-secret")
        with pytest.raises(ConfigurationError) as exc_info:
            settings.require_secrets()
        assert "JWT_ACCESS_SECRET" in str(exc_info.value)

    def test_both_missing(self):
        with pytest.raises(ConfigurationError) as exc_info:
            Settings().require_secrets()
        assert "JWT_ACCESS_SECRET" in str(exc_info.value)
        assert "JWT_REFRESH_SECRET" in str(exc_info.value)

    def test_identical_secrets(self):
        settings = Settings(jwt_access_secret="same", jwt_refresh_secret="same")
        with pytest.raises(ConfigurationError):
            settings.require_secrets()

    def test_distinct_secrets_pass(self):
        Settings(jwt_access_secret="a-secret", jwt_refresh_secret="r-secret").require_secrets()


def test_runtime_refuses_to_start_without_secrets(monkeypatch):
    from citizenauth.service.runtime import reset_runtime_for_tests

    monkeypatch.delenv("JWT_REFRESH_SECRET", raising=False)
    with pytest.raises(ConfigurationError):
        reset_runtime_for_tests()
