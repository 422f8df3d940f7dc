import pytest
from pydantic import ValidationError

from arenaauth.config import Settings, get_settings, reset_settings_cache


def test_policy_defaults(settings):
    assert settings.lockout_threshold == 5
    assert settings.session_ttl_minutes == 7 * 24 * 60
    assert settings.verification_ttl_minutes == 60
    assert settings.risk_failure_weight == 10
    assert settings.risk_failure_cap == 50
    assert settings.risk_new_ip_weight == 25
    assert settings.risk_window_hours == 24


def test_env_overrides(monkeypatch, encryption_key):
    monkeypatch.setenv("SECRET_ENCRYPTION_KEY", encryption_key)
    monkeypatch.setenv("LOCKOUT_THRESHOLD", "3")
    monkeypatch.setenv("SESSION_TTL_MINUTES", "30")
    monkeypatch.setenv("AUDIT_AUTHENTICATED_ACCESS", "false")

    settings = Settings.from_env()

    assert settings.lockout_threshold == 3
    assert settings.session_ttl_minutes == 30
    assert settings.audit_authenticated_access is False


def test_get_settings_is_cached(monkeypatch, encryption_key):
    monkeypatch.setenv("SECRET_ENCRYPTION_KEY", encryption_key)
    first = get_settings()

    assert get_settings() is first
    reset_settings_cache()
    assert get_settings() is not first


@pytest.mark.parametrize(
    "field", ["lockout_threshold", "session_ttl_minutes", "verification_ttl_minutes"]
)
def test_non_positive_policy_rejected(field, encryption_key):
    with pytest.raises(ValidationError):
        Settings(secret_encryption_key=encryption_key, **{field: 0})


def test_negative_risk_weight_rejected(encryption_key):
    with pytest.raises(ValidationError):
        Settings(secret_encryption_key=encryption_key, risk_new_ip_weight=-1)


def test_generated_key_persisted(monkeypatch, tmp_path):
    monkeypatch.setenv("ARENAAUTH_STATE_DIR", str(tmp_path))
    monkeypatch.delenv("SECRET_ENCRYPTION_KEY", raising=False)

    first = Settings()
    second = Settings()

    assert first.secret_encryption_key
    assert first.secret_encryption_key == second.secret_encryption_key
    assert (tmp_path / ".secret_key").read_text() == first.secret_encryption_key


def test_settings_carry_only_live_options(encryption_key):
    settings = Settings(secret_encryption_key=encryption_key)

    assert "test_mode" not in Settings.model_fields
    assert not hasattr(settings, "build_cipher")
