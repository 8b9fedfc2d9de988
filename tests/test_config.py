import pytest

from portal_config import load_settings


def test_defaults(monkeypatch):
    for name in ("DB_BACKEND", "DUPLICATE_KEY", "RETRY_ATTEMPTS", "SECRET_KEY"):
        monkeypatch.delenv(name, raising=False)
    settings = load_settings()
    assert settings.db_backend == "memory"
    assert settings.duplicate_key == "roll_number"
    assert settings.retry_attempts == 3
    assert settings.secret_key


def test_retry_attempts_below_one_rejected(monkeypatch):
    monkeypatch.setenv("DB_BACKEND", "memory")
    monkeypatch.setenv("RETRY_ATTEMPTS", "0")
    with pytest.raises(RuntimeError):
        load_settings()


def test_unknown_duplicate_key_rejected(monkeypatch):
    monkeypatch.setenv("DB_BACKEND", "memory")
    monkeypatch.setenv("DUPLICATE_KEY", "phone")
    with pytest.raises(RuntimeError):
        load_settings()
