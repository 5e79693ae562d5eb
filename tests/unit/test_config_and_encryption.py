"""Settings validation and credential encryption tests."""

import pytest
from pydantic import SecretStr, ValidationError

from crm_sync.core.config import Settings
from crm_sync.infrastructure.external.oauth.encryption import CredentialEncryptor


def test_missing_encryption_secret_fails_validation(monkeypatch):
    monkeypatch.delenv("CREDENTIAL_ENCRYPTION_SECRET", raising=False)
    with pytest.raises(ValidationError, match="CREDENTIAL_ENCRYPTION_SECRET"):
        Settings(_env_file=None)


def test_missing_salt_fails_validation(monkeypatch):
    monkeypatch.delenv("ENCRYPTION_SALT", raising=False)
    with pytest.raises(ValidationError, match="ENCRYPTION_SALT"):
        Settings(_env_file=None)


@pytest.mark.parametrize("name", ["sync_max_messages", "reconcile_max_attempts", "sync_window_days_back"])
def test_non_positive_limits_are_rejected(name):
    with pytest.raises(ValidationError, match=name.upper()):
        Settings(_env_file=None, **{name: 0})


def test_sql_configured_follows_database_url():
    assert Settings(_env_file=None, database_url="").sql_configured is False
    assert Settings(
        _env_file=None, database_url="postgresql+asyncpg://u:p@localhost/crm"
    ).sql_configured is True


def test_encrypt_round_trip_is_not_plaintext(settings):
    encryptor = CredentialEncryptor(settings)
    stored = encryptor.encrypt("ya29.secret-token")

    assert "secret-token" not in stored
    assert encryptor.decrypt(stored) == "ya29.secret-token"
    assert encryptor.encrypt_optional(None) is None
    assert encryptor.decrypt_optional("") is None


def test_decrypt_with_other_key_fails(settings):
    stored = CredentialEncryptor(settings).encrypt("token")
    other = settings.model_copy(update={"encryption_salt": SecretStr("another-salt")})

    with pytest.raises(ValueError, match="Failed to decrypt"):
        CredentialEncryptor(other).decrypt(stored)
