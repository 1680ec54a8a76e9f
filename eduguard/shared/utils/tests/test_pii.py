"""Tests for identifier hashing used in application logs."""
import pytest

from eduguard.shared.utils import pii
from eduguard.shared.utils.pii import (
    configure_pii_salt,
    hash_pii,
    is_pii_salt_configured,
    log_safe_identifier,
)

TEST_SALT = "test_salt_that_is_at_least_32_characters_long"


@pytest.fixture
def unconfigured_salt(monkeypatch):
    monkeypatch.setattr(pii, "_PII_SALT", None)


class TestConfigurePiiSalt:
    def test_short_salt_rejected(self):
        with pytest.raises(ValueError):
            configure_pii_salt("too_short")

    def test_empty_salt_rejected(self):
        with pytest.raises(ValueError):
            configure_pii_salt("")

    def test_valid_salt(self):
        configure_pii_salt(TEST_SALT)

        assert is_pii_salt_configured() is True


class TestHashPii:
    def test_requires_salt(self, unconfigured_salt):
        with pytest.raises(RuntimeError):
            hash_pii("203.0.113.7")

    def test_deterministic(self):
        configure_pii_salt(TEST_SALT)

        assert hash_pii("user-42") == hash_pii("user-42")
        assert len(hash_pii("user-42")) == 64

    def test_salt_changes_digest(self):
        configure_pii_salt(TEST_SALT)
        first = hash_pii("user-42")
        configure_pii_salt("another_salt_that_is_also_32_chars_long")

        assert hash_pii("user-42") != first


class TestLogSafeIdentifier:
    def test_unknown_passthrough(self, unconfigured_salt):
        assert log_safe_identifier("unknown") == "unknown"
        assert log_safe_identifier(None) == "unknown"

    def test_truncated_hash(self):
        configure_pii_salt(TEST_SALT)

        value = log_safe_identifier("203.0.113.7")

        assert len(value) == 16
        assert value == hash_pii("203.0.113.7")[:16]
