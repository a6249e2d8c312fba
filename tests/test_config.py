"""Tests for configuration validation.

Settings are built directly so invalid configurations can be checked
without touching the cached instance.
"""

import pytest
from pydantic import ValidationError

from mongogui.core.config import PLACEHOLDER_SECRETS, Settings

JWT_SECRET = "unit-test-jwt-secret-" + "a" * 32
SESSION_SECRET = "unit-test-session-secret-" + "b" * 32


def make_settings(**overrides) -> Settings:
    values = {"jwt_secret": JWT_SECRET, "session_secret": SESSION_SECRET, **overrides}
    return Settings(_env_file=None, **values)


class TestSecretValidation:
    """Tests for JWT_SECRET and SESSION_SECRET."""

    def test_valid_secrets_accepted(self):
        settings = make_settings()
        assert settings.jwt_secret == JWT_SECRET
        assert settings.session_secret == SESSION_SECRET

    @pytest.mark.parametrize("field", ["jwt_secret", "session_secret"])
    def test_short_secret_rejected(self, field):
        with pytest.raises(ValidationError) as exc_info:
            make_settings(**{field: "too-short"})
        assert "32" in str(exc_info.value)

    @pytest.mark.parametrize("placeholder", sorted(PLACEHOLDER_SECRETS))
    def test_placeholder_rejected_in_production(self, placeholder):
        with pytest.raises(ValidationError):
            make_settings(
                environment="production",
                jwt_secret=placeholder,
                cors_origins="https://app.example.com",
            )
        with pytest.raises(ValidationError):
            make_settings(
                environment="production",
                session_secret=placeholder,
                cors_origins="https://app.example.com",
            )

    def test_placeholder_allowed_outside_production(self):
        placeholder = sorted(PLACEHOLDER_SECRETS)[0]
        settings = make_settings(environment="development", jwt_secret=placeholder)
        assert settings.jwt_secret == placeholder


class TestCorsValidation:
    def test_wildcard_rejected_in_production(self):
        with pytest.raises(ValidationError) as exc_info:
            make_settings(environment="production", cors_origins="https://a.example.com,*")
        assert "Wildcard" in str(exc_info.value)

    def test_origins_list_parsing(self):
        settings = make_settings(cors_origins=" https://a.example.com, ,https://b.example.com ")
        assert settings.cors_origins_list == ["https://a.example.com", "https://b.example.com"]


class TestSessionKeySalt:
    """Tests for SESSION_KEY_SALT."""

    def test_hex_salt_decoded(self):
        settings = make_settings(session_key_salt="00" * 16)
        assert settings.session_key_salt_bytes == bytes(16)

    def test_empty_salt(self):
        assert make_settings(session_key_salt="").session_key_salt_bytes is None

    def test_non_hex_salt_rejected(self):
        with pytest.raises(ValidationError):
            make_settings(session_key_salt="not-hex-at-all!!")

    def test_short_salt_rejected(self):
        with pytest.raises(ValidationError):
            make_settings(session_key_salt="00" * 8)


class TestSecurityConfigurationWarnings:
    def test_default_demo_credentials_warn(self):
        warnings = make_settings(session_key_salt="00" * 16).check_security_configuration()
        assert warnings == ["Demo credentials admin/admin are enabled"]

    def test_missing_salt_warns(self):
        warnings = make_settings(
            session_key_salt="", demo_password="something-else"
        ).check_security_configuration()
        assert len(warnings) == 1
        assert "SESSION_KEY_SALT" in warnings[0]

    def test_shared_secret_warns(self):
        settings = make_settings(
            session_key_salt="00" * 16,
            session_secret=JWT_SECRET,
            demo_password="something-else",
        )
        assert settings.check_security_configuration() == [
            "JWT_SECRET and SESSION_SECRET should be different values"
        ]

    def test_debug_in_production_warns(self):
        settings = make_settings(
            environment="production",
            debug=True,
            cors_origins="https://app.example.com",
            session_key_salt="00" * 16,
            demo_password="something-else",
        )
        assert settings.is_production
        assert any("DEBUG" in warning for warning in settings.check_security_configuration())
