"""Tests for AuthService token issuance, rotation and revocation."""

from datetime import timedelta

import jwt
import pytest

from mongogui.core.errors import InvalidTokenError, TokenExpiredError, ValidationError
from mongogui.services.auth import (
    AuthService,
    hash_password,
    verify_password,
)


def _decode_unverified(token: str) -> dict:
    return jwt.decode(token, options={"verify_signature": False})


class TestGenerateTokens:
    """Tests for token pair generation."""

    def test_generate_then_validate_returns_subject(self, auth_service):
        """Test that a freshly issued access token validates to its subject."""
        pair = auth_service.generate_tokens({"subject_id": "u1"})
        claims = auth_service.validate_token(pair.access_token)
        assert claims["sub"] == "u1"
        assert claims["type"] == "access"

    def test_token_pair_shape(self, auth_service, settings):
        pair = auth_service.generate_tokens({"subject_id": "u1"})
        assert pair.token_type == "Bearer"
        assert pair.expires_in == settings.jwt_access_token_expire_minutes * 60
        assert set(pair.to_dict()) == {"access_token", "refresh_token", "expires_in", "token_type"}

    def test_claims_carry_issuer_and_audience(self, auth_service, settings):
        pair = auth_service.generate_tokens({"subject_id": "u1"})
        access = _decode_unverified(pair.access_token)
        refresh = _decode_unverified(pair.refresh_token)
        for claims in (access, refresh):
            assert claims["iss"] == settings.jwt_issuer
            assert claims["aud"] == settings.jwt_audience
        assert refresh["type"] == "refresh"
        assert "fid" in refresh

    def test_username_falls_back_as_subject(self, auth_service):
        pair = auth_service.generate_tokens({"username": "alice"})
        claims = auth_service.validate_token(pair.access_token)
        assert claims["sub"] == "alice"
        assert claims["username"] == "alice"

    def test_missing_subject_rejected(self, auth_service):
        with pytest.raises(ValidationError):
            auth_service.generate_tokens({"role": "viewer"})

    def test_reserved_claims_cannot_be_overridden(self, auth_service):
        pair = auth_service.generate_tokens({"subject_id": "u1", "sub": "evil", "type": "refresh"})
        claims = auth_service.validate_token(pair.access_token)
        assert claims["sub"] == "u1"
        assert claims["type"] == "access"

    def test_tokens_issued_together_are_distinct(self, auth_service):
        first = auth_service.generate_tokens({"subject_id": "u1"})
        second = auth_service.generate_tokens({"subject_id": "u1"})
        assert first.access_token != second.access_token
        assert first.refresh_token != second.refresh_token

    def test_refresh_record_expiry_matches_lifetime(self, auth_service, clock):
        pair = auth_service.generate_tokens({"subject_id": "u1"})
        family_id = _decode_unverified(pair.refresh_token)["fid"]
        record = auth_service.refresh_tokens.get(family_id)
        assert record is not None
        assert record.active
        assert record.created_at == clock.now
        assert record.expires_at == record.created_at + timedelta(days=7)


class TestValidateToken:
    """Tests for access token validation failures."""

    def test_expired_token_raises_token_expired(self, auth_service, clock):
        clock.advance(minutes=-20)
        pair = auth_service.generate_tokens({"subject_id": "u1"})
        with pytest.raises(TokenExpiredError):
            auth_service.validate_token(pair.access_token)

    def test_refresh_token_is_not_an_access_token(self, auth_service):
        pair = auth_service.generate_tokens({"subject_id": "u1"})
        with pytest.raises(InvalidTokenError):
            auth_service.validate_token(pair.refresh_token)

    def test_wrong_signature_rejected(self, auth_service, settings):
        other = AuthService(settings.model_copy(update={"jwt_secret": "x" * 48}))
        pair = other.generate_tokens({"subject_id": "u1"})
        with pytest.raises(InvalidTokenError):
            auth_service.validate_token(pair.access_token)

    def test_wrong_audience_rejected(self, auth_service, settings):
        other = AuthService(settings.model_copy(update={"jwt_audience": "someone-else"}))
        pair = other.generate_tokens({"subject_id": "u1"})
        with pytest.raises(InvalidTokenError):
            auth_service.validate_token(pair.access_token)

    def test_wrong_issuer_rejected(self, auth_service, settings):
        other = AuthService(settings.model_copy(update={"jwt_issuer": "another-app"}))
        pair = other.generate_tokens({"subject_id": "u1"})
        with pytest.raises(InvalidTokenError):
            auth_service.validate_token(pair.access_token)

    def test_garbage_rejected(self, auth_service):
        with pytest.raises(InvalidTokenError):
            auth_service.validate_token("not-a-jwt")

    def test_empty_token_rejected(self, auth_service):
        with pytest.raises(InvalidTokenError):
            auth_service.validate_token("")


class TestRefreshAccessToken:
    """Tests for refresh token rotation."""

    def test_refresh_returns_new_pair(self, auth_service):
        pair = auth_service.generate_tokens({"subject_id": "u1"})
        new_pair = auth_service.refresh_access_token(pair.refresh_token)
        assert new_pair.refresh_token != pair.refresh_token
        assert auth_service.validate_token(new_pair.access_token)["sub"] == "u1"

    def test_refresh_token_is_single_use(self, auth_service):
        """Test that replaying a consumed refresh token fails."""
        pair = auth_service.generate_tokens({"subject_id": "u1"})
        auth_service.refresh_access_token(pair.refresh_token)
        with pytest.raises((InvalidTokenError, TokenExpiredError)):
            auth_service.refresh_access_token(pair.refresh_token)

    def test_rotation_deletes_old_family(self, auth_service):
        pair = auth_service.generate_tokens({"subject_id": "u1"})
        old_family = _decode_unverified(pair.refresh_token)["fid"]
        new_pair = auth_service.refresh_access_token(pair.refresh_token)
        new_family = _decode_unverified(new_pair.refresh_token)["fid"]

        assert auth_service.refresh_tokens.get(old_family) is None
        assert auth_service.refresh_tokens.get(new_family) is not None
        assert new_family != old_family

    def test_refresh_carries_extra_claims(self, auth_service):
        pair = auth_service.generate_tokens({"subject_id": "u1", "username": "alice"})
        new_pair = auth_service.refresh_access_token(pair.refresh_token)
        assert auth_service.validate_token(new_pair.access_token)["username"] == "alice"

    def test_access_token_cannot_refresh(self, auth_service):
        pair = auth_service.generate_tokens({"subject_id": "u1"})
        with pytest.raises(InvalidTokenError):
            auth_service.refresh_access_token(pair.access_token)

    def test_expired_record_raises_and_is_deleted(self, auth_service, clock):
        pair = auth_service.generate_tokens({"subject_id": "u1"})
        family_id = _decode_unverified(pair.refresh_token)["fid"]
        clock.advance(days=8)

        with pytest.raises(TokenExpiredError):
            auth_service.refresh_access_token(pair.refresh_token)
        assert auth_service.refresh_tokens.get(family_id) is None

    def test_blacklisted_refresh_token_rejected(self, auth_service):
        pair = auth_service.generate_tokens({"subject_id": "u1"})
        assert auth_service.blacklist_token(pair.refresh_token) is True
        with pytest.raises(InvalidTokenError):
            auth_service.refresh_access_token(pair.refresh_token)

    def test_empty_refresh_token_rejected(self, auth_service):
        with pytest.raises(InvalidTokenError):
            auth_service.refresh_access_token("")


class TestBlacklistAndLogout:
    """Tests for revocation."""

    def test_blacklisted_access_token_rejected(self, auth_service):
        pair = auth_service.generate_tokens({"subject_id": "u1"})
        assert auth_service.blacklist_token(pair.access_token) is True
        with pytest.raises(InvalidTokenError):
            auth_service.validate_token(pair.access_token)

    def test_undecodable_token_not_blacklisted(self, auth_service):
        assert auth_service.blacklist_token("garbage") is False
        assert auth_service.blacklist.count() == 0

    def test_blacklisting_refresh_token_deactivates_record(self, auth_service):
        pair = auth_service.generate_tokens({"subject_id": "u1"})
        family_id = _decode_unverified(pair.refresh_token)["fid"]
        auth_service.blacklist_token(pair.refresh_token)
        assert auth_service.refresh_tokens.get(family_id).active is False

    def test_blacklist_entry_expires_with_token(self, auth_service, clock):
        """Test that blacklist entries live only as long as the token itself."""
        pair = auth_service.generate_tokens({"subject_id": "u1"})
        auth_service.blacklist_token(pair.access_token)
        assert auth_service.blacklist.count() == 1

        clock.advance(minutes=16)
        assert auth_service.blacklist.count() == 0

    def test_logout_user_deactivates_all_families(self, auth_service):
        first = auth_service.generate_tokens({"subject_id": "u1"})
        second = auth_service.generate_tokens({"subject_id": "u1"})
        other = auth_service.generate_tokens({"subject_id": "u2"})

        assert auth_service.logout_user("u1") == 2
        for pair in (first, second):
            with pytest.raises(InvalidTokenError):
                auth_service.refresh_access_token(pair.refresh_token)
        assert auth_service.refresh_access_token(other.refresh_token).access_token

    def test_logout_user_without_tokens(self, auth_service):
        assert auth_service.logout_user("nobody") == 0


class TestCleanupAndStats:
    """Tests for expiry sweep and statistics."""

    def test_cleanup_removes_expired_records(self, auth_service, clock):
        auth_service.generate_tokens({"subject_id": "u1"})
        auth_service.generate_tokens({"subject_id": "u2"})
        assert auth_service.cleanup_expired_tokens() == 0

        clock.advance(days=8)
        assert auth_service.cleanup_expired_tokens() == 2
        assert auth_service.refresh_tokens.count() == 0

    def test_token_stats(self, auth_service):
        pair = auth_service.generate_tokens({"subject_id": "u1"})
        auth_service.generate_tokens({"subject_id": "u2"})
        auth_service.blacklist_token(pair.refresh_token)

        stats = auth_service.get_token_stats()
        assert stats == {
            "active_refresh_tokens": 1,
            "total_refresh_tokens": 2,
            "blacklisted_tokens": 1,
        }


class TestExtractTokenFromHeader:
    def test_bearer_header(self):
        assert AuthService.extract_token_from_header("Bearer abc.def") == "abc.def"

    def test_missing_or_malformed_header(self):
        assert AuthService.extract_token_from_header(None) is None
        assert AuthService.extract_token_from_header("") is None
        assert AuthService.extract_token_from_header("Basic abc") is None
        assert AuthService.extract_token_from_header("Bearer ") is None


class TestPasswordHashing:
    """Tests for Argon2id password hashing."""

    def test_hash_and_verify(self):
        password_hash = hash_password("correct horse battery staple")
        assert password_hash.startswith("$argon2id$")
        assert verify_password("correct horse battery staple", password_hash)
        assert not verify_password("wrong", password_hash)

    def test_hashes_are_salted(self):
        assert hash_password("same") != hash_password("same")

    def test_invalid_hash_returns_false(self):
        assert verify_password("anything", "not-a-hash") is False

    def test_static_helpers_delegate(self):
        password_hash = AuthService.hash_password("pw")
        assert AuthService.verify_password("pw", password_hash)
