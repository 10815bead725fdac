"""
Unit tests for the token service.
"""
import logging
from datetime import timedelta

import jwt
import pytest

from panelauth.core.config import Settings
from panelauth.database.models import User
from panelauth.security.errors import (
    ConfigurationError,
    InvalidTokenError,
    TokenExpiredError,
)
from panelauth.security.tokens import DEFAULT_JWT_SECRET, TokenService


@pytest.fixture
def user():
    return User(
        id="user-123",
        username="alice",
        email="alice@example.com",
        password_hash="x",
        role="user",
        permissions=["sites:read"],
    )


class TestTokenService:
    """Test cases for issuing and verifying tokens."""

    def test_access_token_round_trip(self, token_service, user):
        token, _ = token_service.create_access_token(user, "session-1", ["files:read"])

        claims = token_service.verify_access_token(token)

        assert claims.user_id == "user-123"
        assert claims.session_id == "session-1"
        assert claims.username == "alice"
        assert claims.role == "user"
        assert claims.permissions == ["files:read"]
        assert claims.token_type == "access"
        assert claims.expires_at > claims.issued_at

    def test_access_token_defaults_to_user_permissions(self, token_service, user):
        token, _ = token_service.create_access_token(user, "session-1")

        assert token_service.verify_access_token(token).permissions == ["sites:read"]

    def test_refresh_token_carries_minimal_claims(self, token_service, user):
        token, _ = token_service.create_refresh_token(user, "session-1")
        payload = jwt.decode(token, options={"verify_signature": False})

        assert payload["type"] == "refresh"
        assert payload["iss"] == "vpanel-refresh"
        assert "permissions" not in payload
        assert "role" not in payload

    def test_token_type_is_enforced(self, token_service, user):
        pair = token_service.create_token_pair(user, "session-1")

        with pytest.raises(InvalidTokenError):
            token_service.verify_access_token(pair.refresh_token)
        with pytest.raises(InvalidTokenError):
            token_service.verify_refresh_token(pair.access_token)

    def test_pair_tokens_are_unique(self, token_service, user):
        first = token_service.create_token_pair(user, "session-1")
        second = token_service.create_token_pair(user, "session-1")

        assert first.access_token != second.access_token
        assert first.refresh_token != second.refresh_token
        assert first.token_type == "Bearer"
        assert 0 < first.expires_in <= 3600

    def test_expired_token_is_distinguished(self, token_service, user):
        token_service.access_token_expire = timedelta(seconds=-10)
        token, _ = token_service.create_access_token(user, "session-1")

        with pytest.raises(TokenExpiredError):
            token_service.verify_access_token(token)

    def test_wrong_signature_is_invalid(self, token_service, test_settings, user):
        other = TokenService(test_settings, secret="another-secret")
        token, _ = other.create_access_token(user, "session-1")

        with pytest.raises(InvalidTokenError):
            token_service.verify_access_token(token)

    def test_tampered_token_is_invalid(self, token_service, user):
        token, _ = token_service.create_access_token(user, "session-1")
        header, payload, signature = token.split(".")

        with pytest.raises(InvalidTokenError):
            token_service.verify_access_token(f"{header}.{payload}x.{signature}")

    @pytest.mark.parametrize("token", ["", "garbage", "a.b.c"])
    def test_malformed_token(self, token_service, token):
        with pytest.raises(InvalidTokenError):
            token_service.verify(token)

    def test_token_without_session_is_rejected(self, token_service):
        token = jwt.encode(
            {"sub": "u", "user_id": "u", "type": "access", "iss": "vpanel", "iat": 0, "exp": 2 ** 40},
            token_service.secret_key,
            algorithm="HS256",
        )

        with pytest.raises(InvalidTokenError):
            token_service.verify_access_token(token)


class TestSecretResolution:
    """Test cases for signing key configuration."""

    def test_default_secret_outside_production_warns(self, caplog):
        settings = Settings(ENVIRONMENT="development", JWT_SECRET=None, LOG_TO_FILE=False)

        with caplog.at_level(logging.WARNING):
            service = TokenService(settings)

        assert service.secret_key == DEFAULT_JWT_SECRET
        assert "JWT_SECRET is not configured" in caplog.text

    def test_production_requires_secret(self):
        settings = Settings(ENVIRONMENT="production", JWT_SECRET=None, LOG_TO_FILE=False)

        with pytest.raises(ConfigurationError):
            TokenService(settings)

    def test_explicit_secret_wins(self, test_settings):
        assert TokenService(test_settings, secret="override").secret_key == "override"
