"""Unit tests for JWT token creation, decoding, and validation."""

from datetime import timedelta
from unittest.mock import patch

import pytest
from jose import JWTError, jwt

from subsync.auth.jwt import create_access_token, decode_token
from subsync.config import settings


class TestCreateAccessToken:
    """Test access token creation."""

    def test_contains_sub_claim(self):
        token = create_access_token({"sub": "user-abc"})
        payload = decode_token(token)
        assert payload["sub"] == "user-abc"

    def test_contains_iat_and_exp_claims(self):
        token = create_access_token({"sub": "user-123"})
        payload = decode_token(token)
        assert "iat" in payload
        assert "exp" in payload

    def test_custom_expiry_delta(self):
        token = create_access_token({"sub": "user-123"}, expires_delta=timedelta(hours=1))
        payload = decode_token(token)
        assert payload["exp"] - payload["iat"] == 3600


class TestDecodeToken:
    """Test token decoding and rejection."""

    def test_expired_token_rejected(self):
        token = create_access_token({"sub": "user-123"}, expires_delta=timedelta(seconds=-1))
        with pytest.raises(JWTError):
            decode_token(token)

    def test_wrong_secret_rejected(self):
        token = jwt.encode({"sub": "user-123"}, "another-secret", algorithm="HS256")
        with pytest.raises(JWTError):
            decode_token(token)

    def test_garbage_rejected(self):
        with pytest.raises(JWTError):
            decode_token("not.a.valid.jwt")

    def test_audience_enforced_when_configured(self):
        """A configured audience rejects tokens minted for another one."""
        token = create_access_token({"sub": "user-123", "aud": "other-app"})
        with patch.object(settings, "jwt_audience", "subsync"):
            with pytest.raises(JWTError):
                decode_token(token)
