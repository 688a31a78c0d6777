"""
Tests for bearer token verification.
"""

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from unittest.mock import MagicMock

import pytest
import requests

from pixelmap.auth import PasskeyVerifier, bearer_token
from pixelmap.error_handling import AuthenticationError, PersistenceError


def fake_session(status=200, payload=None, error=None):
    session = MagicMock()
    if error is not None:
        session.get.side_effect = error
        return session
    response = MagicMock()
    response.ok = status < 400
    response.status_code = status
    response.json.return_value = payload
    session.get.return_value = response
    return session


class TestPasskeyVerifier:
    """Test token verification against the identity service."""

    def test_valid_token(self):
        session = fake_session(payload={"id": 42, "username": "ada", "email": "ada@example.com"})
        verifier = PasskeyVerifier("https://auth.example.com/", session=session)

        user = verifier.verify("tok")

        assert user == {"id": "42", "username": "ada", "email": "ada@example.com", "displayName": "ada"}
        args, kwargs = session.get.call_args
        assert args[0] == "https://auth.example.com/api/auth/me"
        assert kwargs["headers"] == {"Authorization": "Bearer tok"}

    def test_nested_user_profile(self):
        session = fake_session(payload={"user": {"id": "u1", "username": "bo", "display_name": "Bo"}})
        user = PasskeyVerifier("https://auth", session=session).verify("tok")
        assert user["id"] == "u1"
        assert user["displayName"] == "Bo"

    def test_rejected_token(self):
        session = fake_session(status=401, payload={"error": "nope"})
        with pytest.raises(AuthenticationError) as exc_info:
            PasskeyVerifier("https://auth", session=session).verify("bad")
        assert exc_info.value.status_code == 401

    def test_missing_configuration(self):
        with pytest.raises(PersistenceError) as exc_info:
            PasskeyVerifier(None, session=fake_session()).verify("tok")
        assert exc_info.value.status_code == 500
        assert "not configured" in str(exc_info.value)

    def test_unreachable_service(self):
        session = fake_session(error=requests.ConnectionError("down"))
        with pytest.raises(PersistenceError) as exc_info:
            PasskeyVerifier("https://auth", session=session).verify("tok")
        assert exc_info.value.status_code == 500
        assert not isinstance(exc_info.value, AuthenticationError)

    def test_response_without_id(self):
        session = fake_session(payload={"username": "ghost"})
        with pytest.raises(AuthenticationError):
            PasskeyVerifier("https://auth", session=session).verify("tok")


class TestBearerToken:
    """Test Authorization header parsing."""

    def test_extracts_token(self):
        assert bearer_token("Bearer abc.def") == "abc.def"

    @pytest.mark.parametrize("header", [None, "", "Basic abc", "bearer abc"])
    def test_missing_or_malformed_header(self, header):
        with pytest.raises(AuthenticationError):
            bearer_token(header)
