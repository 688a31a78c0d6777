"""
Bearer token verification against the external passkey identity service.
"""

import logging
from typing import Any, Dict, Optional

import requests
from fastapi import Header

from .error_handling import AuthenticationError, PersistenceError

logger = logging.getLogger(__name__)

class PasskeyVerifier:
    """Resolves a bearer token to a user by calling {base_url}/api/auth/me."""

    def __init__(self, base_url: Optional[str], timeout: float = 10.0,
                 session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip("/") if base_url else None
        self.timeout = timeout
        self.session = session or requests.Session()

    def verify(self, token: str) -> Dict[str, Any]:
        """
        Returns:
            dict: id, username, email and displayName of the token's owner

        Raises:
            AuthenticationError: If the identity service rejects the token
            PersistenceError: If the service is not configured or unreachable (500)
        """
        if not self.base_url:
            logger.error("PASSKEY_API_URL not configured")
            raise PersistenceError("Auth service not configured", 500)

        try:
            response = self.session.get(f"{self.base_url}/api/auth/me",
                                        headers={"Authorization": f"Bearer {token}"},
                                        timeout=self.timeout)
        except requests.RequestException as e:
            logger.error(f"Auth verification error: {e}")
            raise PersistenceError("Authentication failed", 500)

        if not response.ok:
            logger.info(f"Identity service rejected token: {response.status_code}")
            raise AuthenticationError("Invalid token", 401)

        try:
            data = response.json()
        except ValueError:
            raise PersistenceError("Authentication failed", 500)

        # Some identity responses nest the profile under "user"
        user = data.get("user", data) if isinstance(data, dict) else {}
        if not user.get("id"):
            raise AuthenticationError("Invalid token", 401)

        username = user.get("username") or str(user["id"])
        return {
            "id": str(user["id"]),
            "username": username,
            "email": user.get("email"),
            "displayName": user.get("displayName") or user.get("display_name") or username,
        }

def bearer_token(authorization: Optional[str] = Header(None)) -> str:
    """FastAPI dependency extracting the token from an Authorization: Bearer header."""
    if not authorization or not authorization.startswith("Bearer "):
        raise AuthenticationError("No token provided", 401)
    return authorization[len("Bearer "):]
