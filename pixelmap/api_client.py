"""
REST client for the PixelMap backend (maps, memories, photos).
"""

import logging
from typing import Any, Dict, List, Optional

import requests

from .error_handling import AuthenticationError, PersistenceError

logger = logging.getLogger(__name__)

class PersistenceClient:
    """
    Thin wrapper over the backend REST surface.

    Every call raises PersistenceError (AuthenticationError for 401) when
    the server answers with a non-2xx status or cannot be reached.
    """

    def __init__(self, base_url: str, token: Optional[str] = None, timeout: float = 30.0,
                 session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout = timeout
        self.session = session or requests.Session()

    def _request(self, method: str, endpoint: str, payload: Optional[dict] = None) -> Any:
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"

        url = f"{self.base_url}{endpoint}"
        logger.debug(f"API Request: {method} {url}")
        try:
            response = self.session.request(method, url, json=payload, headers=headers,
                                            timeout=self.timeout)
        except requests.RequestException as e:
            raise PersistenceError(f"Request failed: {e}")

        logger.debug(f"API Response: {response.status_code}")
        if not response.ok:
            try:
                message = response.json().get("error") or "Request failed"
            except (ValueError, AttributeError):
                message = "Request failed"
            logger.error(f"API Error: {response.status_code} {message}")
            if response.status_code == 401:
                raise AuthenticationError(message, response.status_code)
            raise PersistenceError(message, response.status_code)

        return response.json()

    # Auth
    def sync_user(self) -> Dict[str, Any]:
        return self._request("POST", "/api/auth/sync")

    def get_me(self) -> Dict[str, Any]:
        return self._request("GET", "/api/auth/me")

    # Maps
    def get_maps(self) -> List[Dict[str, Any]]:
        return self._request("GET", "/api/maps")

    def get_map(self, map_id: int) -> Dict[str, Any]:
        return self._request("GET", f"/api/maps/{map_id}")

    def create_map(self, name: str, is_public: bool = False) -> Dict[str, Any]:
        return self._request("POST", "/api/maps", {"name": name, "is_public": is_public})

    def update_map(self, map_id: int, **fields) -> Dict[str, Any]:
        return self._request("PUT", f"/api/maps/{map_id}", fields)

    def delete_map(self, map_id: int) -> Dict[str, Any]:
        return self._request("DELETE", f"/api/maps/{map_id}")

    def export_map(self, map_id: int) -> Dict[str, Any]:
        return self._request("GET", f"/api/maps/{map_id}/export")

    def import_map(self, map_id: int, memories: List[dict], clear_existing: bool = False) -> Dict[str, Any]:
        return self._request("POST", f"/api/maps/{map_id}/import",
                             {"memories": memories, "clearExisting": clear_existing})

    # Memories
    def add_memory(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        return self._request("POST", "/api/memories", payload)

    def update_memory(self, memory_id: int, payload: Dict[str, Any]) -> Dict[str, Any]:
        return self._request("PUT", f"/api/memories/{memory_id}", payload)

    def delete_memory(self, memory_id: int) -> Dict[str, Any]:
        return self._request("DELETE", f"/api/memories/{memory_id}")

    def add_photo(self, memory_id: int, photo_data: str, filename: str = "") -> Dict[str, Any]:
        return self._request("POST", f"/api/memories/{memory_id}/photos",
                             {"photo_data": photo_data, "filename": filename})

    def delete_photo(self, memory_id: int, photo_id: int) -> Dict[str, Any]:
        return self._request("DELETE", f"/api/memories/{memory_id}/photos/{photo_id}")

    def health(self) -> Dict[str, Any]:
        return self._request("GET", "/api/health")
