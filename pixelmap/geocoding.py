"""
Reverse and forward geocoding against a Nominatim-compatible service.

Lookups never raise: a failed reverse lookup yields a human-readable
placeholder and a failed search yields no candidates.
"""

import logging
from typing import List, Optional

import requests

from .models import LocationCandidate

logger = logging.getLogger(__name__)

FALLBACK_HTTP_ERROR = "An interesting place"
FALLBACK_LOCATION = "A wonderful location"

POI_KEYS = ("tourism", "amenity", "shop", "historic", "public_building")
CITY_KEYS = ("city", "town", "village")

def format_location_name(data: dict) -> str:
    """Pick "POI, city", then "city, country", then the full display name."""
    address = data.get("address")
    if not isinstance(address, dict) or not address:
        return data.get("display_name") or FALLBACK_LOCATION

    poi = next((address[k] for k in POI_KEYS if address.get(k)), None) or data.get("name")
    city = next((address[k] for k in CITY_KEYS if address.get(k)), None)
    country = address.get("country")

    if poi and city:
        return f"{poi}, {city}"
    if city and country:
        return f"{city}, {country}"
    return data.get("display_name") or FALLBACK_LOCATION

class GeocodingClient:
    """Stateless wrapper around the Nominatim reverse and search endpoints."""

    def __init__(self, base_url: str = "https://nominatim.openstreetmap.org",
                 user_agent: str = "pixelmap/1.0", timeout: float = 10.0,
                 session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({"User-Agent": user_agent})

    def reverse_geocode(self, lat: float, lng: float, language: str = "en") -> str:
        params = {
            "format": "jsonv2",
            "lat": lat,
            "lon": lng,
            "accept-language": language,
            "zoom": 18,
        }
        try:
            response = self.session.get(f"{self.base_url}/reverse", params=params, timeout=self.timeout)
            if not response.ok:
                logger.warning(f"Reverse geocoding returned HTTP {response.status_code}")
                return FALLBACK_HTTP_ERROR
            data = response.json()
            if not isinstance(data, dict):
                logger.warning(f"Unexpected reverse geocoding payload: {type(data).__name__}")
                return FALLBACK_LOCATION
            return format_location_name(data)
        except (requests.RequestException, ValueError) as e:
            logger.error(f"Reverse geocoding failed: {e}")
            return FALLBACK_LOCATION

    def search(self, query: str, language: str = "en", limit: int = 5) -> List[LocationCandidate]:
        if not query or not query.strip():
            return []

        params = {"format": "json", "q": query, "accept-language": language, "limit": limit}
        try:
            response = self.session.get(f"{self.base_url}/search", params=params, timeout=self.timeout)
            if not response.ok:
                logger.warning(f"Location search returned HTTP {response.status_code}")
                return []
            results = response.json() or []
        except (requests.RequestException, ValueError) as e:
            logger.error(f"Failed to fetch location suggestions: {e}")
            return []
        if not isinstance(results, list):
            logger.warning(f"Unexpected search payload: {type(results).__name__}")
            return []

        candidates = []
        for item in results:
            try:
                candidates.append(LocationCandidate(
                    place_id=int(item.get("place_id", 0)),
                    display_name=item.get("display_name", ""),
                    lat=float(item["lat"]),
                    lng=float(item["lon"]),
                ))
            except (AttributeError, KeyError, TypeError, ValueError):
                logger.debug(f"Skipping malformed search result: {item}")
        return candidates
