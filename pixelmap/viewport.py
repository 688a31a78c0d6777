"""
Web-Mercator map viewport.

Converts between geographic coordinates and container (screen) pixels the
same way a Leaflet map with 256px tiles does, so clustering, dragging and
duplicate offsets work on the pixels the user actually sees.
"""

import math
from dataclasses import dataclass
from typing import Iterable, Tuple

from .config import DEFAULT_CENTER, DEFAULT_ZOOM, MIN_ZOOM, MAX_ZOOM

TILE_SIZE = 256
MAX_LATITUDE = 85.0511287798

def clamp_latitude(lat: float) -> float:
    return max(-90.0, min(90.0, lat))

def wrap_longitude(lng: float) -> float:
    """Wrap a longitude into [-180, 180]."""
    if -180.0 <= lng <= 180.0:
        return lng
    wrapped = ((lng + 180.0) % 360.0) - 180.0
    # 180 and -180 are the same meridian; keep the sign of the input
    if wrapped == -180.0 and lng > 0:
        return 180.0
    return wrapped

def normalize_coordinate(lat: float, lng: float) -> Tuple[float, float]:
    return clamp_latitude(lat), wrap_longitude(lng)

def _world_scale(zoom: float) -> float:
    return TILE_SIZE * (2 ** zoom)

def _project_world(lat: float, lng: float, zoom: float) -> Tuple[float, float]:
    lat = max(-MAX_LATITUDE, min(MAX_LATITUDE, lat))
    scale = _world_scale(zoom)
    x = (lng + 180.0) / 360.0 * scale
    sin_lat = math.sin(math.radians(lat))
    y = (0.5 - math.log((1 + sin_lat) / (1 - sin_lat)) / (4 * math.pi)) * scale
    return x, y

def _unproject_world(x: float, y: float, zoom: float) -> Tuple[float, float]:
    scale = _world_scale(zoom)
    lng = x / scale * 360.0 - 180.0
    n = math.pi - 2 * math.pi * y / scale
    lat = math.degrees(math.atan(math.sinh(n)))
    return lat, lng

@dataclass
class Viewport:
    """Visible map region: center, zoom and container size in pixels."""
    center_lat: float = DEFAULT_CENTER[0]
    center_lng: float = DEFAULT_CENTER[1]
    zoom: float = DEFAULT_ZOOM
    width: int = 1280
    height: int = 800

    def _origin(self) -> Tuple[float, float]:
        cx, cy = _project_world(self.center_lat, self.center_lng, self.zoom)
        return cx - self.width / 2.0, cy - self.height / 2.0

    def project(self, lat: float, lng: float) -> Tuple[float, float]:
        """Geographic coordinate -> container point (x, y)."""
        ox, oy = self._origin()
        x, y = _project_world(lat, lng, self.zoom)
        return x - ox, y - oy

    def unproject(self, x: float, y: float) -> Tuple[float, float]:
        """Container point -> geographic coordinate (lat, lng)."""
        ox, oy = self._origin()
        return _unproject_world(x + ox, y + oy, self.zoom)

    def fly_to(self, lat: float, lng: float, zoom: float = None):
        self.center_lat, self.center_lng = normalize_coordinate(lat, lng)
        if zoom is not None:
            self.zoom = max(MIN_ZOOM, min(MAX_ZOOM, zoom))

    def reset(self):
        self.fly_to(DEFAULT_CENTER[0], DEFAULT_CENTER[1], DEFAULT_ZOOM)

    def fit_bounds(self, points: Iterable[Tuple[float, float]], padding: float = 0.5):
        """
        Center on the bounding box of points and pick the largest zoom that
        shows all of it, after padding each side by a fraction of its span.
        """
        points = list(points)
        if not points:
            return
        lats = [p[0] for p in points]
        lngs = [p[1] for p in points]
        lat_span = max(lats) - min(lats)
        lng_span = max(lngs) - min(lngs)
        south = clamp_latitude(min(lats) - lat_span * padding)
        north = clamp_latitude(max(lats) + lat_span * padding)
        west = min(lngs) - lng_span * padding
        east = max(lngs) + lng_span * padding

        zoom = MAX_ZOOM
        while zoom > MIN_ZOOM:
            x1, y1 = _project_world(north, west, zoom)
            x2, y2 = _project_world(south, east, zoom)
            if abs(x2 - x1) <= self.width and abs(y2 - y1) <= self.height:
                break
            zoom -= 1

        self.fly_to((south + north) / 2.0, (west + east) / 2.0, zoom)
