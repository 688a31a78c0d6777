"""
Conversion between in-memory Memory objects and the REST payload format.
"""

import json
import logging
from datetime import date
from typing import Any, Dict, List, Optional

from .config import EXPORT_EXTENSION
from .error_handling import InvalidImportFileError
from .image_processing import bytes_to_data_url, data_url_to_bytes, image_size
from .models import DEFAULT_SPRITE_SIZE, ContentBounds, Memory, Photo, Sprite, TravelLog

logger = logging.getLogger(__name__)

def photo_to_payload(photo: Photo) -> Dict[str, str]:
    return {"data": bytes_to_data_url(photo.data, photo.mime_type), "filename": photo.filename}

def memory_to_payload(memory: Memory, map_id: int) -> Dict[str, Any]:
    source = memory.source or (memory.photos[0] if memory.photos else None)
    return {
        "map_id": map_id,
        "source_type": "file",
        "source_data": bytes_to_data_url(source.data, source.mime_type) if source else None,
        "processed_image": bytes_to_data_url(memory.sprite.png) if memory.sprite else None,
        "lat": memory.lat,
        "lng": memory.lng,
        "width": memory.width,
        "height": memory.height,
        "content_bounds": memory.content_bounds.to_dict(),
        "flipped_horizontally": memory.flipped_horizontally,
        "is_locked": memory.is_locked,
        "log_location": memory.log.location or "",
        "log_date": memory.log.date or "",
        "log_musings": memory.log.musings or "",
        "photos": [photo_to_payload(p) for p in memory.photos],
    }

def payload_to_photo(data: Dict[str, Any]) -> Photo:
    raw, mime_type = data_url_to_bytes(data.get("photo_data") or data.get("data") or "")
    return Photo(
        data=raw,
        filename=data.get("filename") or "photo.jpg",
        mime_type=mime_type,
        remote_id=data.get("id"),
    )

def _parse_bounds(value) -> Optional[dict]:
    if isinstance(value, str):
        try:
            return json.loads(value)
        except ValueError:
            logger.warning(f"Ignoring malformed content bounds: {value!r}")
            return None
    return value

def payload_to_memory(data: Dict[str, Any]) -> Memory:
    """Build a Memory from a server row; the local id equals the row id."""
    sprite = None
    if data.get("processed_image"):
        png, _ = data_url_to_bytes(data["processed_image"])
        size = image_size(png) or (DEFAULT_SPRITE_SIZE, DEFAULT_SPRITE_SIZE)
        sprite = Sprite(png=png, width=size[0], height=size[1])

    photos = tuple(payload_to_photo(p) for p in data.get("photos") or [])

    return Memory(
        id=int(data["id"]),
        remote_id=int(data["id"]),
        lat=float(data["lat"]),
        lng=float(data["lng"]),
        width=data.get("width") or DEFAULT_SPRITE_SIZE,
        height=data.get("height") or DEFAULT_SPRITE_SIZE,
        sprite=sprite,
        source=photos[0] if photos else None,
        is_generating=False,
        show_original=False,
        flipped_horizontally=bool(data.get("flipped_horizontally")),
        is_locked=bool(data.get("is_locked")),
        photos=photos,
        log=TravelLog(
            location=data.get("log_location") or "",
            date=data.get("log_date") or "",
            musings=data.get("log_musings") or "",
        ),
        content_bounds=ContentBounds.from_dict(_parse_bounds(data.get("content_bounds"))),
    )

def validate_export_envelope(data: Any) -> List[Dict[str, Any]]:
    """
    Check the shape of a decoded .pixmap file and return its memories.

    Raises:
        InvalidImportFileError: If there is no memories list of objects
    """
    if not isinstance(data, dict) or not isinstance(data.get("memories"), list):
        raise InvalidImportFileError("Invalid map file. Please select a valid `.pixmap` file.")

    memories = data["memories"]
    for entry in memories:
        if not isinstance(entry, dict) or "lat" not in entry or "lng" not in entry:
            raise InvalidImportFileError("Invalid map file: every memory needs lat and lng.")
    return memories

def export_filename(today: Optional[date] = None) -> str:
    return f"pixelmap-{(today or date.today()).isoformat()}{EXPORT_EXTENSION}"
