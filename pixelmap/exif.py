"""
EXIF metadata extraction for dropped photos: GPS position and capture date.
"""

import io
import logging
from datetime import date, datetime
from typing import Optional

from PIL import Image
from PIL.ExifTags import TAGS, GPSTAGS

from .models import ExifLocation

logger = logging.getLogger(__name__)

EXIF_IFD = 0x8769
GPS_IFD = 0x8825

def _decode_ref(value) -> str:
    if isinstance(value, bytes):
        value = value.decode('utf-8', errors='ignore')
    return str(value).strip('\x00 ').upper()

def dms_to_decimal(dms, ref: str) -> float:
    """Convert (degrees, minutes, seconds) rationals to signed decimal degrees."""
    decimal = float(dms[0]) + float(dms[1]) / 60 + float(dms[2]) / 3600
    return -decimal if ref in ('S', 'W') else decimal

def read_capture_date(exif) -> Optional[str]:
    """DateTimeOriginal (or DateTime) from the Exif IFD as an ISO date."""
    exif_ifd = exif.get_ifd(EXIF_IFD)
    for tag_id, value in exif_ifd.items():
        tag = TAGS.get(tag_id, tag_id)
        if tag in ("DateTimeOriginal", "DateTime"):
            dt_str = value.decode('utf-8') if isinstance(value, bytes) else str(value)
            try:
                return datetime.strptime(dt_str.strip('\x00 '), "%Y:%m:%d %H:%M:%S").date().isoformat()
            except ValueError:
                logger.debug(f"Unparseable EXIF date: {dt_str!r}")
    return None

def read_exif_location(data: bytes, today: Optional[date] = None) -> Optional[ExifLocation]:
    """
    Recover the GPS position of a photo from its EXIF tags.

    Args:
        data: Encoded image bytes
        today: Date used when the photo carries no capture date

    Returns:
        ExifLocation, or None when latitude, longitude or their references are
        missing, unreadable or outside the valid geographic range.
    """
    try:
        with Image.open(io.BytesIO(data)) as pil_image:
            exif = pil_image.getexif()
            if not exif:
                return None

            gps_data = {}
            for gps_tag_id, value in exif.get_ifd(GPS_IFD).items():
                gps_data[GPSTAGS.get(gps_tag_id, gps_tag_id)] = value

            required = ('GPSLatitude', 'GPSLongitude', 'GPSLatitudeRef', 'GPSLongitudeRef')
            if not all(gps_data.get(tag) for tag in required):
                return None

            lat = dms_to_decimal(gps_data['GPSLatitude'], _decode_ref(gps_data['GPSLatitudeRef']))
            lng = dms_to_decimal(gps_data['GPSLongitude'], _decode_ref(gps_data['GPSLongitudeRef']))
            capture_date = read_capture_date(exif)
    except (OSError, ValueError, TypeError, IndexError, ZeroDivisionError) as e:
        logger.warning(f"Error reading EXIF data: {e}")
        return None

    if not (-90.0 <= lat <= 90.0 and -180.0 <= lng <= 180.0):
        logger.warning(f"EXIF coordinate out of range: ({lat}, {lng})")
        return None

    return ExifLocation(
        lat=float(lat),
        lng=float(lng),
        date=capture_date or (today or date.today()).isoformat(),
    )
