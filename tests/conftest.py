"""
Shared fixtures: synthetic photos with EXIF and memory builders.
"""

import io
import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from datetime import datetime

import piexif
import pytest
from PIL import Image

from pixelmap.models import Memory, Photo, Sprite, TravelLog


def _deg_to_dms(deg):
    d = int(deg)
    m = int((deg - d) * 60)
    s = (deg - d - m / 60) * 3600
    return ((d, 1), (m, 1), (int(round(s * 100)), 100))


def make_jpeg(lat=None, lng=None, taken=None, size=(64, 48), color=(200, 120, 40)):
    """JPEG bytes, optionally carrying GPS and DateTimeOriginal EXIF."""
    exif_dict = {"0th": {}, "Exif": {}, "GPS": {}, "1st": {}, "thumbnail": None}
    if taken is not None:
        exif_dict["Exif"][piexif.ExifIFD.DateTimeOriginal] = taken.strftime("%Y:%m:%d %H:%M:%S")
    if lat is not None and lng is not None:
        exif_dict["GPS"][piexif.GPSIFD.GPSLatitudeRef] = 'N' if lat >= 0 else 'S'
        exif_dict["GPS"][piexif.GPSIFD.GPSLatitude] = _deg_to_dms(abs(lat))
        exif_dict["GPS"][piexif.GPSIFD.GPSLongitudeRef] = 'E' if lng >= 0 else 'W'
        exif_dict["GPS"][piexif.GPSIFD.GPSLongitude] = _deg_to_dms(abs(lng))

    buffer = io.BytesIO()
    Image.new('RGB', size, color).save(buffer, 'JPEG', exif=piexif.dump(exif_dict))
    return buffer.getvalue()


def make_png(size=(40, 40), color=(255, 255, 255), square=None, square_color=(220, 30, 30)):
    """PNG bytes with a plain background and an optional filled square (x0, y0, x1, y1)."""
    image = Image.new('RGB', size, color)
    if square is not None:
        x0, y0, x1, y1 = square
        for x in range(x0, x1):
            for y in range(y0, y1):
                image.putpixel((x, y), square_color)
    buffer = io.BytesIO()
    image.save(buffer, 'PNG')
    return buffer.getvalue()


def make_memory(memory_id, lat=0.0, lng=0.0, **changes):
    photo = Photo(data=b"photo-%d" % memory_id, filename=f"photo_{memory_id}.jpg",
                  handle=f"blob:photo-{memory_id}")
    fields = dict(
        id=memory_id,
        lat=lat,
        lng=lng,
        sprite=Sprite(png=make_png(), width=40, height=40),
        source=photo,
        photos=(photo,),
        log=TravelLog(location="Somewhere", date="2025-06-15", musings=""),
    )
    fields.update(changes)
    return Memory(**fields)


@pytest.fixture
def paris_jpeg():
    return make_jpeg(48.8584, 2.2945, datetime(2025, 6, 15, 10, 30, 0))


@pytest.fixture
def plain_jpeg():
    return make_jpeg()
