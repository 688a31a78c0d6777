"""
Image processing utilities for PixelMap sprites and photos.
"""

import base64
import io
import logging
import re
from typing import Optional, Tuple

import numpy as np
from PIL import Image, ImageDraw

from .config import COLOR_DISTANCE_THRESHOLD
from .error_handling import ImageProcessingError
from .models import ContentBounds, Sprite

logger = logging.getLogger(__name__)

_DATA_URL_RE = re.compile(r'^data:(?P<mime>[\w/+.-]+)?(;[\w=-]+)*;base64,(?P<data>.*)$', re.DOTALL)

def find_content_bounds(alpha: np.ndarray) -> ContentBounds:
    """
    Find the minimal rectangle enclosing every pixel with nonzero alpha.

    Args:
        alpha: 2D array of alpha values (height x width)

    Returns:
        ContentBounds: Tight bounds, or the full image when nothing is opaque
    """
    height, width = alpha.shape
    ys, xs = np.nonzero(alpha)

    if len(xs) == 0:
        return ContentBounds(0, 0, width, height)

    min_x, max_x = int(xs.min()), int(xs.max())
    min_y, max_y = int(ys.min()), int(ys.max())
    return ContentBounds(min_x, min_y, max_x - min_x + 1, max_y - min_y + 1)

def strip_background(image: Image.Image,
                     threshold: int = COLOR_DISTANCE_THRESHOLD) -> Tuple[Image.Image, ContentBounds]:
    """
    Make the background of a generated image transparent.

    The top-left pixel is taken as the background colour; every pixel whose
    squared RGB distance to it is below threshold squared loses its alpha.

    Args:
        image: PIL Image object
        threshold: Colour distance threshold

    Returns:
        (transparent RGBA image, content bounds). If the pixels cannot be
        read, the original image and full-image bounds are returned.
    """
    try:
        rgba = np.array(image.convert('RGBA'), dtype=np.uint8)
    except (OSError, ValueError) as e:
        logger.warning(f"Could not read sprite pixels, keeping original image: {e}")
        width, height = image.size
        return image, ContentBounds(0, 0, width, height)

    rgb = rgba[:, :, :3].astype(np.int32)
    reference = rgb[0, 0]
    distance_squared = ((rgb - reference) ** 2).sum(axis=2)

    rgba[distance_squared < threshold * threshold, 3] = 0

    bounds = find_content_bounds(rgba[:, :, 3])
    return Image.fromarray(rgba, 'RGBA'), bounds

def image_to_png_bytes(image: Image.Image) -> bytes:
    buffer = io.BytesIO()
    image.save(buffer, format='PNG')
    return buffer.getvalue()

def sprite_from_generated_image(data: bytes) -> Tuple[Sprite, ContentBounds]:
    """
    Decode generated image bytes, strip the background and package a sprite.

    Raises:
        ImageProcessingError: If the bytes are not a decodable image
    """
    try:
        image = Image.open(io.BytesIO(data))
        image.load()
    except (OSError, ValueError) as e:
        raise ImageProcessingError(f"Generated image could not be decoded: {e}")

    transparent, bounds = strip_background(image)
    width, height = transparent.size
    return Sprite(png=image_to_png_bytes(transparent), width=width, height=height), bounds

def preprocess_image(data: bytes, max_size: int = 1024) -> Tuple[bytes, str]:
    """
    Shrink a photo before it is sent to the generation service.

    Args:
        data: Encoded image bytes
        max_size: Largest allowed dimension in pixels

    Returns:
        (encoded bytes, mime type). Small images are passed through untouched.
    """
    try:
        image = Image.open(io.BytesIO(data))
        image.load()
    except (OSError, ValueError) as e:
        raise ImageProcessingError(f"Photo could not be decoded: {e}")

    mime_type = Image.MIME.get(image.format or '', 'image/png')
    width, height = image.size
    if max(width, height) <= max_size:
        return data, mime_type

    # Keep aspect ratio but limit max dimension
    if width > height:
        new_size = (max_size, int(height * max_size / width))
    else:
        new_size = (int(width * max_size / height), max_size)

    if image.mode not in ('RGB', 'RGBA'):
        image = image.convert('RGBA')
    image = image.resize(new_size, Image.Resampling.LANCZOS)
    return image_to_png_bytes(image), 'image/png'

def placeholder_sprite_png(size: int = 120, label: str = "DEV MODE") -> bytes:
    """Blue tile on a white margin, used instead of a generated sprite in dev mode."""
    image = Image.new('RGB', (size, size), color=(255, 255, 255))
    draw = ImageDraw.Draw(image)
    margin = size // 12
    draw.rectangle([margin, margin, size - margin - 1, size - margin - 1], fill=(51, 115, 220))
    draw.text((size // 2, size // 2), label, fill=(255, 214, 10), anchor='mm')
    return image_to_png_bytes(image)

def bytes_to_data_url(data: bytes, mime_type: str = 'image/png') -> str:
    return f"data:{mime_type};base64,{base64.b64encode(data).decode('ascii')}"

def data_url_to_bytes(data_url: str) -> Tuple[bytes, str]:
    """
    Decode a data URL (or bare base64 string) into bytes and its mime type.

    Raises:
        ImageProcessingError: If the payload is not valid base64
    """
    match = _DATA_URL_RE.match(data_url or '')
    if match:
        payload = match.group('data')
        mime_type = match.group('mime') or 'image/png'
    else:
        payload = data_url or ''
        mime_type = 'image/png'

    try:
        return base64.b64decode(payload, validate=False), mime_type
    except (ValueError, TypeError) as e:
        raise ImageProcessingError(f"Invalid base64 image data: {e}")

def image_size(data: bytes) -> Optional[Tuple[int, int]]:
    try:
        with Image.open(io.BytesIO(data)) as image:
            return image.size
    except (OSError, ValueError):
        return None
