"""
Tests for background stripping and image helpers.
"""

import io
import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from unittest.mock import MagicMock

import numpy as np
import pytest
from PIL import Image

from pixelmap.error_handling import ImageProcessingError
from pixelmap.image_processing import (
    bytes_to_data_url,
    data_url_to_bytes,
    find_content_bounds,
    image_size,
    placeholder_sprite_png,
    preprocess_image,
    sprite_from_generated_image,
    strip_background,
)
from pixelmap.models import ContentBounds

from conftest import make_png


def open_png(data):
    return Image.open(io.BytesIO(data))


class TestFindContentBounds:
    """Test opaque-pixel bounding boxes."""

    def test_tight_bounds(self):
        alpha = np.zeros((10, 20), dtype=np.uint8)
        alpha[2:5, 3:9] = 255
        assert find_content_bounds(alpha) == ContentBounds(3, 2, 6, 3)

    def test_fully_transparent_returns_full_image(self):
        alpha = np.zeros((10, 20), dtype=np.uint8)
        assert find_content_bounds(alpha) == ContentBounds(0, 0, 20, 10)


class TestStripBackground:
    """Test making the generated background transparent."""

    def test_background_removed_and_subject_kept(self):
        image = open_png(make_png(size=(40, 30), square=(10, 5, 25, 20)))
        result, bounds = strip_background(image)

        pixels = np.array(result)
        assert result.mode == 'RGBA'
        assert pixels[0, 0, 3] == 0
        assert pixels[29, 39, 3] == 0
        assert pixels[10, 15, 3] == 255
        assert bounds == ContentBounds(10, 5, 15, 15)

    def test_threshold_is_strict(self):
        """Distance 19 from the corner colour is background, distance 20 is not."""
        image = Image.new('RGB', (3, 1), (255, 255, 255))
        image.putpixel((1, 0), (255, 255, 236))
        image.putpixel((2, 0), (255, 255, 235))

        result, bounds = strip_background(image)
        alpha = np.array(result)[:, :, 3]
        assert list(alpha[0]) == [0, 0, 255]
        assert bounds == ContentBounds(2, 0, 1, 1)

    def test_uniform_image_becomes_fully_transparent(self):
        image = Image.new('RGB', (12, 8), (10, 200, 10))
        result, bounds = strip_background(image)

        assert np.array(result)[:, :, 3].max() == 0
        assert bounds == ContentBounds(0, 0, 12, 8)

    def test_unreadable_pixels_keep_original(self):
        image = MagicMock()
        image.size = (16, 9)
        image.convert.side_effect = OSError("broken")

        result, bounds = strip_background(image)
        assert result is image
        assert bounds == ContentBounds(0, 0, 16, 9)


class TestSpriteFromGeneratedImage:
    """Test packaging generated bytes into a sprite."""

    def test_sprite_dimensions_and_bounds(self):
        sprite, bounds = sprite_from_generated_image(make_png(size=(60, 30), square=(0, 10, 20, 20)))

        assert (sprite.width, sprite.height) == (60, 30)
        assert sprite.aspect_ratio == 2.0
        assert open_png(sprite.png).mode == 'RGBA'
        # The corner pixel is background, so the square starting at x=0 is kept
        assert bounds == ContentBounds(0, 10, 20, 10)

    def test_undecodable_bytes_raise(self):
        with pytest.raises(ImageProcessingError):
            sprite_from_generated_image(b"not an image")

    def test_placeholder_keeps_tile_inside_margin(self):
        sprite, bounds = sprite_from_generated_image(placeholder_sprite_png())

        assert (sprite.width, sprite.height) == (120, 120)
        assert bounds.x == 10 and bounds.y == 10
        assert bounds.width == 100 and bounds.height == 100


class TestImageHelpers:
    """Test data URLs and photo preprocessing."""

    def test_data_url_keeps_mime_type(self):
        url = bytes_to_data_url(b"\x00\x01jpeg", 'image/jpeg')
        assert url.startswith("data:image/jpeg;base64,")
        assert data_url_to_bytes(url) == (b"\x00\x01jpeg", 'image/jpeg')

    def test_bare_base64_is_accepted(self):
        assert data_url_to_bytes("aGVsbG8=") == (b"hello", 'image/png')

    def test_image_size(self):
        assert image_size(make_png(size=(7, 3))) == (7, 3)
        assert image_size(b"junk") is None

    def test_small_photo_passes_through(self):
        data = make_png(size=(100, 50))
        assert preprocess_image(data) == (data, 'image/png')

    def test_large_photo_is_downscaled(self):
        data = make_png(size=(2048, 1024))
        resized, mime_type = preprocess_image(data, max_size=1024)

        assert mime_type == 'image/png'
        assert image_size(resized) == (1024, 512)

    def test_preprocess_rejects_garbage(self):
        with pytest.raises(ImageProcessingError):
            preprocess_image(b"garbage")
