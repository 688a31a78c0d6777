"""PixelMap: travel photos as pixel-art memories on a world map."""

__version__ = "1.0.0"
