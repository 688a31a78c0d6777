from typing import Optional, Tuple, Union
from dataclasses import dataclass, field

DEFAULT_SPRITE_SIZE = 120

@dataclass(frozen=True)
class ContentBounds:
    """Tight rectangle of opaque pixels inside a sprite canvas."""
    x: int = 0
    y: int = 0
    width: int = DEFAULT_SPRITE_SIZE
    height: int = DEFAULT_SPRITE_SIZE

    def to_dict(self) -> dict:
        return {"x": self.x, "y": self.y, "width": self.width, "height": self.height}

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "ContentBounds":
        if not data:
            return cls()
        return cls(
            x=int(data.get("x", 0)),
            y=int(data.get("y", 0)),
            width=int(data.get("width", DEFAULT_SPRITE_SIZE)),
            height=int(data.get("height", DEFAULT_SPRITE_SIZE)),
        )

@dataclass(frozen=True)
class Sprite:
    """Generated pixel-art image, already stripped of its background."""
    png: bytes = b""
    width: int = 0
    height: int = 0

    @property
    def aspect_ratio(self) -> float:
        if self.height <= 0:
            return 1.0
        return self.width / self.height

@dataclass(frozen=True)
class Photo:
    """A photo attached to a memory: image bytes plus a transient preview handle."""
    data: bytes = b""
    filename: str = "photo.jpg"
    mime_type: str = "image/jpeg"
    handle: Optional[str] = None
    remote_id: Optional[int] = None

@dataclass(frozen=True)
class TravelLog:
    location: str = ""
    date: str = ""
    musings: str = ""

@dataclass(frozen=True)
class Memory:
    """A map pin bundling photos, a generated sprite and a travel log."""
    id: int
    lat: float
    lng: float
    width: float = DEFAULT_SPRITE_SIZE
    height: float = DEFAULT_SPRITE_SIZE
    sprite: Optional[Sprite] = None
    source: Optional[Photo] = None
    is_generating: bool = False
    show_original: bool = False
    flipped_horizontally: bool = False
    is_locked: bool = False
    photos: Tuple[Photo, ...] = ()
    log: TravelLog = field(default_factory=TravelLog)
    content_bounds: ContentBounds = field(default_factory=ContentBounds)
    remote_id: Optional[int] = None
    generation_token: int = 0
    location_token: int = 0

@dataclass(frozen=True)
class Cluster:
    """Ephemeral grouping of nearby memories at low zoom. Never persisted."""
    id: str
    lat: float
    lng: float
    members: Tuple[Memory, ...]
    representative: Memory

    @property
    def count(self) -> int:
        return len(self.members)

@dataclass(frozen=True)
class MemoryItem:
    memory: Memory

@dataclass(frozen=True)
class ClusterItem:
    cluster: Cluster

# A display list entry is exactly one of these two variants.
DisplayItem = Union[MemoryItem, ClusterItem]

@dataclass(frozen=True)
class ExifLocation:
    lat: float
    lng: float
    date: str

@dataclass(frozen=True)
class LocationCandidate:
    """Forward geocoding result."""
    place_id: int
    display_name: str
    lat: float
    lng: float
