"""
Editor state and the side effects a state transition can request.

Everything here is immutable; reducers build new values with
dataclasses.replace instead of mutating.
"""

from dataclasses import dataclass, field, replace
from typing import Optional, Tuple, Union

from .models import Memory, Photo

# Interaction modes

@dataclass(frozen=True)
class Idle:
    pass

@dataclass(frozen=True)
class AwaitingPlacement:
    """A photo without a geotag waits for the user to click a map point."""
    photo: Photo

@dataclass(frozen=True)
class Dragging:
    memory_id: int
    start_x: float
    start_y: float
    start_lat: float
    start_lng: float

Mode = Union[Idle, AwaitingPlacement, Dragging]

# Effects

@dataclass(frozen=True)
class RequestSprite:
    memory_id: int
    token: int
    source: Photo
    prompt: str

@dataclass(frozen=True)
class RequestLocationName:
    memory_id: int
    token: int
    lat: float
    lng: float
    # Generation reserved at placement starts once the location is known
    generate_token: Optional[int] = None
    persist: bool = False

@dataclass(frozen=True)
class SyncMemory:
    """Create the memory remotely, or update it if it already exists."""
    memory: Memory

@dataclass(frozen=True)
class DeleteRemoteMemory:
    memory_id: int
    remote_id: Optional[int] = None

@dataclass(frozen=True)
class AddRemotePhoto:
    memory_id: int
    photo: Photo

@dataclass(frozen=True)
class DeleteRemotePhoto:
    memory_id: int
    photo: Photo

@dataclass(frozen=True)
class Notify:
    message: str

@dataclass(frozen=True)
class FlyTo:
    lat: float
    lng: float
    zoom: Optional[float] = None

Effect = Union[RequestSprite, RequestLocationName, SyncMemory, DeleteRemoteMemory,
               AddRemotePhoto, DeleteRemotePhoto, Notify, FlyTo]

@dataclass(frozen=True)
class EditorState:
    memories: Tuple[Memory, ...] = ()
    selected_id: Optional[int] = None
    mode: Mode = field(default_factory=Idle)
    next_id: int = 0
    next_token: int = 1

    def get(self, memory_id: Optional[int]) -> Optional[Memory]:
        if memory_id is None:
            return None
        for memory in self.memories:
            if memory.id == memory_id:
                return memory
        return None

    @property
    def selected(self) -> Optional[Memory]:
        return self.get(self.selected_id)

    @property
    def generating_ids(self) -> Tuple[int, ...]:
        return tuple(m.id for m in self.memories if m.is_generating)

    @property
    def pending_photo(self) -> Optional[Photo]:
        if isinstance(self.mode, AwaitingPlacement):
            return self.mode.photo
        return None

    def replace_memory(self, memory: Memory) -> "EditorState":
        """Swap in a new version of a memory, matched by id."""
        return replace(self, memories=tuple(memory if m.id == memory.id else m
                                            for m in self.memories))

    def without(self, memory_id: int) -> "EditorState":
        return replace(self, memories=tuple(m for m in self.memories if m.id != memory_id))


@dataclass(frozen=True)
class Transition:
    state: EditorState
    effects: Tuple[Effect, ...] = ()
