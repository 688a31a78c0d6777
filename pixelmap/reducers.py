"""
Placement and interaction state machine.

Every function takes the current EditorState plus an event and returns a
Transition: the next state and the side effects to run. Nothing here does
I/O, so the whole update policy can be exercised without a UI or network.
"""

import logging
from dataclasses import replace
from datetime import date
from typing import Dict, Iterable, Optional, Sequence

from .clustering import clustered_memory_ids
from .config import DUPLICATE_OFFSET_PX, EXIF_FLY_TO_ZOOM, MOVE_AMOUNT, SPRITE_WIDTH
from .models import ContentBounds, DisplayItem, ExifLocation, Memory, Photo, Sprite, TravelLog
from .prompts import build_edit_prompt, build_image_prompt
from .state import (
    AddRemotePhoto, AwaitingPlacement, DeleteRemoteMemory, DeleteRemotePhoto, Dragging,
    EditorState, FlyTo, Idle, Notify, RequestLocationName, RequestSprite, SyncMemory, Transition,
)
from .viewport import Viewport, normalize_coordinate

logger = logging.getLogger(__name__)

LOADING_LOCATION = "Loading location..."
TOAST_LOCATION_FOUND = "Found the photo's location, placing it on the map."
TOAST_NO_LOCATION = "No location found in the photo. Click on the map to place it."
TOAST_GENERATION_FAILED = "Could not create the pixel art"

DIRECTIONS = {
    "up": (1, 0),
    "down": (-1, 0),
    "left": (0, -1),
    "right": (0, 1),
}

def _known_location(memory: Memory) -> Optional[str]:
    location = memory.log.location
    if not location or location == LOADING_LOCATION:
        return None
    return location

def _update_selected(state: EditorState, sync: bool = True, **changes) -> Transition:
    memory = state.selected
    if memory is None:
        return Transition(state)
    memory = replace(memory, **changes)
    effects = (SyncMemory(memory),) if sync else ()
    return Transition(state.replace_memory(memory), effects)

# Placement

def create_memory(state: EditorState, photo: Photo, lat: float, lng: float,
                  log_date: str) -> Transition:
    """
    Put a new memory on the map immediately and reserve its first generation.

    The location lookup runs first; when it resolves, the reserved generation
    request is sent with the location as prompt context.
    """
    lat, lng = normalize_coordinate(lat, lng)
    location_token = state.next_token
    generate_token = state.next_token + 1

    memory = Memory(
        id=state.next_id,
        lat=lat,
        lng=lng,
        source=photo,
        is_generating=True,
        photos=(photo,),
        log=TravelLog(location=LOADING_LOCATION, date=log_date, musings=""),
        content_bounds=ContentBounds(),
        generation_token=generate_token,
        location_token=location_token,
    )
    new_state = replace(
        state,
        memories=state.memories + (memory,),
        next_id=state.next_id + 1,
        next_token=state.next_token + 2,
        mode=Idle(),
    )
    effects = (RequestLocationName(memory.id, location_token, lat, lng,
                                   generate_token=generate_token),)
    logger.info(f"Placed memory {memory.id} at ({lat:.5f}, {lng:.5f})")
    return Transition(new_state, effects)

def add_photo(state: EditorState, photo: Photo, exif: Optional[ExifLocation]) -> Transition:
    """A new photo was dropped, pasted or uploaded onto the map."""
    if exif is not None:
        placed = create_memory(replace(state, mode=Idle()), photo, exif.lat, exif.lng, exif.date)
        return Transition(placed.state, placed.effects + (
            Notify(TOAST_LOCATION_FOUND),
            FlyTo(exif.lat, exif.lng, EXIF_FLY_TO_ZOOM),
        ))

    return Transition(replace(state, mode=AwaitingPlacement(photo)), (Notify(TOAST_NO_LOCATION),))

def click_map(state: EditorState, lat: float, lng: float, today: Optional[date] = None) -> Transition:
    """Place the pending photo, or clear the selection when nothing is pending."""
    if isinstance(state.mode, AwaitingPlacement):
        log_date = (today or date.today()).isoformat()
        return create_memory(state, state.mode.photo, lat, lng, log_date)
    return Transition(replace(state, selected_id=None))

def cancel_placement(state: EditorState) -> Transition:
    if isinstance(state.mode, AwaitingPlacement):
        return Transition(replace(state, mode=Idle()))
    return Transition(state)

# Pointer interaction

def select(state: EditorState, memory_id: Optional[int]) -> Transition:
    if memory_id is not None and state.get(memory_id) is None:
        return Transition(state)
    return Transition(replace(state, selected_id=memory_id))

def pointer_down(state: EditorState, memory_id: int, x: float, y: float) -> Transition:
    memory = state.get(memory_id)
    if memory is None:
        return Transition(state)

    state = replace(state, selected_id=memory_id)
    if memory.is_locked:
        return Transition(state)

    # Raise the dragged memory to the top of the stack
    memories = tuple(m for m in state.memories if m.id != memory_id) + (memory,)
    mode = Dragging(memory_id, x, y, memory.lat, memory.lng)
    return Transition(replace(state, memories=memories, mode=mode))

def pointer_move(state: EditorState, x: float, y: float, viewport: Viewport) -> Transition:
    if not isinstance(state.mode, Dragging):
        return Transition(state)

    drag = state.mode
    memory = state.get(drag.memory_id)
    if memory is None:
        return Transition(replace(state, mode=Idle()))

    start_x, start_y = viewport.project(drag.start_lat, drag.start_lng)
    lat, lng = viewport.unproject(start_x + (x - drag.start_x), start_y + (y - drag.start_y))
    lat, lng = normalize_coordinate(lat, lng)
    return Transition(state.replace_memory(replace(memory, lat=lat, lng=lng)))

def pointer_up(state: EditorState) -> Transition:
    """End a drag; a moved memory is persisted and its location label refreshed."""
    if not isinstance(state.mode, Dragging):
        return Transition(state)

    drag = state.mode
    state = replace(state, mode=Idle())
    memory = state.get(drag.memory_id)
    if memory is None or (memory.lat == drag.start_lat and memory.lng == drag.start_lng):
        return Transition(state)

    token = state.next_token
    memory = replace(memory, location_token=token)
    state = replace(state.replace_memory(memory), next_token=token + 1)
    return Transition(state, (
        SyncMemory(memory),
        RequestLocationName(memory.id, token, memory.lat, memory.lng, persist=True),
    ))

# Photos

def attach_photo(state: EditorState, memory_id: int, photo: Photo) -> Transition:
    memory = state.get(memory_id)
    if memory is None:
        return Transition(state)
    memory = replace(memory, photos=memory.photos + (photo,))
    return Transition(state.replace_memory(memory), (AddRemotePhoto(memory_id, photo),))

def drop_photo_on_memory(state: EditorState, memory_id: int, photo: Photo,
                         exif: Optional[ExifLocation]) -> Transition:
    """Locked memories collect dropped photos; anywhere else a new memory starts."""
    memory = state.get(memory_id)
    if memory is not None and memory.is_locked:
        return attach_photo(state, memory_id, photo)
    return add_photo(state, photo, exif)

def delete_photo(state: EditorState, memory_id: int, index: int) -> Transition:
    memory = state.get(memory_id)
    if memory is None or not 0 <= index < len(memory.photos):
        return Transition(state)

    if len(memory.photos) == 1:
        return _remove_memory(state, memory)

    photo = memory.photos[index]
    photos = memory.photos[:index] + memory.photos[index + 1:]
    memory = replace(memory, photos=photos)
    return Transition(state.replace_memory(memory), (DeleteRemotePhoto(memory_id, photo),))

# Generation

def _start_generation(state: EditorState, memory: Memory, source: Photo, prompt: str) -> Transition:
    token = state.next_token
    memory = replace(memory, is_generating=True, generation_token=token, source=source)
    state = replace(state.replace_memory(memory), next_token=token + 1)
    return Transition(state, (RequestSprite(memory.id, token, source, prompt),))

def regenerate_selected(state: EditorState) -> Transition:
    memory = state.selected
    if memory is None:
        return Transition(state)
    source = memory.source or (memory.photos[0] if memory.photos else None)
    if source is None:
        return Transition(state)
    return _start_generation(state, memory, source, build_image_prompt(_known_location(memory)))

def edit_selected(state: EditorState, instruction: str) -> Transition:
    """Re-generate the current sprite following a free-text instruction."""
    memory = state.selected
    if memory is None or memory.sprite is None or not instruction.strip():
        return Transition(state)
    source = Photo(data=memory.sprite.png, filename=f"edit_source_{memory.id}.png",
                   mime_type="image/png")
    prompt = build_edit_prompt(instruction.strip(), _known_location(memory))
    return _start_generation(state, memory, source, prompt)

def sprite_ready(state: EditorState, request: RequestSprite, sprite: Sprite,
                 bounds: ContentBounds) -> Transition:
    memory = state.get(request.memory_id)
    if memory is None:
        return Transition(state)
    if memory.generation_token != request.token:
        logger.info(f"Discarding stale sprite for memory {memory.id} (token {request.token})")
        return Transition(state)

    memory = replace(
        memory,
        sprite=sprite,
        content_bounds=bounds,
        show_original=False,
        width=SPRITE_WIDTH,
        height=SPRITE_WIDTH / sprite.aspect_ratio,
        is_generating=False,
    )
    return Transition(state.replace_memory(memory), (SyncMemory(memory),))

def generation_failed(state: EditorState, request: RequestSprite, message: str) -> Transition:
    """Keep the last good sprite; only the busy flag is cleared."""
    memory = state.get(request.memory_id)
    if memory is None or memory.generation_token != request.token:
        return Transition(state)
    memory = replace(memory, is_generating=False)
    return Transition(state.replace_memory(memory), (Notify(f"{TOAST_GENERATION_FAILED}: {message}"),))

# Geocoding

def location_resolved(state: EditorState, request: RequestLocationName, name: str) -> Transition:
    memory = state.get(request.memory_id)
    if memory is None:
        return Transition(state)

    effects = []
    current = memory.location_token == request.token
    if current:
        memory = replace(memory, log=replace(memory.log, location=name))
        state = state.replace_memory(memory)

    if (request.generate_token is not None and memory.is_generating
            and memory.generation_token == request.generate_token and memory.source is not None):
        effects.append(RequestSprite(memory.id, request.generate_token, memory.source,
                                     build_image_prompt(name)))

    if request.persist and current:
        effects.append(SyncMemory(memory))

    return Transition(state, tuple(effects))

# Selection actions

def _remove_memory(state: EditorState, memory: Memory) -> Transition:
    state = state.without(memory.id)
    if state.selected_id == memory.id:
        state = replace(state, selected_id=None)
    if isinstance(state.mode, Dragging) and state.mode.memory_id == memory.id:
        state = replace(state, mode=Idle())
    return Transition(state, (DeleteRemoteMemory(memory.id, memory.remote_id),))

def delete_selected(state: EditorState) -> Transition:
    """Removed locally right away; the remote delete is best effort."""
    memory = state.selected
    if memory is None:
        return Transition(state)
    return _remove_memory(state, memory)

def duplicate_selected(state: EditorState, viewport: Viewport) -> Transition:
    memory = state.selected
    if memory is None or memory.is_generating:
        return Transition(state)

    x, y = viewport.project(memory.lat, memory.lng)
    lat, lng = viewport.unproject(x + DUPLICATE_OFFSET_PX[0], y + DUPLICATE_OFFSET_PX[1])
    lat, lng = normalize_coordinate(lat, lng)

    clone = replace(
        memory,
        id=state.next_id,
        lat=lat,
        lng=lng,
        remote_id=None,
        photos=tuple(replace(p, remote_id=None) for p in memory.photos),
        generation_token=0,
        location_token=0,
    )
    state = replace(state, memories=state.memories + (clone,), next_id=state.next_id + 1,
                    selected_id=clone.id)
    return Transition(state, (SyncMemory(clone),))

def flip_selected(state: EditorState) -> Transition:
    memory = state.selected
    if memory is None:
        return Transition(state)
    return _update_selected(state, flipped_horizontally=not memory.flipped_horizontally)

def scale_selected(state: EditorState, factor: float) -> Transition:
    if factor <= 0:
        raise ValueError(f"Scale factor must be positive, got {factor}")
    memory = state.selected
    if memory is None:
        return Transition(state)
    return _update_selected(state, width=memory.width * factor, height=memory.height * factor)

def set_locked(state: EditorState, locked: bool) -> Transition:
    return _update_selected(state, is_locked=locked)

def toggle_original(state: EditorState) -> Transition:
    memory = state.selected
    if memory is None or memory.source is None:
        return Transition(state)
    return _update_selected(state, sync=False, show_original=not memory.show_original)

def nudge_selected(state: EditorState, direction: str, zoom: float) -> Transition:
    """Arrow-key move; the step shrinks with the square of the zoom level."""
    memory = state.selected
    if memory is None or direction not in DIRECTIONS:
        return Transition(state)
    d_lat, d_lng = DIRECTIONS[direction]
    step = MOVE_AMOUNT * (1 / (zoom ** 2))
    lat, lng = normalize_coordinate(memory.lat + d_lat * step, memory.lng + d_lng * step)
    return _update_selected(state, lat=lat, lng=lng)

def save_log(state: EditorState, log: TravelLog, coords: Optional[Sequence[float]] = None) -> Transition:
    changes = {"log": log}
    if coords is not None:
        changes["lat"], changes["lng"] = normalize_coordinate(coords[0], coords[1])
    return _update_selected(state, **changes)

# Map-level events

def load_memories(state: EditorState, memories: Iterable[Memory]) -> Transition:
    memories = tuple(memories)
    next_id = max((m.id for m in memories), default=-1) + 1
    return Transition(replace(state, memories=memories, selected_id=None, mode=Idle(),
                              next_id=max(next_id, 0)))

def clear_memories(state: EditorState) -> Transition:
    return Transition(replace(state, memories=(), selected_id=None, mode=Idle()))

def deselect_if_clustered(state: EditorState, items: Sequence[DisplayItem]) -> Transition:
    if state.selected_id is not None and state.selected_id in clustered_memory_ids(items):
        return Transition(replace(state, selected_id=None))
    return Transition(state)

def memory_persisted(state: EditorState, memory_id: int, remote_id: int,
                     photo_ids: Optional[Dict[str, int]] = None) -> Transition:
    memory = state.get(memory_id)
    if memory is None:
        return Transition(state)
    photo_ids = photo_ids or {}
    photos = tuple(replace(p, remote_id=photo_ids[p.handle]) if p.handle in photo_ids else p
                   for p in memory.photos)
    return Transition(state.replace_memory(replace(memory, remote_id=remote_id, photos=photos)))

def notify(state: EditorState, message: str) -> Transition:
    return Transition(state, (Notify(message),))
