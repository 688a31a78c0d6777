"""
MapEditor - the controller that owns the editor state.

UI code calls the public methods; each one runs a reducer and then executes
the effects it produced. Generation and geocoding run on a thread pool,
persistence writes on a single worker so a memory's create always lands
before its updates. Workers never touch the state: they post a reducer call
to a queue that the owning thread drains with process_completions().
"""

import functools
import json
import logging
import queue
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import replace
from pathlib import Path
from typing import Callable, Dict, List, Optional, Set, Tuple

from . import reducers
from .app_insights import AppInsights, app_insights
from .clustering import compute_display_items
from .config import SCALE_STEP, SEARCH_FLY_TO_ZOOM, SUPPORTED_LANGUAGES, EXPORT_EXTENSION, Settings
from .converters import memory_to_payload, payload_to_memory, photo_to_payload, validate_export_envelope
from .error_handling import (
    AuthenticationError, InvalidImportFileError, PersistenceError, PixelMapError, handle_error,
)
from .exif import read_exif_location
from .generation import SpriteGenerator
from .geocoding import FALLBACK_HTTP_ERROR, FALLBACK_LOCATION, GeocodingClient
from .api_client import PersistenceClient
from .image_processing import preprocess_image, sprite_from_generated_image
from .models import Cluster, DisplayItem, LocationCandidate, Memory, Photo, TravelLog
from .preview_cache import PreviewCache
from .state import (
    AddRemotePhoto, DeleteRemoteMemory, DeleteRemotePhoto, EditorState, FlyTo, Notify,
    RequestLocationName, RequestSprite, SyncMemory, Transition,
)
from .viewport import Viewport

logger = logging.getLogger(__name__)

Event = Callable[[EditorState], Transition]

MSG_BUSY = "Another operation is already in progress."
MSG_SIGN_IN = "Your session has expired. Please sign in again."
MSG_INVALID_FILE = "Invalid map file. Please select a valid `.pixmap` file."

def exclusive(method):
    """Run a long operation only when no other one holds the editor's busy lock."""
    @functools.wraps(method)
    def wrapper(self, *args, **kwargs):
        if not self._busy.acquire(blocking=False):
            self._notify(MSG_BUSY)
            return None
        try:
            return method(self, *args, **kwargs)
        finally:
            self._busy.release()
    return wrapper

class MapEditor:
    def __init__(self, settings: Optional[Settings] = None,
                 generator: Optional[SpriteGenerator] = None,
                 geocoder: Optional[GeocodingClient] = None,
                 client: Optional[PersistenceClient] = None,
                 viewport: Optional[Viewport] = None,
                 telemetry: Optional[AppInsights] = None,
                 transitive_clusters: bool = False,
                 max_workers: int = 4):
        self.settings = settings or Settings.from_env()
        self.generator = generator or SpriteGenerator(self.settings.gemini_api_key, self.settings.dev_mode)
        self.geocoder = geocoder or GeocodingClient(self.settings.nominatim_url, self.settings.user_agent,
                                                    self.settings.request_timeout)
        self.client = client
        self.viewport = viewport or Viewport()
        self.telemetry = telemetry or app_insights
        self.transitive_clusters = transitive_clusters

        self.state = EditorState()
        self.previews = PreviewCache()
        self.map_id: Optional[int] = None
        self.needs_sign_in = False
        self.preview: Optional[Tuple[int, int]] = None

        self._events: "queue.Queue[Event]" = queue.Queue()
        self._notifications: List[str] = []
        self._busy = threading.Lock()
        self._pending: Set[Future] = set()
        self._pending_lock = threading.Lock()

        # Server ids learned by the persistence worker, keyed by local id and (local id, handle)
        self._remote_ids: Dict[int, int] = {}
        self._photo_ids: Dict[Tuple[int, str], int] = {}
        self._ids_lock = threading.Lock()

        self._workers = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="pixelmap-worker")
        self._persistence = ThreadPoolExecutor(max_workers=1, thread_name_prefix="pixelmap-persist")

    # Core loop

    def dispatch(self, reducer: Callable[..., Transition], *args, **kwargs) -> Transition:
        transition = reducer(self.state, *args, **kwargs)
        self._apply(transition)
        return transition

    def _apply(self, transition: Transition):
        self.state = transition.state
        for effect in transition.effects:
            self._run_effect(effect)
        pending = self.state.pending_photo
        self.previews.revoke_unreferenced(self.state.memories,
                                          keep=[pending.handle] if pending and pending.handle else [])

    def _post(self, reducer: Callable[..., Transition], *args, **kwargs):
        self._events.put(functools.partial(reducer, *args, **kwargs))

    def process_completions(self) -> int:
        """Apply every completion posted by the workers. Returns how many ran."""
        count = 0
        while True:
            try:
                event = self._events.get_nowait()
            except queue.Empty:
                return count
            self._apply(event(self.state))
            count += 1

    def wait_idle(self, timeout: float = 30.0) -> bool:
        """Block until all background work and its follow-ups have been applied."""
        deadline = time.monotonic() + timeout
        while True:
            self.process_completions()
            with self._pending_lock:
                pending = set(self._pending)
            if not pending and self._events.empty():
                return True
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            wait(pending, timeout=min(remaining, 0.5))

    def _submit(self, executor: ThreadPoolExecutor, fn, *args):
        future = executor.submit(fn, *args)
        with self._pending_lock:
            self._pending.add(future)
        future.add_done_callback(self._forget)
        return future

    def _forget(self, future: Future):
        with self._pending_lock:
            self._pending.discard(future)

    def _notify(self, message: str):
        logger.info(f"Notification: {message}")
        self._notifications.append(message)

    def pop_notifications(self) -> List[str]:
        messages, self._notifications = self._notifications, []
        return messages

    def shutdown(self):
        self._workers.shutdown(wait=True)
        self._persistence.shutdown(wait=True)

    # Effects

    def _run_effect(self, effect):
        if isinstance(effect, RequestSprite):
            self._submit(self._workers, self._generate_sprite, effect)
        elif isinstance(effect, RequestLocationName):
            if effect.generate_token is not None:
                self.telemetry.track_memory_placed()
            self._submit(self._workers, self._resolve_location, effect)
        elif isinstance(effect, Notify):
            self._notify(effect.message)
        elif isinstance(effect, FlyTo):
            self.viewport.fly_to(effect.lat, effect.lng, effect.zoom)
        elif self._can_persist():
            if isinstance(effect, SyncMemory):
                self._submit(self._persistence, self._sync_memory, effect.memory, self.map_id)
            elif isinstance(effect, DeleteRemoteMemory):
                self._submit(self._persistence, self._delete_memory, effect)
            elif isinstance(effect, AddRemotePhoto):
                self._submit(self._persistence, self._add_photo, effect)
            elif isinstance(effect, DeleteRemotePhoto):
                self._submit(self._persistence, self._delete_photo, effect)

    def _can_persist(self) -> bool:
        return self.client is not None and self.map_id is not None and not self.needs_sign_in

    def _generate_sprite(self, request: RequestSprite):
        started = time.monotonic()
        try:
            data, mime_type = preprocess_image(request.source.data)
            generated = self.generator.generate(data, mime_type, request.prompt)
            sprite, bounds = sprite_from_generated_image(generated)
        except Exception as e:
            logger.error(f"Sprite generation failed for memory {request.memory_id}: {e}", exc_info=True)
            self.telemetry.track_generation_failure()
            self._post(reducers.generation_failed, request, str(e))
            return
        self.telemetry.track_sprite_generated(time.monotonic() - started)
        self._post(reducers.sprite_ready, request, sprite, bounds)

    def _resolve_location(self, request: RequestLocationName):
        try:
            name = self.geocoder.reverse_geocode(request.lat, request.lng, self.settings.language)
        except Exception as e:
            logger.error(f"Location lookup failed for memory {request.memory_id}: {e}", exc_info=True)
            name = FALLBACK_LOCATION
        if name in (FALLBACK_HTTP_ERROR, FALLBACK_LOCATION):
            self.telemetry.track_geocode_fallback()
        self._post(reducers.location_resolved, request, name)

    def _remote_id(self, memory_id: int, known: Optional[int] = None) -> Optional[int]:
        with self._ids_lock:
            return known if known is not None else self._remote_ids.get(memory_id)

    def _persistence_failed(self, error: PersistenceError, action: str):
        logger.error(f"Failed to {action}: {error}")
        if isinstance(error, AuthenticationError):
            self._events.put(self._auth_expired)
        else:
            self._post(reducers.notify, f"Failed to {action}: {error}")

    def _auth_expired(self, state: EditorState) -> Transition:
        self.needs_sign_in = True
        return reducers.notify(state, MSG_SIGN_IN)

    def _sync_memory(self, memory: Memory, map_id: int):
        remote_id = self._remote_id(memory.id, memory.remote_id)
        payload = memory_to_payload(memory, map_id)
        try:
            if remote_id is None:
                created = self.client.add_memory(payload)
            else:
                payload.pop("photos")
                self.client.update_memory(remote_id, payload)
                return
        except PersistenceError as e:
            self._persistence_failed(e, "save memory")
            return

        remote_id = int(created["id"])
        photo_ids = {}
        for photo, row in zip(memory.photos, created.get("photos") or []):
            if photo.handle and row.get("id") is not None:
                photo_ids[photo.handle] = int(row["id"])
        with self._ids_lock:
            self._remote_ids[memory.id] = remote_id
            self._photo_ids.update({(memory.id, h): pid for h, pid in photo_ids.items()})
        self._post(reducers.memory_persisted, memory.id, remote_id, photo_ids)

    def _delete_memory(self, effect: DeleteRemoteMemory):
        remote_id = self._remote_id(effect.memory_id, effect.remote_id)
        if remote_id is None:
            return
        try:
            self.client.delete_memory(remote_id)
        except PersistenceError as e:
            self._persistence_failed(e, "delete memory")

    def _add_photo(self, effect: AddRemotePhoto):
        remote_id = self._remote_id(effect.memory_id)
        if remote_id is None:
            logger.warning(f"Memory {effect.memory_id} is not saved yet, photo kept locally")
            return
        payload = photo_to_payload(effect.photo)
        try:
            row = self.client.add_photo(remote_id, payload["data"], payload["filename"])
        except PersistenceError as e:
            self._persistence_failed(e, "add photo")
            return
        if effect.photo.handle and row.get("id") is not None:
            with self._ids_lock:
                self._photo_ids[(effect.memory_id, effect.photo.handle)] = int(row["id"])
            self._post(reducers.memory_persisted, effect.memory_id, remote_id,
                       {effect.photo.handle: int(row["id"])})

    def _delete_photo(self, effect: DeleteRemotePhoto):
        remote_id = self._remote_id(effect.memory_id)
        photo_id = effect.photo.remote_id
        if photo_id is None and effect.photo.handle:
            with self._ids_lock:
                photo_id = self._photo_ids.get((effect.memory_id, effect.photo.handle))
        if remote_id is None or photo_id is None:
            return
        try:
            self.client.delete_photo(remote_id, photo_id)
        except PersistenceError as e:
            self._persistence_failed(e, "delete photo")

    # Photos and placement

    def _make_photo(self, data: bytes, filename: str, mime_type: Optional[str] = None) -> Photo:
        if mime_type is None:
            suffix = Path(filename).suffix.lower()
            mime_type = {".png": "image/png", ".webp": "image/webp", ".gif": "image/gif"}.get(suffix, "image/jpeg")
        return Photo(data=data, filename=filename, mime_type=mime_type, handle=self.previews.create(data))

    def add_photo(self, data: bytes, filename: str, mime_type: Optional[str] = None) -> Transition:
        """Add a new photo; geotagged photos are placed right away."""
        photo = self._make_photo(data, filename, mime_type)
        return self.dispatch(reducers.add_photo, photo, read_exif_location(data))

    def click_map(self, lat: float, lng: float) -> Transition:
        return self.dispatch(reducers.click_map, lat, lng)

    def cancel_placement(self) -> Transition:
        return self.dispatch(reducers.cancel_placement)

    def drop_photo_on_memory(self, memory_id: int, data: bytes, filename: str) -> Transition:
        photo = self._make_photo(data, filename)
        return self.dispatch(reducers.drop_photo_on_memory, memory_id, photo, read_exif_location(data))

    def add_photo_to_selected(self, data: bytes, filename: str) -> Transition:
        if self.state.selected is None:
            return Transition(self.state)
        return self.dispatch(reducers.attach_photo, self.state.selected_id, self._make_photo(data, filename))

    def delete_photo(self, memory_id: int, index: int) -> Transition:
        transition = self.dispatch(reducers.delete_photo, memory_id, index)
        if self.preview and self.preview[0] == memory_id:
            memory = self.state.get(memory_id)
            if memory is None:
                self.preview = None
            else:
                self.preview = (memory_id, min(self.preview[1], len(memory.photos) - 1))
        return transition

    # Selection and pointer

    def select(self, memory_id: Optional[int]) -> Transition:
        return self.dispatch(reducers.select, memory_id)

    def pointer_down(self, memory_id: int, x: float, y: float) -> Transition:
        return self.dispatch(reducers.pointer_down, memory_id, x, y)

    def pointer_move(self, x: float, y: float) -> Transition:
        return self.dispatch(reducers.pointer_move, x, y, self.viewport)

    def pointer_up(self) -> Transition:
        return self.dispatch(reducers.pointer_up)

    def delete_selected(self) -> Transition:
        return self.dispatch(reducers.delete_selected)

    def regenerate_selected(self) -> Transition:
        return self.dispatch(reducers.regenerate_selected)

    def edit_selected(self, instruction: str) -> Transition:
        return self.dispatch(reducers.edit_selected, instruction)

    def duplicate_selected(self) -> Transition:
        return self.dispatch(reducers.duplicate_selected, self.viewport)

    def flip_selected(self) -> Transition:
        return self.dispatch(reducers.flip_selected)

    def scale_selected(self, factor: float) -> Transition:
        return self.dispatch(reducers.scale_selected, factor)

    def set_locked(self, locked: bool) -> Transition:
        return self.dispatch(reducers.set_locked, locked)

    def toggle_original(self) -> Transition:
        return self.dispatch(reducers.toggle_original)

    def nudge_selected(self, direction: str) -> Transition:
        return self.dispatch(reducers.nudge_selected, direction, self.viewport.zoom)

    def save_log(self, location: str, log_date: str, musings: str,
                 coords: Optional[Tuple[float, float]] = None) -> Transition:
        return self.dispatch(reducers.save_log, TravelLog(location, log_date, musings), coords)

    def handle_key(self, key: str, input_focused: bool = False) -> bool:
        """
        Keyboard shortcuts for the selected memory.

        Returns True when the key was consumed. Shortcuts are ignored while a
        text input has focus; only 'o' works on a locked or generating memory.
        """
        memory = self.state.selected
        if input_focused or memory is None:
            return False

        if key == "o":
            if memory.source is None:
                return False
            self.toggle_original()
            return True

        if memory.is_generating or memory.is_locked:
            return False

        arrows = {"ArrowUp": "up", "ArrowDown": "down", "ArrowLeft": "left", "ArrowRight": "right"}
        if key in arrows:
            self.nudge_selected(arrows[key])
        elif key in ("Delete", "Backspace"):
            self.delete_selected()
        elif key == "r":
            self.regenerate_selected()
        elif key == "f":
            self.flip_selected()
        elif key == "d":
            self.duplicate_selected()
        elif key in ("+", "="):
            self.scale_selected(SCALE_STEP)
        elif key == "-":
            self.scale_selected(1 / SCALE_STEP)
        else:
            return False
        return True

    # Viewport

    def display_items(self) -> List[DisplayItem]:
        """Current clustered display list; a selection swallowed by a cluster is cleared."""
        items = compute_display_items(self.state.memories, self.viewport.project, self.viewport.zoom,
                                      transitive=self.transitive_clusters)
        self.dispatch(reducers.deselect_if_clustered, items)
        return items

    def click_cluster(self, cluster: Cluster):
        self.viewport.fit_bounds([(m.lat, m.lng) for m in cluster.members], padding=0.5)

    def search(self, query: str) -> List[LocationCandidate]:
        if not query.strip():
            return []
        return self.geocoder.search(query.strip(), self.settings.language)

    def select_location(self, candidate: LocationCandidate):
        self.viewport.fly_to(candidate.lat, candidate.lng, SEARCH_FLY_TO_ZOOM)

    # Settings

    def configure(self, api_key: Optional[str] = None, language: Optional[str] = None):
        """Apply user settings: a Gemini key for generation and the geocoding language."""
        if api_key is not None:
            self.generator.set_api_key(api_key)
            self.settings.gemini_api_key = self.generator.api_key
        if language is not None:
            if language not in SUPPORTED_LANGUAGES:
                raise ValueError(f"Unsupported language: {language}")
            self.settings.language = language

    # Photo preview

    def open_preview(self, memory_id: int, index: int = 0):
        memory = self.state.get(memory_id)
        if memory is not None and memory.photos:
            self.preview = (memory_id, index % len(memory.photos))

    def close_preview(self):
        self.preview = None

    def _step_preview(self, step: int):
        if self.preview is None:
            return
        memory = self.state.get(self.preview[0])
        if memory is None or not memory.photos:
            self.preview = None
            return
        self.preview = (memory.id, (self.preview[1] + step) % len(memory.photos))

    def next_photo(self):
        self._step_preview(1)

    def previous_photo(self):
        self._step_preview(-1)

    def preview_photo(self) -> Optional[Photo]:
        if self.preview is None:
            return None
        memory = self.state.get(self.preview[0])
        if memory is None or not memory.photos:
            return None
        return memory.photos[self.preview[1] % len(memory.photos)]

    # Long operations

    def _with_handles(self, memory: Memory) -> Memory:
        photos = tuple(replace(p, handle=self.previews.create(p.data)) for p in memory.photos)
        return replace(memory, photos=photos, source=photos[0] if photos else None)

    @exclusive
    def sign_in(self, token: str) -> bool:
        """Register the user with the backend and open their default map."""
        if self.client is None:
            self.client = PersistenceClient(self.settings.api_url, timeout=self.settings.request_timeout)
        self.client.token = token
        try:
            result = self.client.sync_user()
        except PersistenceError as e:
            handle_error(e, "sign in", raise_error=False)
            self._notify(f"Sign in failed: {e}")
            return False
        self.needs_sign_in = False
        return self._load_map(int(result["defaultMapId"]))

    @exclusive
    def load_map(self, map_id: Optional[int] = None) -> bool:
        return self._load_map(map_id if map_id is not None else self.map_id)

    def _load_map(self, map_id: Optional[int]) -> bool:
        if self.client is None or map_id is None:
            return False
        try:
            data = self.client.get_map(map_id)
        except AuthenticationError:
            self.needs_sign_in = True
            self._notify(MSG_SIGN_IN)
            return False
        except PersistenceError as e:
            handle_error(e, "load map", raise_error=False)
            self._notify(f"Failed to load map: {e}")
            return False

        memories = [self._with_handles(payload_to_memory(row)) for row in data.get("memories") or []]
        with self._ids_lock:
            self._remote_ids = {m.id: m.remote_id for m in memories}
            self._photo_ids = {(m.id, p.handle): p.remote_id for m in memories for p in m.photos
                               if p.remote_id is not None}
        self.map_id = map_id
        self.preview = None
        self.dispatch(reducers.load_memories, memories)
        logger.info(f"Loaded map {map_id} with {len(memories)} memories")
        return True

    @exclusive
    def export_map(self, path: str) -> Optional[Path]:
        """Write the server's export envelope for the current map to a .pixmap file."""
        if self.client is None or self.map_id is None:
            return None
        target = Path(path)
        if target.suffix != EXPORT_EXTENSION:
            target = target.with_suffix(EXPORT_EXTENSION)
        try:
            envelope = self.client.export_map(self.map_id)
        except PersistenceError as e:
            handle_error(e, "export map", raise_error=False)
            self._notify("Export failed")
            return None
        target.write_text(json.dumps(envelope, indent=2), encoding="utf-8")
        self._notify("Export completed!")
        self.telemetry.track_event("map_exported", {"memories": len(envelope.get("memories", []))})
        return target

    @exclusive
    def import_map(self, path: str) -> bool:
        """Replace the current map's memories with those in a .pixmap file."""
        if self.client is None or self.map_id is None:
            return False
        source = Path(path)
        try:
            if source.suffix != EXPORT_EXTENSION:
                raise InvalidImportFileError(MSG_INVALID_FILE)
            try:
                data = json.loads(source.read_text(encoding="utf-8"))
            except (OSError, ValueError) as e:
                raise InvalidImportFileError(f"{MSG_INVALID_FILE} ({e})")
            memories = validate_export_envelope(data)
            self.client.import_map(self.map_id, memories, clear_existing=True)
        except PixelMapError as e:
            handle_error(e, "import map", raise_error=False)
            self._notify(MSG_INVALID_FILE if isinstance(e, InvalidImportFileError) else f"Import failed: {e}")
            return False

        loaded = self._load_map(self.map_id)
        if loaded:
            self._notify("Map imported successfully!")
        return loaded

    @exclusive
    def reset_map(self) -> bool:
        """Delete every memory on the current map and return to the world view."""
        failed = 0
        if self._can_persist():
            for memory in self.state.memories:
                remote_id = self._remote_id(memory.id, memory.remote_id)
                if remote_id is None:
                    continue
                try:
                    self.client.delete_memory(remote_id)
                except PersistenceError as e:
                    handle_error(e, f"reset map (memory {remote_id})", raise_error=False)
                    failed += 1
        with self._ids_lock:
            self._remote_ids.clear()
            self._photo_ids.clear()
        self.preview = None
        self.dispatch(reducers.clear_memories)
        self.viewport.reset()
        if failed:
            self._notify(f"{failed} memories could not be deleted on the server")
        return failed == 0
