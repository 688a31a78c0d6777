"""
Tests for the MapEditor controller: effects, background work and long operations.
"""

import json
import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from unittest.mock import MagicMock

import pytest

from pixelmap import reducers
from pixelmap.config import DEFAULT_ZOOM, Settings
from pixelmap.editor import MSG_BUSY, MSG_INVALID_FILE, MSG_SIGN_IN, MapEditor
from pixelmap.error_handling import AuthenticationError, GenerationError, PersistenceError
from pixelmap.geocoding import FALLBACK_LOCATION, GeocodingClient
from pixelmap.image_processing import placeholder_sprite_png
from pixelmap.models import ClusterItem, Photo
from pixelmap.viewport import Viewport

from conftest import make_jpeg, make_memory


@pytest.fixture
def generator():
    fake = MagicMock()
    fake.generate.return_value = placeholder_sprite_png()
    return fake


@pytest.fixture
def geocoder():
    fake = MagicMock()
    fake.reverse_geocode.return_value = "Eiffel Tower, Paris, France"
    return fake


@pytest.fixture
def client():
    fake = MagicMock()
    fake.add_memory.return_value = {"id": 50, "photos": [{"id": 7, "filename": "paris.jpg"}]}
    return fake


@pytest.fixture
def editor(generator, geocoder):
    instance = MapEditor(Settings(dev_mode=True), generator=generator, geocoder=geocoder,
                         viewport=Viewport(), telemetry=MagicMock())
    yield instance
    instance.shutdown()


@pytest.fixture
def online_editor(editor, client):
    editor.client = client
    editor.map_id = 1
    return editor


def load(editor, *memories):
    editor.dispatch(reducers.load_memories, list(memories))


class TestPlacementFlow:
    """Test a photo travelling from upload to finished sprite."""

    def test_geotagged_photo_gets_location_then_sprite(self, editor, generator, geocoder, paris_jpeg):
        editor.add_photo(paris_jpeg, "paris.jpg")
        memory = editor.state.memories[0]
        assert memory.is_generating is True
        assert editor.viewport.zoom == 16

        assert editor.wait_idle(timeout=10)
        memory = editor.state.memories[0]

        assert memory.is_generating is False
        assert memory.log.location == "Eiffel Tower, Paris, France"
        assert memory.log.date == "2025-06-15"
        assert memory.sprite is not None
        assert memory.width == 120

        geocoder.reverse_geocode.assert_called_once()
        prompt = generator.generate.call_args[0][2]
        assert "Eiffel Tower, Paris, France" in prompt
        editor.telemetry.track_memory_placed.assert_called_once()
        editor.telemetry.track_sprite_generated.assert_called_once()

    def test_photo_without_gps_waits_for_click(self, editor, plain_jpeg):
        editor.add_photo(plain_jpeg, "mystery.jpg")
        assert editor.state.pending_photo is not None
        assert editor.state.memories == ()

        editor.click_map(-13.1631, -72.545)
        assert editor.wait_idle(timeout=10)

        memory = editor.state.memories[0]
        assert (memory.lat, memory.lng) == (-13.1631, -72.545)
        assert memory.sprite is not None

    def test_generation_failure_clears_flag(self, editor, generator, paris_jpeg):
        generator.generate.side_effect = GenerationError("quota exceeded")
        editor.add_photo(paris_jpeg, "paris.jpg")
        assert editor.wait_idle(timeout=10)

        memory = editor.state.memories[0]
        assert memory.is_generating is False
        assert memory.sprite is None
        assert any("quota exceeded" in m for m in editor.pop_notifications())
        editor.telemetry.track_generation_failure.assert_called_once()

    def test_geocode_fallback_is_tracked(self, editor, geocoder, paris_jpeg):
        geocoder.reverse_geocode.return_value = FALLBACK_LOCATION
        editor.add_photo(paris_jpeg, "paris.jpg")
        assert editor.wait_idle(timeout=10)

        assert editor.state.memories[0].log.location == FALLBACK_LOCATION
        editor.telemetry.track_geocode_fallback.assert_called_once()

    def test_malformed_geocoder_response_still_generates(self, generator, paris_jpeg):
        session = MagicMock()
        session.headers = {}
        session.get.return_value.ok = True
        session.get.return_value.json.return_value = [{"display_name": "x"}]
        editor = MapEditor(Settings(dev_mode=True), generator=generator,
                           geocoder=GeocodingClient(session=session), telemetry=MagicMock())
        try:
            editor.add_photo(paris_jpeg, "paris.jpg")
            assert editor.wait_idle(timeout=10)
        finally:
            editor.shutdown()

        memory = editor.state.memories[0]
        assert memory.is_generating is False
        assert memory.sprite is not None
        assert memory.log.location == FALLBACK_LOCATION
        generator.generate.assert_called_once()

    def test_crashing_geocoder_still_generates(self, editor, generator, geocoder, paris_jpeg):
        geocoder.reverse_geocode.side_effect = RuntimeError("boom")
        editor.add_photo(paris_jpeg, "paris.jpg")
        assert editor.wait_idle(timeout=10)

        memory = editor.state.memories[0]
        assert memory.is_generating is False
        assert memory.sprite is not None
        assert memory.log.location == FALLBACK_LOCATION


class TestKeyboard:
    """Test keyboard shortcut rules."""

    def test_no_selection_consumes_nothing(self, editor):
        load(editor, make_memory(0))
        assert editor.handle_key("f") is False

    def test_shortcuts_ignored_while_typing(self, editor):
        load(editor, make_memory(0))
        editor.select(0)
        assert editor.handle_key("f", input_focused=True) is False
        assert editor.state.get(0).flipped_horizontally is False

    def test_flip_and_scale_keys(self, editor):
        load(editor, make_memory(0))
        editor.select(0)

        assert editor.handle_key("f") is True
        assert editor.handle_key("+") is True
        memory = editor.state.get(0)
        assert memory.flipped_horizontally is True
        assert memory.width == pytest.approx(132.0)

        editor.handle_key("-")
        assert editor.state.get(0).width == pytest.approx(120.0)

    def test_arrow_key_nudges(self, editor):
        load(editor, make_memory(0, 10.0, 10.0))
        editor.select(0)
        editor.handle_key("ArrowLeft")
        assert editor.state.get(0).lng == pytest.approx(10.0 - 0.001 / DEFAULT_ZOOM ** 2)

    def test_locked_memory_only_toggles_original(self, editor):
        load(editor, make_memory(0, is_locked=True))
        editor.select(0)

        assert editor.handle_key("Delete") is False
        assert editor.handle_key("o") is True
        assert editor.state.get(0).show_original is True

    def test_generating_memory_blocks_shortcuts(self, editor):
        load(editor, make_memory(0, is_generating=True))
        editor.select(0)
        assert editor.handle_key("d") is False
        assert len(editor.state.memories) == 1

    def test_delete_key(self, editor):
        load(editor, make_memory(0))
        editor.select(0)
        assert editor.handle_key("Backspace") is True
        assert editor.state.memories == ()

    def test_unknown_key(self, editor):
        load(editor, make_memory(0))
        editor.select(0)
        assert editor.handle_key("q") is False


class TestPersistence:
    """Test effects reaching the REST client."""

    def test_nothing_is_sent_without_a_map(self, editor, client, paris_jpeg):
        editor.client = client
        editor.add_photo(paris_jpeg, "paris.jpg")
        assert editor.wait_idle(timeout=10)
        client.add_memory.assert_not_called()

    def test_create_then_update(self, online_editor, client, paris_jpeg):
        online_editor.add_photo(paris_jpeg, "paris.jpg")
        assert online_editor.wait_idle(timeout=10)

        client.add_memory.assert_called_once()
        payload = client.add_memory.call_args[0][0]
        assert payload["map_id"] == 1
        assert payload["processed_image"].startswith("data:image/png;base64,")
        assert len(payload["photos"]) == 1

        memory = online_editor.state.memories[0]
        assert memory.remote_id == 50
        assert memory.photos[0].remote_id == 7

        online_editor.select(memory.id)
        online_editor.flip_selected()
        assert online_editor.wait_idle(timeout=10)

        remote_id, update = client.update_memory.call_args[0]
        assert remote_id == 50
        assert update["flipped_horizontally"] is True
        assert "photos" not in update

    def test_photo_routes_use_remote_ids(self, online_editor, client):
        photo = {"photo_data": "data:image/jpeg;base64,AAAA", "filename": "a.jpg"}
        client.get_map.return_value = {"map": {"id": 1}, "memories": [
            {"id": 50, "lat": 1.0, "lng": 2.0, "is_locked": 1,
             "photos": [dict(photo, id=7), dict(photo, id=8)]},
        ]}
        client.add_photo.return_value = {"id": 9}
        assert online_editor.load_map() is True

        online_editor.drop_photo_on_memory(50, make_jpeg(), "new.jpg")
        online_editor.delete_photo(50, 1)
        assert online_editor.wait_idle(timeout=10)

        memory_id, data, filename = client.add_photo.call_args[0]
        assert (memory_id, filename) == (50, "new.jpg")
        assert data.startswith("data:image/jpeg;base64,")
        client.delete_photo.assert_called_once_with(50, 8)
        assert [p.remote_id for p in online_editor.state.get(50).photos] == [7, 9]

    def test_expired_session_requires_sign_in(self, online_editor, client, paris_jpeg):
        client.add_memory.side_effect = AuthenticationError("Invalid token", 401)
        online_editor.add_photo(paris_jpeg, "paris.jpg")
        assert online_editor.wait_idle(timeout=10)

        assert online_editor.needs_sign_in is True
        assert MSG_SIGN_IN in online_editor.pop_notifications()

        # Further edits stay local until the user signs in again
        online_editor.select(online_editor.state.memories[0].id)
        online_editor.flip_selected()
        assert online_editor.wait_idle(timeout=10)
        client.update_memory.assert_not_called()

    def test_server_error_is_reported(self, online_editor, client, paris_jpeg):
        client.add_memory.side_effect = PersistenceError("Map not found", 404)
        online_editor.add_photo(paris_jpeg, "paris.jpg")
        assert online_editor.wait_idle(timeout=10)

        assert online_editor.needs_sign_in is False
        assert any("Map not found" in m for m in online_editor.pop_notifications())


class TestLongOperations:
    """Test sign in, load, import, export and reset."""

    def test_sign_in_loads_default_map(self, editor, client):
        editor.client = client
        client.sync_user.return_value = {"user": {"id": "u1"}, "defaultMapId": 4}
        client.get_map.return_value = {"map": {"id": 4}, "memories": [
            {"id": 12, "lat": 35.0, "lng": 135.0, "log_location": "Kyoto",
             "photos": [{"id": 3, "photo_data": "data:image/jpeg;base64,AAAA", "filename": "k.jpg"}]},
        ]}

        assert editor.sign_in("tok") is True
        assert client.token == "tok"
        assert editor.map_id == 4

        memory = editor.state.get(12)
        assert memory.remote_id == 12
        assert memory.photos[0].remote_id == 3
        assert memory.photos[0].handle.startswith("blob:")
        assert editor.state.next_id == 13

    def test_failed_sign_in(self, editor, client):
        editor.client = client
        client.sync_user.side_effect = AuthenticationError("Invalid token", 401)
        assert editor.sign_in("bad") is False
        assert editor.map_id is None

    def test_busy_lock_rejects_second_operation(self, online_editor, client):
        online_editor._busy.acquire()
        try:
            assert online_editor.reset_map() is None
        finally:
            online_editor._busy.release()
        assert MSG_BUSY in online_editor.pop_notifications()
        client.delete_memory.assert_not_called()

    def test_import_rejects_wrong_extension(self, online_editor, client, tmp_path):
        path = tmp_path / "map.json"
        path.write_text(json.dumps({"memories": []}))

        assert online_editor.import_map(str(path)) is False
        assert MSG_INVALID_FILE in online_editor.pop_notifications()
        client.import_map.assert_not_called()

    def test_import_rejects_malformed_file(self, online_editor, client, tmp_path):
        path = tmp_path / "broken.pixmap"
        path.write_text("{not json")

        assert online_editor.import_map(str(path)) is False
        client.import_map.assert_not_called()

    def test_import_replaces_map(self, online_editor, client, tmp_path):
        path = tmp_path / "trip.pixmap"
        memories = [{"lat": 1.0, "lng": 2.0, "photos": []}]
        path.write_text(json.dumps({"version": "2.0.0", "memories": memories}))
        client.get_map.return_value = {"map": {"id": 1}, "memories": [{"id": 3, "lat": 1.0, "lng": 2.0}]}

        assert online_editor.import_map(str(path)) is True
        client.import_map.assert_called_once_with(1, memories, clear_existing=True)
        assert [m.id for m in online_editor.state.memories] == [3]
        assert "Map imported successfully!" in online_editor.pop_notifications()

    def test_export_writes_pixmap_file(self, online_editor, client, tmp_path):
        client.export_map.return_value = {"version": "2.0.0", "memories": [{"lat": 1, "lng": 2}]}

        target = online_editor.export_map(str(tmp_path / "backup.json"))

        assert target.name == "backup.pixmap"
        assert json.loads(target.read_text())["version"] == "2.0.0"

    def test_reset_map(self, online_editor, client):
        load(online_editor, make_memory(0, remote_id=20), make_memory(1, remote_id=21), make_memory(2))
        online_editor.viewport.fly_to(40.0, 40.0, 12)

        assert online_editor.reset_map() is True
        assert online_editor.state.memories == ()
        assert sorted(c[0][0] for c in client.delete_memory.call_args_list) == [20, 21]
        assert online_editor.viewport.zoom == DEFAULT_ZOOM


class TestPreviewAndViewport:
    """Test the photo preview and viewport helpers."""

    def test_preview_wraps_around(self, editor):
        memory = make_memory(0)
        second = Photo(data=b"2", filename="2.jpg", handle="blob:2")
        load(editor, make_memory(0, photos=memory.photos + (second,)))

        editor.open_preview(0)
        editor.previous_photo()
        assert editor.preview_photo() == second
        editor.next_photo()
        assert editor.preview_photo() == memory.photos[0]

    def test_deleting_previewed_photo_moves_preview(self, editor):
        memory = make_memory(0)
        second = Photo(data=b"2", filename="2.jpg", handle="blob:2")
        load(editor, make_memory(0, photos=memory.photos + (second,)))

        editor.open_preview(0, 1)
        editor.delete_photo(0, 1)
        assert editor.preview == (0, 0)

        editor.delete_photo(0, 0)
        assert editor.preview is None
        assert editor.state.memories == ()

    def test_cancelled_photo_handle_is_revoked(self, editor, plain_jpeg):
        editor.add_photo(plain_jpeg, "mystery.jpg")
        assert len(editor.previews) == 1
        editor.cancel_placement()
        assert len(editor.previews) == 0

    def test_clustered_selection_is_cleared(self, editor):
        load(editor, make_memory(0, 48.85, 2.29), make_memory(1, 48.86, 2.35))
        editor.select(0)

        items = editor.display_items()
        assert isinstance(items[0], ClusterItem)
        assert editor.state.selected_id is None

        editor.click_cluster(items[0].cluster)
        assert editor.viewport.zoom > 6

    def test_search_and_fly(self, editor, geocoder):
        assert editor.search("   ") == []
        candidate = MagicMock(lat=41.9, lng=12.5)
        geocoder.search.return_value = [candidate]

        assert editor.search(" Rome ") == [candidate]
        geocoder.search.assert_called_once_with("Rome", "en")
        editor.select_location(candidate)
        assert editor.viewport.zoom == 13

    def test_configure_key_and_language(self, editor, geocoder, generator):
        editor.configure(api_key="user-key", language="zh")
        generator.set_api_key.assert_called_once_with("user-key")

        editor.search("Kyoto")
        geocoder.search.assert_called_once_with("Kyoto", "zh")

        with pytest.raises(ValueError):
            editor.configure(language="fr")
        assert editor.settings.language == "zh"

    def test_configured_language_reaches_reverse_lookup(self, editor, geocoder, paris_jpeg):
        editor.configure(language="zh")
        editor.add_photo(paris_jpeg, "paris.jpg")
        assert editor.wait_idle(timeout=10)
        assert geocoder.reverse_geocode.call_args[0][2] == "zh"
