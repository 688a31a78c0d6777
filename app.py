"""
PixelMap - Streamlit Map Editor

Turn travel photos into pixel-art memories pinned on a world map:
- Geotagged photos are placed automatically, others by picking a spot
- Each memory gets an isometric pixel-art sprite and a travel log
- Nearby memories are grouped into clusters when zoomed out
"""

import io
import tempfile
from pathlib import Path

import pandas as pd
import plotly.express as px
import streamlit as st
from PIL import Image, ImageOps

from pixelmap.config import Settings
from pixelmap.converters import export_filename
from pixelmap.editor import MapEditor
from pixelmap.models import ClusterItem, MemoryItem
from pixelmap.reducers import LOADING_LOCATION

# Page configuration
st.set_page_config(
    page_title="PixelMap",
    page_icon="🗺️",
    layout="wide",
    initial_sidebar_state="expanded"
)

# Initialize session state
if 'editor' not in st.session_state:
    st.session_state.editor = MapEditor(Settings.from_env())
if 'seen_uploads' not in st.session_state:
    st.session_state.seen_uploads = set()
if 'candidates' not in st.session_state:
    st.session_state.candidates = []

editor: MapEditor = st.session_state.editor


@st.fragment(run_every=2)
def poll_background_work():
    """Apply finished generations and lookups; rerun the page when something changed."""
    if editor.process_completions():
        st.rerun()


def show_notifications():
    for message in editor.pop_notifications():
        st.toast(message)


def sprite_image(memory):
    """Image to draw for a memory: the sprite, or the source photo when toggled."""
    if memory.show_original and memory.source is not None:
        data = memory.source.data
    elif memory.sprite is not None:
        data = memory.sprite.png
    elif memory.source is not None:
        data = memory.source.data
    else:
        return None
    image = Image.open(io.BytesIO(data))
    if memory.flipped_horizontally:
        image = ImageOps.mirror(image)
    return image


def render_sidebar():
    with st.sidebar:
        st.header("🔐 Account")
        if editor.map_id is None or editor.needs_sign_in:
            token = st.text_input("Access token", type="password",
                                  help="Bearer token from the passkey service")
            if st.button("Sign in", disabled=not token):
                if editor.sign_in(token):
                    st.success("Signed in")
        else:
            st.caption(f"Editing map #{editor.map_id}")
            if st.button("🔄 Reload map"):
                editor.load_map()

        st.markdown("---")
        st.header("⚙️ Settings")
        with st.form("settings"):
            api_key = st.text_input("Gemini API key", type="password",
                                    help="Leave empty to keep the current key")
            languages = {"en": "English", "zh": "中文"}
            language = st.selectbox("Place name language", list(languages),
                                    index=list(languages).index(editor.settings.language)
                                    if editor.settings.language in languages else 0,
                                    format_func=languages.get)
            if st.form_submit_button("Save settings"):
                editor.configure(api_key=api_key or None, language=language)
                st.success("Settings saved")
        if not editor.settings.gemini_api_key and not editor.settings.dev_mode:
            st.caption("No Gemini API key set: pixel art cannot be generated yet.")

        st.markdown("---")
        st.header("📤 Add Photos")
        uploads = st.file_uploader("Travel photos", type=['jpg', 'jpeg', 'png', 'webp'],
                                   accept_multiple_files=True)
        for uploaded_file in uploads or []:
            if uploaded_file.file_id in st.session_state.seen_uploads:
                continue
            st.session_state.seen_uploads.add(uploaded_file.file_id)
            editor.add_photo(uploaded_file.getvalue(), uploaded_file.name, uploaded_file.type)

        st.markdown("---")
        st.header("🔎 Search")
        with st.form("search"):
            query = st.text_input("Place name")
            if st.form_submit_button("Search"):
                st.session_state.candidates = editor.search(query)
        for candidate in st.session_state.candidates:
            if st.button(candidate.display_name, key=f"candidate-{candidate.place_id}"):
                editor.select_location(candidate)

        st.markdown("---")
        st.header("💾 Map File")
        if editor.map_id is not None:
            if st.button("Prepare export"):
                target = Path(tempfile.mkdtemp()) / export_filename()
                exported = editor.export_map(str(target))
                if exported:
                    st.session_state.export_file = exported
            if st.session_state.get('export_file'):
                exported = st.session_state.export_file
                st.download_button("⬇️ Download", exported.read_bytes(), file_name=exported.name,
                                   mime="application/json")

            imported = st.file_uploader("Import .pixmap (replaces this map)", key="import")
            if imported is not None and st.button("Import"):
                path = Path(tempfile.mkdtemp()) / imported.name
                path.write_bytes(imported.getvalue())
                editor.import_map(str(path))

        confirm = st.checkbox("I want to delete every memory on this map")
        if st.button("🗑️ Reset map", disabled=not confirm):
            editor.reset_map()


def render_map():
    viewport = editor.viewport
    items = editor.display_items()

    rows = []
    for item in items:
        if isinstance(item, ClusterItem):
            cluster = item.cluster
            rows.append({'kind': 'cluster', 'item_id': cluster.id, 'lat': cluster.lat, 'lng': cluster.lng,
                         'label': f"{cluster.count} memories", 'size': 10 + cluster.count})
        elif isinstance(item, MemoryItem):
            memory = item.memory
            status = " (generating...)" if memory.is_generating else ""
            rows.append({'kind': 'memory', 'item_id': str(memory.id), 'lat': memory.lat, 'lng': memory.lng,
                         'label': f"{memory.log.location or 'Memory'}{status}", 'size': 8})

    col1, col2, col3, col4 = st.columns(4)
    with col1:
        if st.button("➕ Zoom in"):
            viewport.fly_to(viewport.center_lat, viewport.center_lng, viewport.zoom + 1)
    with col2:
        if st.button("➖ Zoom out"):
            viewport.fly_to(viewport.center_lat, viewport.center_lng, viewport.zoom - 1)
    with col3:
        if st.button("🌍 World view"):
            viewport.reset()
    with col4:
        st.metric("Memories", len(editor.state.memories))

    if not rows:
        st.info("👈 Upload photos to start your travel map!")
        return

    # Southern items are drawn last so they sit on top
    df = pd.DataFrame(rows).sort_values('lat', ascending=False)
    fig = px.scatter_mapbox(
        df,
        lat='lat',
        lon='lng',
        hover_name='label',
        custom_data=['kind', 'item_id'],
        color='kind',
        size='size',
        zoom=viewport.zoom,
        center={'lat': viewport.center_lat, 'lon': viewport.center_lng},
        height=600,
    )
    fig.update_layout(
        mapbox_style="open-street-map",
        margin={"r": 0, "t": 0, "l": 0, "b": 0}
    )
    event = st.plotly_chart(fig, use_container_width=True, on_select="rerun", selection_mode="points")

    points = event.selection.points if event and event.selection else []
    if points:
        kind, item_id = points[0]['customdata'][:2]
        if kind == 'cluster':
            cluster = next(i.cluster for i in items if isinstance(i, ClusterItem) and i.cluster.id == item_id)
            editor.click_cluster(cluster)
            st.rerun()
        elif int(item_id) != editor.state.selected_id:
            editor.select(int(item_id))
            st.rerun()


def render_placement():
    photo = editor.state.pending_photo
    if photo is None:
        return
    st.warning("📍 This photo has no location. Pick where it was taken.")
    col1, col2 = st.columns([1, 2])
    with col1:
        st.image(photo.data, caption=photo.filename, use_container_width=True)
    with col2:
        with st.form("placement"):
            lat = st.number_input("Latitude", -90.0, 90.0, float(editor.viewport.center_lat), format="%.5f")
            lng = st.number_input("Longitude", -180.0, 180.0, float(editor.viewport.center_lng), format="%.5f")
            if st.form_submit_button("Place photo here"):
                editor.click_map(lat, lng)
                st.rerun()
        if st.button("Cancel"):
            editor.cancel_placement()
            st.rerun()


def render_selected():
    memory = editor.state.selected
    if memory is None:
        st.caption("Select a memory on the map to edit it.")
        return

    st.subheader(memory.log.location or "Memory")
    image = sprite_image(memory)
    if image is not None:
        st.image(image, width=int(memory.width))
    if memory.is_generating:
        st.info("🎨 Creating pixel art...")

    # Toolbar buttons go through the keyboard shortcuts so they share their rules
    toolbar = [("🔁 Regenerate", "r"), ("↔️ Flip", "f"), ("📄 Duplicate", "d"),
               ("➕ Bigger", "+"), ("➖ Smaller", "-"), ("👁️ Original", "o"), ("🗑️ Delete", "Delete")]
    for col, (label, key) in zip(st.columns(len(toolbar)), toolbar):
        with col:
            if st.button(label, key=f"tool-{key}"):
                editor.handle_key(key)
                st.rerun()

    arrows = [("⬆️", "ArrowUp"), ("⬇️", "ArrowDown"), ("⬅️", "ArrowLeft"), ("➡️", "ArrowRight")]
    for col, (label, key) in zip(st.columns(len(arrows) + 1), arrows):
        with col:
            if st.button(label, key=f"nudge-{key}"):
                editor.handle_key(key)
                st.rerun()

    locked = st.toggle("🔒 Locked (dropped photos join this memory)", value=memory.is_locked,
                       key=f"lock-{memory.id}")
    if locked != memory.is_locked:
        editor.set_locked(locked)
        st.rerun()

    with st.form(f"edit-{memory.id}"):
        instruction = st.text_input("Change the pixel art", placeholder="make it snowy")
        if st.form_submit_button("Apply", disabled=memory.is_generating):
            editor.edit_selected(instruction)
            st.rerun()

    with st.expander("📝 Travel Log", expanded=False):
        with st.form(f"log-{memory.id}"):
            location = st.text_input("Location", value="" if memory.log.location == LOADING_LOCATION
                                     else memory.log.location)
            log_date = st.text_input("Date", value=memory.log.date)
            musings = st.text_area("Musings", value=memory.log.musings)
            names = ["Keep current position"] + [c.display_name for c in st.session_state.candidates]
            move_to = st.selectbox("Move to search result", names)
            if st.form_submit_button("Save"):
                coords = None
                for candidate in st.session_state.candidates:
                    if candidate.display_name == move_to:
                        coords = (candidate.lat, candidate.lng)
                        break
                editor.save_log(location, log_date, musings, coords)
                st.rerun()

    render_photos(memory)


def render_photos(memory):
    with st.expander(f"📷 Photos ({len(memory.photos)})", expanded=editor.preview is not None):
        if editor.preview is None or editor.preview[0] != memory.id:
            if memory.photos and st.button("View photos"):
                editor.open_preview(memory.id)
                st.rerun()
        else:
            photo = editor.preview_photo()
            if photo is not None:
                st.image(photo.data, caption=photo.filename, use_container_width=True)
            col1, col2, col3, col4 = st.columns(4)
            with col1:
                if st.button("◀ Previous"):
                    editor.previous_photo()
                    st.rerun()
            with col2:
                if st.button("Next ▶"):
                    editor.next_photo()
                    st.rerun()
            with col3:
                if st.button("Delete photo"):
                    editor.delete_photo(memory.id, editor.preview[1])
                    st.rerun()
            with col4:
                if st.button("Close"):
                    editor.close_preview()
                    st.rerun()

        extra = st.file_uploader("Add a photo to this memory", type=['jpg', 'jpeg', 'png', 'webp'],
                                 key=f"attach-{memory.id}")
        if extra is not None and extra.file_id not in st.session_state.seen_uploads:
            st.session_state.seen_uploads.add(extra.file_id)
            if memory.is_locked:
                editor.drop_photo_on_memory(memory.id, extra.getvalue(), extra.name)
            else:
                editor.add_photo_to_selected(extra.getvalue(), extra.name)
            st.rerun()


def main():
    st.title("🗺️ PixelMap")
    st.markdown("Turn your travel photos into a pixel-art world map.")

    editor.process_completions()
    render_sidebar()

    map_col, detail_col = st.columns([3, 2])
    with map_col:
        render_placement()
        render_map()
    with detail_col:
        render_selected()

    show_notifications()
    if editor.state.generating_ids:
        poll_background_work()


if __name__ == "__main__":
    main()
