import json
import sqlite3
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from .config import DEFAULT_MAP_NAME, EXPORT_VERSION
from .models import DEFAULT_SPRITE_SIZE

DATABASE_PATH = "pixelmap.db"

MEMORY_UPDATE_FIELDS = (
    'processed_image', 'lat', 'lng', 'width', 'height',
    'content_bounds', 'flipped_horizontally', 'is_locked',
    'log_location', 'log_date', 'log_musings',
)

def _bounds_to_text(value) -> Optional[str]:
    if value is None or isinstance(value, str):
        return value
    return json.dumps(value)

def _photo_fields(photo) -> tuple:
    """Photos arrive as {photo_data, filename} (export form), {data, filename} or a bare string."""
    if isinstance(photo, str):
        return photo, ''
    return photo.get('photo_data') or photo.get('data'), photo.get('filename') or ''

class Database:
    """
    SQLite store for users, maps, memories and photos.

    Every read or write of a map, memory or photo is scoped to the requesting
    user by joining through maps.user_id; a miss returns None (or False) and
    never reveals whether the row exists for someone else.
    """

    def __init__(self, db_path: str = DATABASE_PATH):
        self.db_path = db_path
        self.init_db()

    def get_connection(self):
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        conn.execute('PRAGMA foreign_keys = ON')
        return conn

    def init_db(self):
        """Initialize database tables"""
        with self.get_connection() as conn:
            conn.executescript('''
                CREATE TABLE IF NOT EXISTS users (
                    id TEXT PRIMARY KEY,
                    username TEXT NOT NULL,
                    email TEXT,
                    display_name TEXT,
                    created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
                    updated_at DATETIME DEFAULT CURRENT_TIMESTAMP
                );

                CREATE TABLE IF NOT EXISTS maps (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id TEXT NOT NULL,
                    name TEXT NOT NULL,
                    is_public BOOLEAN DEFAULT 0,
                    created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
                    updated_at DATETIME DEFAULT CURRENT_TIMESTAMP,
                    FOREIGN KEY (user_id) REFERENCES users (id) ON DELETE CASCADE
                );

                CREATE TABLE IF NOT EXISTS memories (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    map_id INTEGER NOT NULL,
                    source_type TEXT CHECK (source_type IN ('file', 'text')),
                    source_data TEXT,
                    processed_image TEXT,
                    lat REAL NOT NULL,
                    lng REAL NOT NULL,
                    width REAL DEFAULT 120,
                    height REAL DEFAULT 120,
                    content_bounds TEXT,
                    flipped_horizontally BOOLEAN DEFAULT 0,
                    is_locked BOOLEAN DEFAULT 0,
                    log_location TEXT,
                    log_date TEXT,
                    log_musings TEXT,
                    created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
                    updated_at DATETIME DEFAULT CURRENT_TIMESTAMP,
                    FOREIGN KEY (map_id) REFERENCES maps (id) ON DELETE CASCADE
                );

                CREATE TABLE IF NOT EXISTS photos (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    memory_id INTEGER NOT NULL,
                    photo_data TEXT NOT NULL,
                    filename TEXT,
                    created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
                    FOREIGN KEY (memory_id) REFERENCES memories (id) ON DELETE CASCADE
                );

                CREATE INDEX IF NOT EXISTS idx_maps_user_id ON maps(user_id);
                CREATE INDEX IF NOT EXISTS idx_memories_map_id ON memories(map_id);
                CREATE INDEX IF NOT EXISTS idx_photos_memory_id ON photos(memory_id);
            ''')

    @staticmethod
    def _memory_dict(row) -> Dict[str, Any]:
        memory = dict(row)
        if memory.get('content_bounds'):
            try:
                memory['content_bounds'] = json.loads(memory['content_bounds'])
            except ValueError:
                memory['content_bounds'] = None
        return memory

    # User operations
    def upsert_user(self, user_id: str, username: str, email: Optional[str] = None,
                    display_name: Optional[str] = None) -> Dict[str, Any]:
        with self.get_connection() as conn:
            conn.execute('''
                INSERT INTO users (id, username, email, display_name)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    username = excluded.username,
                    email = excluded.email,
                    display_name = excluded.display_name,
                    updated_at = CURRENT_TIMESTAMP
            ''', (user_id, username, email, display_name or username))
            return dict(conn.execute('SELECT * FROM users WHERE id = ?', (user_id,)).fetchone())

    def ensure_user(self, user_id: str, username: str):
        """Create a bare user row if this identity has never synced."""
        with self.get_connection() as conn:
            conn.execute('INSERT OR IGNORE INTO users (id, username, display_name) VALUES (?, ?, ?)',
                         (user_id, username, username))

    def get_user(self, user_id: str) -> Optional[Dict[str, Any]]:
        with self.get_connection() as conn:
            row = conn.execute('SELECT * FROM users WHERE id = ?', (user_id,)).fetchone()
            return dict(row) if row else None

    def get_or_create_default_map(self, user_id: str) -> Dict[str, Any]:
        with self.get_connection() as conn:
            row = conn.execute('SELECT * FROM maps WHERE user_id = ? ORDER BY created_at ASC, id ASC LIMIT 1',
                               (user_id,)).fetchone()
            if row:
                return dict(row)
        return self.create_map(user_id, DEFAULT_MAP_NAME)

    # Map operations
    def get_maps(self, user_id: str) -> List[Dict[str, Any]]:
        with self.get_connection() as conn:
            rows = conn.execute('SELECT * FROM maps WHERE user_id = ? ORDER BY updated_at DESC, id DESC',
                                (user_id,)).fetchall()
            return [dict(row) for row in rows]

    def get_owned_map(self, map_id: int, user_id: str) -> Optional[Dict[str, Any]]:
        with self.get_connection() as conn:
            row = conn.execute('SELECT * FROM maps WHERE id = ? AND user_id = ?', (map_id, user_id)).fetchone()
            return dict(row) if row else None

    def create_map(self, user_id: str, name: Optional[str] = None, is_public: bool = False) -> Dict[str, Any]:
        with self.get_connection() as conn:
            cursor = conn.execute('INSERT INTO maps (user_id, name, is_public) VALUES (?, ?, ?)',
                                  (user_id, name or 'New Map', int(is_public)))
            return dict(conn.execute('SELECT * FROM maps WHERE id = ?', (cursor.lastrowid,)).fetchone())

    def update_map(self, map_id: int, user_id: str, name: Optional[str] = None,
                   is_public: Optional[bool] = None) -> Optional[Dict[str, Any]]:
        current = self.get_owned_map(map_id, user_id)
        if current is None:
            return None
        with self.get_connection() as conn:
            conn.execute('UPDATE maps SET name = ?, is_public = ?, updated_at = CURRENT_TIMESTAMP WHERE id = ?',
                         (name or current['name'],
                          int(is_public) if is_public is not None else current['is_public'],
                          map_id))
            return dict(conn.execute('SELECT * FROM maps WHERE id = ?', (map_id,)).fetchone())

    def delete_map(self, map_id: int, user_id: str) -> bool:
        with self.get_connection() as conn:
            cursor = conn.execute('DELETE FROM maps WHERE id = ? AND user_id = ?', (map_id, user_id))
            return cursor.rowcount > 0

    def get_map_with_memories(self, map_id: int, user_id: str) -> Optional[Dict[str, Any]]:
        map_row = self.get_owned_map(map_id, user_id)
        if map_row is None:
            return None
        with self.get_connection() as conn:
            rows = conn.execute('SELECT * FROM memories WHERE map_id = ? ORDER BY created_at DESC, id DESC',
                                (map_id,)).fetchall()
            memories = []
            for row in rows:
                memory = self._memory_dict(row)
                photos = conn.execute('SELECT * FROM photos WHERE memory_id = ? ORDER BY id', (row['id'],))
                memory['photos'] = [dict(p) for p in photos.fetchall()]
                memories.append(memory)
        return {'map': map_row, 'memories': memories}

    def export_map(self, map_id: int, user_id: str) -> Optional[Dict[str, Any]]:
        """Export envelope: photos carry only photo_data and filename."""
        map_row = self.get_owned_map(map_id, user_id)
        if map_row is None:
            return None
        with self.get_connection() as conn:
            rows = conn.execute('SELECT * FROM memories WHERE map_id = ? ORDER BY id', (map_id,)).fetchall()
            memories = []
            for row in rows:
                memory = self._memory_dict(row)
                photos = conn.execute('SELECT photo_data, filename FROM photos WHERE memory_id = ? ORDER BY id',
                                      (row['id'],))
                memory['photos'] = [dict(p) for p in photos.fetchall()]
                memories.append(memory)
        return {
            'version': EXPORT_VERSION,
            'map': map_row,
            'memories': memories,
            'exportDate': datetime.now(timezone.utc).isoformat(),
        }

    def import_memories(self, map_id: int, user_id: str, memories: Iterable[Dict[str, Any]],
                        clear_existing: bool = False) -> Optional[int]:
        """Insert memories (and their photos) in one transaction. Returns the count imported."""
        if self.get_owned_map(map_id, user_id) is None:
            return None
        count = 0
        with self.get_connection() as conn:
            if clear_existing:
                conn.execute('DELETE FROM memories WHERE map_id = ?', (map_id,))
            for memory in memories:
                self._insert_memory(conn, map_id, memory)
                count += 1
        return count

    # Memory operations
    def _insert_memory(self, conn, map_id: int, memory: Dict[str, Any]) -> int:
        cursor = conn.execute('''
            INSERT INTO memories (
                map_id, source_type, source_data, processed_image,
                lat, lng, width, height, content_bounds,
                flipped_horizontally, is_locked,
                log_location, log_date, log_musings
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        ''', (
            map_id,
            memory.get('source_type') or 'file',
            memory.get('source_data'),
            memory.get('processed_image'),
            memory['lat'],
            memory['lng'],
            memory.get('width') or DEFAULT_SPRITE_SIZE,
            memory.get('height') or DEFAULT_SPRITE_SIZE,
            _bounds_to_text(memory.get('content_bounds')),
            int(bool(memory.get('flipped_horizontally'))),
            int(bool(memory.get('is_locked'))),
            memory.get('log_location') or '',
            memory.get('log_date') or '',
            memory.get('log_musings') or '',
        ))
        memory_id = cursor.lastrowid
        for photo in memory.get('photos') or []:
            photo_data, filename = _photo_fields(photo)
            if photo_data:
                conn.execute('INSERT INTO photos (memory_id, photo_data, filename) VALUES (?, ?, ?)',
                             (memory_id, photo_data, filename))
        return memory_id

    def add_memory(self, user_id: str, memory: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Create a memory on one of the user's maps; the result lists the new photo ids."""
        if self.get_owned_map(memory['map_id'], user_id) is None:
            return None
        with self.get_connection() as conn:
            memory_id = self._insert_memory(conn, memory['map_id'], memory)
            row = conn.execute('SELECT * FROM memories WHERE id = ?', (memory_id,)).fetchone()
            result = self._memory_dict(row)
            photos = conn.execute('SELECT id, filename FROM photos WHERE memory_id = ? ORDER BY id', (memory_id,))
            result['photos'] = [dict(p) for p in photos.fetchall()]
            return result

    def get_owned_memory(self, memory_id: int, user_id: str) -> Optional[Dict[str, Any]]:
        with self.get_connection() as conn:
            row = conn.execute('''
                SELECT m.* FROM memories m
                JOIN maps mp ON m.map_id = mp.id
                WHERE m.id = ? AND mp.user_id = ?
            ''', (memory_id, user_id)).fetchone()
            return self._memory_dict(row) if row else None

    def update_memory(self, memory_id: int, user_id: str, fields: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Apply the updatable fields present in fields; anything else is ignored."""
        if self.get_owned_memory(memory_id, user_id) is None:
            return None

        updates, values = [], []
        for field in MEMORY_UPDATE_FIELDS:
            if field in fields and fields[field] is not None:
                value = fields[field]
                if field == 'content_bounds':
                    value = _bounds_to_text(value)
                elif field in ('flipped_horizontally', 'is_locked'):
                    value = int(bool(value))
                updates.append(f'{field} = ?')
                values.append(value)

        with self.get_connection() as conn:
            if updates:
                updates.append('updated_at = CURRENT_TIMESTAMP')
                conn.execute(f"UPDATE memories SET {', '.join(updates)} WHERE id = ?", values + [memory_id])
            row = conn.execute('SELECT * FROM memories WHERE id = ?', (memory_id,)).fetchone()
            return self._memory_dict(row)

    def delete_memory(self, memory_id: int, user_id: str) -> bool:
        if self.get_owned_memory(memory_id, user_id) is None:
            return False
        with self.get_connection() as conn:
            conn.execute('DELETE FROM memories WHERE id = ?', (memory_id,))
            return True

    # Photo operations
    def add_photo(self, memory_id: int, user_id: str, photo_data: str,
                  filename: str = '') -> Optional[Dict[str, Any]]:
        if self.get_owned_memory(memory_id, user_id) is None:
            return None
        with self.get_connection() as conn:
            cursor = conn.execute('INSERT INTO photos (memory_id, photo_data, filename) VALUES (?, ?, ?)',
                                  (memory_id, photo_data, filename or ''))
            return dict(conn.execute('SELECT * FROM photos WHERE id = ?', (cursor.lastrowid,)).fetchone())

    def delete_photo(self, memory_id: int, photo_id: int, user_id: str) -> bool:
        with self.get_connection() as conn:
            row = conn.execute('''
                SELECT p.id FROM photos p
                JOIN memories m ON p.memory_id = m.id
                JOIN maps mp ON m.map_id = mp.id
                WHERE p.id = ? AND p.memory_id = ? AND mp.user_id = ?
            ''', (photo_id, memory_id, user_id)).fetchone()
            if row is None:
                return False
            conn.execute('DELETE FROM photos WHERE id = ?', (photo_id,))
            return True
