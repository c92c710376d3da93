"""SQLite persistence for rooms, maps, users and characters."""

from __future__ import annotations

import hashlib
import json
import logging
import secrets
import sqlite3
import string
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Union

from character_sheet import completion_percent, normalize_character_data
from map_view import DistanceConfig, GridConfig, Transform

SCHEMA_VERSION = 2

ROOM_CODE_LENGTH = 8
ROOM_CODE_ALPHABET = string.ascii_uppercase + string.digits

LEGACY_MAP_NAME = "Main Map"

_JSON_COLUMNS = {
    "image_transform": lambda: Transform().to_dict(),
    "grid_config": lambda: GridConfig().to_dict(),
    "distance_config": lambda: DistanceConfig().to_dict(),
    "character_data": dict,
}


def _now() -> str:
    return datetime.now().strftime("%Y-%m-%d %H:%M:%S")


def hash_password(password: str) -> str:
    return hashlib.sha256(str(password).encode("utf-8")).hexdigest()


def generate_room_code() -> str:
    return "".join(secrets.choice(ROOM_CODE_ALPHABET) for _ in range(ROOM_CODE_LENGTH))


def _norm_code(code: Any) -> str:
    return str(code or "").strip().upper()


def _dump(value: Optional[Dict[str, Any]]) -> Optional[str]:
    if value is None:
        return None
    return json.dumps(value, sort_keys=True)


def _row_to_dict(row: Optional[sqlite3.Row]) -> Optional[Dict[str, Any]]:
    if row is None:
        return None
    out = dict(row)
    for column, default in _JSON_COLUMNS.items():
        if column not in out:
            continue
        raw = out[column]
        try:
            out[column] = json.loads(raw) if raw else default()
        except Exception:
            out[column] = default()
    if "is_active" in out:
        out["is_active"] = bool(out["is_active"])
    return out


class RoomStore:
    """Rooms own maps and characters; one connection guarded by a re-entrant lock."""

    def __init__(self, path: Union[str, Path], logger: Optional[logging.Logger] = None) -> None:
        self._path = path
        self._logger = logger or logging.getLogger(__name__)
        self._lock = threading.RLock()
        self._conn: Optional[sqlite3.Connection] = None
        self.init_schema()

    # ---------- connection ----------

    def _connection(self) -> sqlite3.Connection:
        if self._conn is None:
            if str(self._path) != ":memory:":
                Path(self._path).parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(str(self._path), check_same_thread=False, timeout=30.0)
            conn.execute("PRAGMA foreign_keys = ON")
            conn.execute("PRAGMA journal_mode = WAL")
            conn.row_factory = sqlite3.Row
            self._conn = conn
        return self._conn

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Commit on success, roll back on any exception."""
        with self._lock:
            conn = self._connection()
            try:
                yield conn
                conn.commit()
            except Exception:
                conn.rollback()
                raise

    def _fetch_one(self, query: str, params: tuple = ()) -> Optional[Dict[str, Any]]:
        with self._lock:
            row = self._connection().execute(query, params).fetchone()
        return _row_to_dict(row)

    def _fetch_all(self, query: str, params: tuple = ()) -> List[Dict[str, Any]]:
        with self._lock:
            rows = self._connection().execute(query, params).fetchall()
        return [_row_to_dict(row) for row in rows]

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                try:
                    self._conn.close()
                except Exception as exc:
                    self._logger.warning("Error closing room database: %s", exc)
                finally:
                    self._conn = None

    # ---------- schema ----------

    def init_schema(self) -> None:
        with self.transaction() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS schema_version (
                    version INTEGER PRIMARY KEY,
                    applied_at TEXT
                )
                """
            )
            row = conn.execute("SELECT MAX(version) FROM schema_version").fetchone()
            current = row[0] if row and row[0] is not None else 0
            if current == 0:
                self._create_schema(conn)
            elif current < 2:
                self._migrate_to_v2(conn)
            if current < SCHEMA_VERSION:
                conn.execute(
                    "INSERT OR REPLACE INTO schema_version (version, applied_at) VALUES (?, ?)",
                    (SCHEMA_VERSION, _now()),
                )

    def _create_schema(self, conn: sqlite3.Connection) -> None:
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS rooms (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                code TEXT UNIQUE NOT NULL,
                name TEXT NOT NULL,
                admin_password TEXT NOT NULL,
                image_data TEXT,
                image_transform TEXT,
                grid_config TEXT,
                created_at TEXT,
                updated_at TEXT,
                last_activity TEXT
            )
            """
        )
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS users (
                id TEXT PRIMARY KEY,
                user_hash TEXT UNIQUE NOT NULL,
                player_name TEXT,
                created_at TEXT,
                last_seen TEXT
            )
            """
        )
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS characters (
                id TEXT PRIMARY KEY,
                user_id TEXT REFERENCES users(id) ON DELETE CASCADE,
                room_code TEXT REFERENCES rooms(code) ON DELETE CASCADE,
                character_name TEXT NOT NULL,
                character_data TEXT NOT NULL DEFAULT '{}',
                completion_percent INTEGER DEFAULT 0,
                created_at TEXT,
                updated_at TEXT,
                UNIQUE(user_id, room_code)
            )
            """
        )
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS maps (
                id TEXT PRIMARY KEY,
                room_code TEXT REFERENCES rooms(code) ON DELETE CASCADE,
                name TEXT NOT NULL,
                image_data TEXT,
                image_transform TEXT,
                grid_config TEXT,
                distance_config TEXT,
                is_active INTEGER DEFAULT 0,
                display_order INTEGER DEFAULT 0,
                created_at TEXT,
                updated_at TEXT
            )
            """
        )
        self._create_indexes(conn)

    def _create_indexes(self, conn: sqlite3.Connection) -> None:
        conn.execute("CREATE INDEX IF NOT EXISTS idx_rooms_last_activity ON rooms(last_activity)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_characters_user_id ON characters(user_id)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_characters_room_code ON characters(room_code)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_maps_room_code ON maps(room_code)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_maps_is_active ON maps(room_code, is_active)")

    def _migrate_to_v2(self, conn: sqlite3.Connection) -> None:
        """v2: rooms.last_activity for inactive-room cleanup."""
        columns = {row[1] for row in conn.execute("PRAGMA table_info(rooms)").fetchall()}
        if "last_activity" not in columns:
            conn.execute("ALTER TABLE rooms ADD COLUMN last_activity TEXT")
            conn.execute("UPDATE rooms SET last_activity = COALESCE(updated_at, created_at)")
        self._create_schema(conn)

    # ---------- rooms ----------

    def create_room(self, name: str, admin_password: str) -> Dict[str, Any]:
        name = str(name or "").strip()
        if not name or not admin_password:
            raise ValueError("Room name and admin password are required.")
        pw_hash = hash_password(admin_password)
        for _attempt in range(10):
            code = generate_room_code()
            now = _now()
            try:
                with self.transaction() as conn:
                    conn.execute(
                        """
                        INSERT INTO rooms (code, name, admin_password, image_transform, grid_config,
                                           created_at, updated_at, last_activity)
                        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                        """,
                        (code, name, pw_hash, _dump(Transform().to_dict()), _dump(GridConfig().to_dict()), now, now, now),
                    )
            except sqlite3.IntegrityError:
                continue
            return {"code": code, "name": name, "created_at": now, "updated_at": now}
        raise RuntimeError("Could not allocate a unique room code.")

    def get_room(self, code: str) -> Optional[Dict[str, Any]]:
        """Public room fields (no password), including the legacy single-map columns."""
        return self._fetch_one(
            "SELECT code, name, image_data, image_transform, grid_config FROM rooms WHERE code = ?",
            (_norm_code(code),),
        )

    def verify_admin(self, code: str, admin_password: str) -> Optional[Dict[str, Any]]:
        if not admin_password:
            return None
        return self._fetch_one(
            """
            SELECT code, name, created_at, updated_at, last_activity
            FROM rooms WHERE code = ? AND admin_password = ?
            """,
            (_norm_code(code), hash_password(admin_password)),
        )

    def update_room(
        self,
        code: str,
        admin_password: str,
        image_data: Optional[str] = None,
        image_transform: Optional[Dict[str, Any]] = None,
        grid_config: Optional[Dict[str, Any]] = None,
    ) -> Optional[Dict[str, Any]]:
        if self.verify_admin(code, admin_password) is None:
            return None
        with self.transaction() as conn:
            conn.execute(
                """
                UPDATE rooms SET
                    image_data = COALESCE(?, image_data),
                    image_transform = COALESCE(?, image_transform),
                    grid_config = COALESCE(?, grid_config),
                    updated_at = ?
                WHERE code = ?
                """,
                (image_data, _dump(image_transform), _dump(grid_config), _now(), _norm_code(code)),
            )
        return self._fetch_one("SELECT code, name FROM rooms WHERE code = ?", (_norm_code(code),))

    def list_rooms(self, admin_password: str) -> List[Dict[str, Any]]:
        if not admin_password:
            return []
        return self._fetch_all(
            """
            SELECT code, name, created_at, updated_at FROM rooms
            WHERE admin_password = ? ORDER BY updated_at DESC, id DESC
            """,
            (hash_password(admin_password),),
        )

    def touch_room(self, code: str) -> bool:
        with self.transaction() as conn:
            cur = conn.execute("UPDATE rooms SET last_activity = ? WHERE code = ?", (_now(), _norm_code(code)))
        return cur.rowcount > 0

    def cleanup_inactive_rooms(self, days_inactive: float = 7, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        """Delete rooms idle for more than `days_inactive` days; maps and characters cascade."""
        cutoff = ((now or datetime.now()) - timedelta(days=float(days_inactive))).strftime("%Y-%m-%d %H:%M:%S")
        with self.transaction() as conn:
            rows = conn.execute(
                "SELECT code, name, last_activity FROM rooms WHERE last_activity < ?",
                (cutoff,),
            ).fetchall()
            if rows:
                conn.execute("DELETE FROM rooms WHERE last_activity < ?", (cutoff,))
        removed = [dict(row) for row in rows]
        if removed:
            self._logger.info("Cleanup removed %d inactive room(s).", len(removed))
        return removed

    # ---------- users ----------

    def identify_user(self, user_hash: str, player_name: Optional[str] = None) -> Dict[str, Any]:
        user_hash = str(user_hash or "").strip()
        if not user_hash:
            raise ValueError("User hash required.")
        name = str(player_name).strip() if player_name else None
        now = _now()
        with self.transaction() as conn:
            existing = conn.execute("SELECT id FROM users WHERE user_hash = ?", (user_hash,)).fetchone()
            if existing:
                conn.execute(
                    "UPDATE users SET last_seen = ?, player_name = COALESCE(?, player_name) WHERE user_hash = ?",
                    (now, name or None, user_hash),
                )
            else:
                conn.execute(
                    "INSERT INTO users (id, user_hash, player_name, created_at, last_seen) VALUES (?, ?, ?, ?, ?)",
                    (str(uuid.uuid4()), user_hash, name or None, now, now),
                )
        return self.get_user(user_hash)

    def get_user(self, user_hash: str) -> Optional[Dict[str, Any]]:
        return self._fetch_one("SELECT * FROM users WHERE user_hash = ?", (str(user_hash or "").strip(),))

    # ---------- characters ----------

    def save_character(self, user_id: str, room_code: str, character_name: str, character_data: Any = None) -> Dict[str, Any]:
        """Create or replace the user's character in this room."""
        data = normalize_character_data(character_data)
        now = _now()
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT INTO characters (id, user_id, room_code, character_name, character_data,
                                        completion_percent, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(user_id, room_code) DO UPDATE SET
                    character_name = excluded.character_name,
                    character_data = excluded.character_data,
                    completion_percent = excluded.completion_percent,
                    updated_at = excluded.updated_at
                """,
                (str(uuid.uuid4()), user_id, _norm_code(room_code), character_name, _dump(data), completion_percent(data), now, now),
            )
        return self.get_character(user_id, room_code)

    def get_character(self, user_id: str, room_code: str) -> Optional[Dict[str, Any]]:
        return self._fetch_one(
            "SELECT * FROM characters WHERE user_id = ? AND room_code = ?",
            (user_id, _norm_code(room_code)),
        )

    def get_character_by_id(self, character_id: str) -> Optional[Dict[str, Any]]:
        return self._fetch_one("SELECT * FROM characters WHERE id = ?", (character_id,))

    def update_character(
        self,
        character_id: str,
        character_name: Optional[str] = None,
        character_data: Any = None,
    ) -> Optional[Dict[str, Any]]:
        existing = self.get_character_by_id(character_id)
        if existing is None:
            return None
        data = existing["character_data"] if character_data is None else normalize_character_data(character_data)
        with self.transaction() as conn:
            conn.execute(
                """
                UPDATE characters SET
                    character_name = COALESCE(?, character_name),
                    character_data = ?,
                    completion_percent = ?,
                    updated_at = ?
                WHERE id = ?
                """,
                (character_name or None, _dump(data), completion_percent(data), _now(), character_id),
            )
        return self.get_character_by_id(character_id)

    # ---------- maps ----------

    def create_map(
        self,
        room_code: str,
        name: str,
        image_data: Optional[str] = None,
        image_transform: Optional[Dict[str, Any]] = None,
        grid_config: Optional[Dict[str, Any]] = None,
        distance_config: Optional[Dict[str, Any]] = None,
        is_active: bool = False,
    ) -> Dict[str, Any]:
        code = _norm_code(room_code)
        map_id = str(uuid.uuid4())
        now = _now()
        with self.transaction() as conn:
            row = conn.execute("SELECT COALESCE(MAX(display_order), 0) + 1 FROM maps WHERE room_code = ?", (code,)).fetchone()
            conn.execute(
                """
                INSERT INTO maps (id, room_code, name, image_data, image_transform, grid_config,
                                  distance_config, is_active, display_order, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    map_id,
                    code,
                    name,
                    image_data,
                    _dump(image_transform or Transform().to_dict()),
                    _dump(grid_config or GridConfig().to_dict()),
                    _dump(distance_config or DistanceConfig().to_dict()),
                    1 if is_active else 0,
                    int(row[0]),
                    now,
                    now,
                ),
            )
        return self.get_map(map_id)

    def list_maps(self, room_code: str) -> List[Dict[str, Any]]:
        return self._fetch_all(
            "SELECT * FROM maps WHERE room_code = ? ORDER BY display_order ASC",
            (_norm_code(room_code),),
        )

    def get_active_map(self, room_code: str) -> Optional[Dict[str, Any]]:
        return self._fetch_one(
            "SELECT * FROM maps WHERE room_code = ? AND is_active = 1",
            (_norm_code(room_code),),
        )

    def get_map(self, map_id: str) -> Optional[Dict[str, Any]]:
        return self._fetch_one("SELECT * FROM maps WHERE id = ?", (map_id,))

    def activate_map(self, room_code: str, map_id: str) -> Optional[Dict[str, Any]]:
        """Make `map_id` the only active map of the room, in one transaction."""
        code = _norm_code(room_code)
        with self.transaction() as conn:
            found = conn.execute("SELECT id FROM maps WHERE id = ? AND room_code = ?", (map_id, code)).fetchone()
            if not found:
                return None
            conn.execute("UPDATE maps SET is_active = 0 WHERE room_code = ?", (code,))
            conn.execute("UPDATE maps SET is_active = 1 WHERE id = ? AND room_code = ?", (map_id, code))
        return self.get_map(map_id)

    def update_map(
        self,
        map_id: str,
        name: Optional[str] = None,
        image_data: Optional[str] = None,
        image_transform: Optional[Dict[str, Any]] = None,
        grid_config: Optional[Dict[str, Any]] = None,
        distance_config: Optional[Dict[str, Any]] = None,
    ) -> Optional[Dict[str, Any]]:
        with self.transaction() as conn:
            cur = conn.execute(
                """
                UPDATE maps SET
                    name = COALESCE(?, name),
                    image_data = COALESCE(?, image_data),
                    image_transform = COALESCE(?, image_transform),
                    grid_config = COALESCE(?, grid_config),
                    distance_config = COALESCE(?, distance_config),
                    updated_at = ?
                WHERE id = ?
                """,
                (
                    name or None,
                    image_data,
                    _dump(image_transform),
                    _dump(grid_config),
                    _dump(distance_config),
                    _now(),
                    map_id,
                ),
            )
        if cur.rowcount == 0:
            return None
        return self.get_map(map_id)

    def delete_map(self, map_id: str) -> Optional[Dict[str, Any]]:
        existing = self.get_map(map_id)
        if existing is None:
            return None
        with self.transaction() as conn:
            conn.execute("DELETE FROM maps WHERE id = ?", (map_id,))
        return existing

    def migrate_room_maps(self) -> int:
        """Copy legacy single-map room images into the maps table (rooms without maps only)."""
        with self.transaction() as conn:
            rooms = conn.execute(
                """
                SELECT r.code, r.image_data, r.image_transform, r.grid_config FROM rooms r
                WHERE r.image_data IS NOT NULL
                AND NOT EXISTS (SELECT 1 FROM maps m WHERE m.room_code = r.code)
                """
            ).fetchall()
            now = _now()
            for room in rooms:
                conn.execute(
                    """
                    INSERT INTO maps (id, room_code, name, image_data, image_transform, grid_config,
                                      distance_config, is_active, display_order, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, 1, 0, ?, ?)
                    """,
                    (
                        str(uuid.uuid4()),
                        room["code"],
                        LEGACY_MAP_NAME,
                        room["image_data"],
                        room["image_transform"] or _dump(Transform().to_dict()),
                        room["grid_config"] or _dump(GridConfig().to_dict()),
                        _dump(DistanceConfig().to_dict()),
                        now,
                        now,
                    ),
                )
        if rooms:
            self._logger.info("Migrated %d legacy room map(s).", len(rooms))
        return len(rooms)
