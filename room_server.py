#!/usr/bin/env python3
"""
Map Rooms server.

FastAPI + WebSocket server for virtual tabletop rooms.
- Admins create rooms, upload maps, tune the grid and pick the active map.
- Players open the room by code and see the active map.
- The /ws presence channel keeps everyone's user list current and relays
  "map changed" pings so viewers refetch.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import socket
import threading
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence

import uvicorn
import yaml
from fastapi import FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse, Response
from starlette.concurrency import run_in_threadpool
from starlette.exceptions import HTTPException as StarletteHTTPException

from map_view import (
    VIEWER_CAPABILITIES,
    DistanceConfig,
    GridConfig,
    MapSnapshot,
    MapView,
    PilSurface,
    Transform,
)
from room_store import RoomStore, _norm_code

logger = logging.getLogger(__name__)

DATA_DIRNAME = "Map-Rooms"
CONFIG_FILENAME = "config.yaml"

PREVIEW_DEFAULT_SIZE = (800, 600)
PREVIEW_MAX_SIDE = 4096


def _default_data_dir() -> Path:
    override = os.getenv("MAPROOMS_DATA_DIR")
    if override:
        try:
            return Path(override).expanduser()
        except Exception:
            pass
    try:
        return Path.home() / "Documents" / DATA_DIRNAME
    except Exception:
        return Path.cwd() / DATA_DIRNAME


def _ensure_logs_dir(data_dir: Optional[Path] = None) -> Path:
    """Create <data_dir>/logs (best effort)."""
    base_dir = Path(data_dir) if data_dir is not None else _default_data_dir()
    logs = base_dir / "logs"
    try:
        logs.mkdir(parents=True, exist_ok=True)
    except Exception:
        pass
    return logs


def _make_ops_logger(data_dir: Optional[Path] = None) -> logging.Logger:
    """Return a logger that writes to terminal + <data_dir>/logs/operations.log."""
    lg = logging.getLogger("maprooms.ops")
    if getattr(lg, "_maprooms_configured", False):
        return lg

    lg.setLevel(logging.INFO)
    logs = _ensure_logs_dir(data_dir)
    fmt = logging.Formatter("[%(asctime)s] %(levelname)s %(message)s", "%Y-%m-%d %H:%M:%S")

    try:
        fh = logging.FileHandler(logs / "operations.log", encoding="utf-8")
        fh.setLevel(logging.INFO)
        fh.setFormatter(fmt)
        lg.addHandler(fh)
    except Exception:
        pass

    try:
        sh = logging.StreamHandler()
        sh.setLevel(logging.INFO)
        sh.setFormatter(fmt)
        lg.addHandler(sh)
    except Exception:
        pass

    lg.propagate = False
    setattr(lg, "_maprooms_configured", True)
    return lg


# ----------------------------- config -----------------------------

@dataclass
class ServerConfig:
    host: str = "0.0.0.0"
    port: int = 8787
    data_dir: Path = field(default_factory=_default_data_dir)
    db_filename: str = "map_rooms.sqlite3"
    inactive_days: float = 7
    cleanup_interval_hours: float = 6.0
    max_body_mb: float = 50

    @property
    def db_path(self) -> Path:
        return Path(self.data_dir) / self.db_filename

    def to_dict(self) -> Dict[str, Any]:
        out = asdict(self)
        out["data_dir"] = str(self.data_dir)
        return out


def _coerce_setting(name: str, value: Any, default: Any) -> Any:
    if isinstance(default, bool):
        return bool(value)
    if name == "port":
        port = int(value)
        if not 0 <= port <= 65535:
            raise ValueError(f"port out of range: {port}")
        return port
    if name == "data_dir":
        return Path(str(value)).expanduser()
    if isinstance(default, (int, float)) and not isinstance(value, bool):
        number = float(value)
        if number <= 0:
            raise ValueError(f"{name} must be positive")
        return number
    if isinstance(default, str):
        text = str(value).strip()
        if not text:
            raise ValueError(f"{name} must not be empty")
        return text
    raise ValueError(f"unsupported value for {name}: {value!r}")


def _apply_settings(cfg: ServerConfig, raw: Mapping[str, Any], source: str) -> None:
    defaults = ServerConfig()
    known = {f.name for f in fields(ServerConfig)}
    for key, value in raw.items():
        name = str(key).strip().replace("-", "_")
        if name not in known:
            logger.warning("Ignoring unknown setting %r from %s.", key, source)
            continue
        if value is None:
            continue
        try:
            setattr(cfg, name, _coerce_setting(name, value, getattr(defaults, name)))
        except (TypeError, ValueError) as exc:
            logger.warning("Invalid %s from %s (%s); keeping %r.", name, source, exc, getattr(cfg, name))


def _read_yaml_config(path: Path) -> Dict[str, Any]:
    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return {}
    except (OSError, yaml.YAMLError) as exc:
        logger.warning("Could not read config %s: %s", path, exc)
        return {}
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        logger.warning("Config %s must be a mapping; ignoring it.", path)
        return {}
    section = raw.get("server")
    return section if isinstance(section, dict) else raw


def load_config(
    config_path: Optional[Path] = None,
    overrides: Optional[Mapping[str, Any]] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> ServerConfig:
    """Defaults, then YAML, then MAPROOMS_* environment, then explicit overrides (CLI)."""
    env = os.environ if environ is None else environ
    cfg = ServerConfig()
    env_dir = env.get("MAPROOMS_DATA_DIR")
    if env_dir:
        cfg.data_dir = Path(env_dir).expanduser()

    path = Path(config_path).expanduser() if config_path else Path(cfg.data_dir) / CONFIG_FILENAME
    _apply_settings(cfg, _read_yaml_config(path), str(path))

    env_values: Dict[str, Any] = {}
    for env_key, name in (("MAPROOMS_DATA_DIR", "data_dir"), ("MAPROOMS_HOST", "host"), ("MAPROOMS_PORT", "port")):
        if env.get(env_key):
            env_values[name] = env[env_key]
    _apply_settings(cfg, env_values, "environment")

    if overrides:
        _apply_settings(cfg, {k: v for k, v in overrides.items() if v is not None}, "command line")
    return cfg


# ----------------------------- presence -----------------------------

class PresenceHub:
    """Who is connected to which room; sockets are keyed by id(websocket)."""

    def __init__(self) -> None:
        self._clients_lock = threading.Lock()
        self._clients: Dict[int, Any] = {}  # id(websocket) -> websocket
        self._members: Dict[int, Dict[str, Any]] = {}  # id(websocket) -> {room, type, name, ...}
        self._rooms: Dict[str, List[int]] = {}  # room code -> [ws_id] in join order

    def connect(self, ws: Any) -> int:
        ws_id = id(ws)
        with self._clients_lock:
            self._clients[ws_id] = ws
        return ws_id

    def join(self, ws_id: int, room_code: str, user_type: str, user_name: Optional[str] = None,
             user_id: Optional[str] = None, character_name: Optional[str] = None) -> Optional[str]:
        """Record membership; returns the room the socket left to join this one, if any."""
        user_type = "admin" if str(user_type or "").lower() == "admin" else "player"
        name = str(user_name or "").strip() or ("Admin" if user_type == "admin" else "Player")
        with self._clients_lock:
            previous = self._detach(ws_id)
            self._members[ws_id] = {
                "room": room_code,
                "type": user_type,
                "name": name,
                "user_id": user_id or None,
                "character_name": str(character_name or "").strip() or None,
                "joined_at": datetime.now().strftime("%Y-%m-%d %H:%M:%S"),
            }
            self._rooms.setdefault(room_code, []).append(ws_id)
        return previous if previous != room_code else None

    def leave(self, ws_id: int) -> Optional[str]:
        with self._clients_lock:
            return self._detach(ws_id)

    def disconnect(self, ws_id: int) -> Optional[str]:
        with self._clients_lock:
            self._clients.pop(ws_id, None)
            return self._detach(ws_id)

    def _detach(self, ws_id: int) -> Optional[str]:
        member = self._members.pop(ws_id, None)
        if member is None:
            return None
        room = member["room"]
        ids = self._rooms.get(room, [])
        if ws_id in ids:
            ids.remove(ws_id)
        if not ids:
            self._rooms.pop(room, None)
        return room

    def room_of(self, ws_id: int) -> Optional[str]:
        with self._clients_lock:
            member = self._members.get(ws_id)
            return member["room"] if member else None

    def member(self, ws_id: int) -> Optional[Dict[str, Any]]:
        with self._clients_lock:
            member = self._members.get(ws_id)
            return dict(member) if member else None

    def rooms(self) -> List[str]:
        with self._clients_lock:
            return sorted(self._rooms)

    def users_payload(self, room_code: str) -> Dict[str, Any]:
        with self._clients_lock:
            members = [self._members[i] for i in self._rooms.get(room_code, []) if i in self._members]
        admins = [m["name"] for m in members if m["type"] == "admin"]
        players = [{"name": m["name"], "characterName": m["character_name"]} for m in members if m["type"] == "player"]
        return {"type": "users_updated", "admins": admins, "players": players, "total": len(members)}

    def peers(self, room_code: str, exclude: Optional[int] = None) -> List[Any]:
        with self._clients_lock:
            return [
                self._clients[i]
                for i in self._rooms.get(room_code, [])
                if i != exclude and i in self._clients
            ]

    async def broadcast(self, room_code: str, payload: Dict[str, Any], exclude: Optional[int] = None) -> int:
        """Best-effort send to the room; a failing socket is skipped, never retried."""
        text = json.dumps(payload)
        sent = 0
        for ws in self.peers(room_code, exclude=exclude):
            try:
                await ws.send_text(text)
                sent += 1
            except Exception as exc:
                logger.debug("Presence send to ws_id=%s failed: %s", id(ws), exc)
        return sent


# ----------------------------- payloads -----------------------------

def _map_payload(row: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": row["id"],
        "name": row["name"],
        "imageData": row.get("image_data"),
        "imageTransform": row.get("image_transform"),
        "gridConfig": row.get("grid_config"),
        "distanceConfig": row.get("distance_config"),
        "isActive": bool(row.get("is_active")),
        "displayOrder": row.get("display_order", 0),
        "createdAt": row.get("created_at"),
        "updatedAt": row.get("updated_at"),
    }


def _character_payload(row: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": row["id"],
        "characterName": row["character_name"],
        "characterData": row.get("character_data") or {},
        "completionPercent": row.get("completion_percent", 0),
        "createdAt": row.get("created_at"),
        "updatedAt": row.get("updated_at"),
    }


def _user_payload(row: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": row["id"],
        "playerName": row.get("player_name"),
        "createdAt": row.get("created_at"),
        "lastSeen": row.get("last_seen"),
    }


def _image_field(body: Dict[str, Any]) -> Optional[str]:
    value = body.get("imageData")
    if value is None:
        return None
    if not isinstance(value, str) or not value.startswith("data:image/"):
        raise HTTPException(status_code=400, detail="imageData must be a data:image/... URL.")
    return value


def _snapshot_fields(body: Dict[str, Any], base: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Normalize posted transform/grid/distance objects over the stored (or default) values."""
    base = base or {}
    out: Dict[str, Any] = {}
    for key, column, cls in (
        ("imageTransform", "image_transform", Transform),
        ("gridConfig", "grid_config", GridConfig),
        ("distanceConfig", "distance_config", DistanceConfig),
    ):
        if body.get(key) is None:
            out[column] = None
            continue
        stored = cls.from_dict(base.get(column)) if base.get(column) else cls()
        out[column] = cls.from_dict(body[key], stored).to_dict()
    return out


def _clamp_preview_side(value: Any, fallback: int) -> int:
    try:
        side = int(value)
    except (TypeError, ValueError):
        return fallback
    return max(1, min(PREVIEW_MAX_SIDE, side))


# ----------------------------- server -----------------------------

class RoomServer:
    """Runs the FastAPI app (routes + /ws presence) over a RoomStore."""

    def __init__(self, cfg: Optional[ServerConfig] = None, store: Optional[RoomStore] = None) -> None:
        self.cfg = cfg or ServerConfig()
        self._ops_logger = _make_ops_logger(self.cfg.data_dir)
        self.store = store or RoomStore(self.cfg.db_path, logger=self._ops_logger)
        self.hub = PresenceHub()
        self._server_thread: Optional[threading.Thread] = None
        self._cleanup_thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._uvicorn_server = None
        self._fastapi_app: Optional[FastAPI] = None

    def _oplog(self, text: str, level: str = "info") -> None:
        lg = getattr(self, "_ops_logger", None) or _make_ops_logger()
        fn = getattr(lg, level, lg.info)
        fn(str(text))

    # ---------- room helpers ----------

    def _require_room(self, code: str) -> Dict[str, Any]:
        room = self.store.get_room(code)
        if room is None:
            raise HTTPException(status_code=404, detail="Room not found.")
        return room

    def _require_admin(self, code: str, body: Dict[str, Any], status_code: int = 403) -> Dict[str, Any]:
        password = body.get("adminPassword")
        if not password:
            raise HTTPException(status_code=400, detail="adminPassword is required.")
        room = self.store.verify_admin(code, str(password))
        if room is None:
            raise HTTPException(status_code=status_code, detail="Access denied.")
        return room

    def _require_room_map(self, code: str, map_id: str) -> Dict[str, Any]:
        row = self.store.get_map(map_id)
        if row is None or row["room_code"] != _norm_code(code):
            raise HTTPException(status_code=404, detail="Map not found.")
        return row

    def room_snapshot(self, code: str) -> MapSnapshot:
        """Active map of the room, or the room's own legacy map columns when none is active."""
        room = self._require_room(code)
        active = self.store.get_active_map(code)
        if active is not None:
            return MapSnapshot.from_dict(_map_payload(active))
        return MapSnapshot.from_dict(
            {
                "imageData": room.get("image_data"),
                "imageTransform": room.get("image_transform"),
                "gridConfig": room.get("grid_config"),
            }
        )

    def render_preview(self, code: str, width: int, height: int) -> bytes:
        surface = PilSurface(width, height)
        view = MapView(surface=surface, capabilities=VIEWER_CAPABILITIES, snapshot=self.room_snapshot(code))
        view.render()
        return surface.to_png()

    # ---------- request handlers (run in the threadpool) ----------

    def _list_rooms(self, body: Dict[str, Any]) -> Dict[str, Any]:
        return {"success": True, "rooms": self.store.list_rooms(str(body.get("adminPassword") or ""))}

    def _create_room(self, body: Dict[str, Any]) -> Dict[str, Any]:
        name = str(body.get("name") or "").strip()
        password = body.get("adminPassword")
        if not name or not password:
            raise HTTPException(status_code=400, detail="Room name and admin password are required.")
        room = self.store.create_room(name, str(password))
        self._oplog(f"Room created code={room['code']} name={name!r}")
        return {"success": True, "room": {"code": room["code"], "name": room["name"]}}

    def _verify_admin(self, code: str, body: Dict[str, Any]) -> Dict[str, Any]:
        room = self.store.verify_admin(code, str(body.get("adminPassword") or ""))
        if room is None:
            raise HTTPException(status_code=401, detail="Wrong room code or password.")
        return {"success": True, "room": room}

    def _update_room(self, code: str, body: Dict[str, Any]) -> Dict[str, Any]:
        snap = _snapshot_fields(body, self.store.get_room(code))
        room = self.store.update_room(
            code,
            str(body.get("adminPassword") or ""),
            image_data=_image_field(body),
            image_transform=snap["image_transform"],
            grid_config=snap["grid_config"],
        )
        if room is None:
            raise HTTPException(status_code=401, detail="Not authorized.")
        return {"success": True, "room": room}

    def _create_map(self, code: str, body: Dict[str, Any]) -> Dict[str, Any]:
        name = str(body.get("name") or "").strip()
        if not name:
            raise HTTPException(status_code=400, detail="adminPassword and name are required.")
        self._require_admin(code, body)
        snap = _snapshot_fields(body)
        row = self.store.create_map(
            code,
            name,
            image_data=_image_field(body),
            image_transform=snap["image_transform"],
            grid_config=snap["grid_config"],
            distance_config=snap["distance_config"],
        )
        self._oplog(f"Map created room={_norm_code(code)} id={row['id']} name={name!r}")
        return {"success": True, "map": _map_payload(row)}

    def _update_map(self, code: str, map_id: str, body: Dict[str, Any]) -> Dict[str, Any]:
        self._require_admin(code, body)
        existing = self._require_room_map(code, map_id)
        snap = _snapshot_fields(body, existing)
        row = self.store.update_map(
            map_id,
            name=str(body.get("name") or "").strip() or None,
            image_data=_image_field(body),
            image_transform=snap["image_transform"],
            grid_config=snap["grid_config"],
            distance_config=snap["distance_config"],
        )
        if row is None:
            raise HTTPException(status_code=404, detail="Map not found.")
        return {"success": True, "map": _map_payload(row)}

    def _activate_map(self, code: str, map_id: str, body: Dict[str, Any]) -> Dict[str, Any]:
        self._require_admin(code, body)
        row = self.store.activate_map(code, map_id)
        if row is None:
            raise HTTPException(status_code=404, detail="Map not found.")
        self._oplog(f"Map activated room={_norm_code(code)} id={map_id}")
        return {"success": True, "map": {"id": row["id"], "name": row["name"], "isActive": row["is_active"]}}

    def _delete_map(self, code: str, map_id: str, body: Dict[str, Any]) -> Dict[str, Any]:
        self._require_admin(code, body)
        existing = self._require_room_map(code, map_id)
        if len(self.store.list_maps(code)) <= 1:
            raise HTTPException(status_code=400, detail="Cannot delete the only map of the room.")
        if existing["is_active"]:
            raise HTTPException(status_code=400, detail="Cannot delete the active map. Activate another map first.")
        deleted = self.store.delete_map(map_id)
        if deleted is None:
            raise HTTPException(status_code=404, detail="Map not found.")
        self._oplog(f"Map deleted room={_norm_code(code)} id={map_id}")
        return {"success": True, "deleted": {"id": deleted["id"], "name": deleted["name"]}}

    def _identify_user(self, body: Dict[str, Any]) -> Dict[str, Any]:
        user_hash = str(body.get("userHash") or "").strip()
        if not user_hash:
            raise HTTPException(status_code=400, detail="userHash is required.")
        user = self.store.identify_user(user_hash, body.get("playerName"))
        return {"success": True, "user": _user_payload(user)}

    def _save_character(self, code: str, body: Dict[str, Any]) -> Dict[str, Any]:
        user_hash = str(body.get("userId") or "").strip()
        character_name = str(body.get("characterName") or "").strip()
        if not user_hash or not character_name:
            raise HTTPException(status_code=400, detail="userId and characterName are required.")
        self._require_room(code)
        user = self.store.get_user(user_hash)
        if user is None:
            raise HTTPException(status_code=404, detail="User not found.")
        row = self.store.save_character(user["id"], code, character_name, body.get("characterData") or {})
        return {"success": True, "character": _character_payload(row)}

    def _update_character(self, code: str, character_id: str, body: Dict[str, Any]) -> Dict[str, Any]:
        existing = self.store.get_character_by_id(character_id)
        if existing is None or existing["room_code"] != _norm_code(code):
            raise HTTPException(status_code=404, detail="Character not found.")
        row = self.store.update_character(
            character_id,
            character_name=str(body.get("characterName") or "").strip() or None,
            character_data=body.get("characterData"),
        )
        if row is None:
            raise HTTPException(status_code=404, detail="Character not found.")
        return {"success": True, "character": _character_payload(row)}

    # ---------- app ----------

    def build_app(self) -> FastAPI:
        app = FastAPI(title="Map Rooms")
        max_body = int(float(self.cfg.max_body_mb) * 1024 * 1024)

        @app.middleware("http")
        async def limit_body_size(request: Request, call_next):
            length = request.headers.get("content-length")
            if length and length.isdigit() and int(length) > max_body:
                return JSONResponse({"success": False, "error": "Request body too large."}, status_code=413)
            return await call_next(request)

        @app.exception_handler(StarletteHTTPException)
        async def http_error(_request: Request, exc: StarletteHTTPException):
            return JSONResponse({"success": False, "error": str(exc.detail)}, status_code=exc.status_code)

        @app.exception_handler(Exception)
        async def unexpected_error(request: Request, exc: Exception):
            logger.exception("Unhandled error on %s %s", request.method, request.url.path)
            self._oplog(f"Server error on {request.method} {request.url.path}: {exc}", level="error")
            return JSONResponse({"success": False, "error": "Internal server error."}, status_code=500)

        async def _json_body(request: Request) -> Dict[str, Any]:
            raw = await request.body()
            if not raw:
                return {}
            try:
                body = json.loads(raw)
            except (ValueError, UnicodeDecodeError):
                raise HTTPException(status_code=400, detail="Invalid JSON body.")
            if not isinstance(body, dict):
                raise HTTPException(status_code=400, detail="JSON body must be an object.")
            return body

        # Store and Pillow work is blocking: body-reading routes hand it to the
        # threadpool, the rest are plain `def` so FastAPI runs them there.

        # ---------- rooms ----------

        @app.post("/api/rooms/list")
        async def list_rooms(request: Request):
            body = await _json_body(request)
            return await run_in_threadpool(self._list_rooms, body)

        @app.post("/api/rooms")
        async def create_room(request: Request):
            body = await _json_body(request)
            return await run_in_threadpool(self._create_room, body)

        @app.post("/api/rooms/{code}/admin")
        async def verify_admin(code: str, request: Request):
            body = await _json_body(request)
            return await run_in_threadpool(self._verify_admin, code, body)

        @app.get("/api/rooms/{code}")
        def get_room(code: str):
            return {"success": True, "room": self._require_room(code)}

        @app.put("/api/rooms/{code}")
        async def update_room(code: str, request: Request):
            body = await _json_body(request)
            return await run_in_threadpool(self._update_room, code, body)

        # ---------- maps ----------

        @app.get("/api/rooms/{code}/maps")
        def list_maps(code: str):
            self._require_room(code)
            return {"success": True, "maps": [_map_payload(m) for m in self.store.list_maps(code)]}

        @app.get("/api/rooms/{code}/maps/active")
        def active_map(code: str):
            self._require_room(code)
            row = self.store.get_active_map(code)
            return {"success": True, "map": _map_payload(row) if row else None}

        @app.get("/api/rooms/{code}/maps/active/preview.png")
        def active_map_preview(code: str, width: Optional[str] = None, height: Optional[str] = None):
            png = self.render_preview(
                code,
                _clamp_preview_side(width, PREVIEW_DEFAULT_SIZE[0]),
                _clamp_preview_side(height, PREVIEW_DEFAULT_SIZE[1]),
            )
            return Response(content=png, media_type="image/png")

        @app.post("/api/rooms/{code}/maps")
        async def create_map(code: str, request: Request):
            body = await _json_body(request)
            return await run_in_threadpool(self._create_map, code, body)

        @app.put("/api/rooms/{code}/maps/{map_id}")
        async def update_map(code: str, map_id: str, request: Request):
            body = await _json_body(request)
            return await run_in_threadpool(self._update_map, code, map_id, body)

        @app.put("/api/rooms/{code}/maps/{map_id}/activate")
        async def activate_map(code: str, map_id: str, request: Request):
            body = await _json_body(request)
            return await run_in_threadpool(self._activate_map, code, map_id, body)

        @app.delete("/api/rooms/{code}/maps/{map_id}")
        async def delete_map(code: str, map_id: str, request: Request):
            body = await _json_body(request)
            return await run_in_threadpool(self._delete_map, code, map_id, body)

        # ---------- users ----------

        @app.post("/api/users/identify")
        async def identify_user(request: Request):
            body = await _json_body(request)
            return await run_in_threadpool(self._identify_user, body)

        @app.get("/api/users/{user_hash}")
        def get_user(user_hash: str):
            user = self.store.get_user(user_hash)
            if user is None:
                raise HTTPException(status_code=404, detail="User not found.")
            return {"success": True, "user": _user_payload(user)}

        # ---------- characters ----------

        @app.get("/api/rooms/{code}/characters/{user_hash}")
        def get_character(code: str, user_hash: str):
            user = self.store.get_user(user_hash)
            row = self.store.get_character(user["id"], code) if user else None
            return {"success": True, "character": _character_payload(row) if row else None}

        @app.post("/api/rooms/{code}/characters")
        async def save_character(code: str, request: Request):
            body = await _json_body(request)
            return await run_in_threadpool(self._save_character, code, body)

        @app.put("/api/rooms/{code}/characters/{character_id}")
        async def update_character(code: str, character_id: str, request: Request):
            body = await _json_body(request)
            return await run_in_threadpool(self._update_character, code, character_id, body)

        # ---------- presence ----------

        @app.websocket("/ws")
        async def ws_endpoint(ws: WebSocket):
            await ws.accept()
            ws_id = self.hub.connect(ws)
            host = getattr(getattr(ws, "client", None), "host", "?")
            self._oplog(f"Presence connected ws_id={ws_id} host={host}")
            try:
                while True:
                    raw = await ws.receive_text()
                    try:
                        msg = json.loads(raw)
                    except Exception:
                        continue
                    if not isinstance(msg, dict):
                        continue
                    typ = str(msg.get("type") or "")
                    if typ == "join_room":
                        code = _norm_code(msg.get("roomCode"))
                        if not code:
                            await ws.send_text(json.dumps({"type": "error", "error": "roomCode is required."}))
                            continue
                        previous = self.hub.join(
                            ws_id,
                            code,
                            msg.get("userType"),
                            user_name=msg.get("userName"),
                            user_id=msg.get("userId"),
                            character_name=msg.get("characterName"),
                        )
                        await run_in_threadpool(self.store.touch_room, code)
                        if previous:
                            await self.hub.broadcast(previous, self.hub.users_payload(previous))
                        await self.hub.broadcast(code, self.hub.users_payload(code))
                        member = self.hub.member(ws_id) or {}
                        self._oplog(f"{member.get('name')} ({member.get('type')}) joined room {code}")
                    elif typ == "leave_room":
                        room = self.hub.leave(ws_id)
                        if room:
                            await self.hub.broadcast(room, self.hub.users_payload(room))
                    elif typ == "map_updated":
                        room = self.hub.room_of(ws_id)
                        if room:
                            await run_in_threadpool(self.store.touch_room, room)
                            await self.hub.broadcast(room, {"type": "map_changed"}, exclude=ws_id)
                    elif typ == "ping":
                        await ws.send_text(json.dumps({"type": "pong"}))
            except WebSocketDisconnect:
                pass
            except Exception as exc:
                logger.debug("Presence socket ws_id=%s closed with error: %s", ws_id, exc)
            finally:
                room = self.hub.disconnect(ws_id)
                if room:
                    await self.hub.broadcast(room, self.hub.users_payload(room))
                self._oplog(f"Presence disconnected ws_id={ws_id}")

        self._fastapi_app = app
        return app

    # ---------- lifecycle ----------

    def prepare(self) -> None:
        """One-off startup work: fold legacy room maps into the maps table, drop stale rooms."""
        try:
            migrated = self.store.migrate_room_maps()
            if migrated:
                self._oplog(f"Migrated {migrated} legacy room map(s).")
        except Exception as exc:
            self._oplog(f"Legacy map migration failed: {exc}", level="error")
        self.run_cleanup()

    def run_cleanup(self) -> int:
        try:
            removed = self.store.cleanup_inactive_rooms(self.cfg.inactive_days)
        except Exception as exc:
            self._oplog(f"Inactive room cleanup failed: {exc}", level="error")
            return 0
        for room in removed:
            self._oplog(f"Removed inactive room {room['code']} ({room['name']}), last activity {room['last_activity']}")
        return len(removed)

    def _cleanup_loop(self) -> None:
        interval = max(60.0, float(self.cfg.cleanup_interval_hours) * 3600.0)
        while not self._stop_event.wait(interval):
            self.run_cleanup()

    def _start_cleanup_thread(self) -> None:
        if self._cleanup_thread and self._cleanup_thread.is_alive():
            return
        self._cleanup_thread = threading.Thread(target=self._cleanup_loop, name="MapRoomsCleanup", daemon=True)
        self._cleanup_thread.start()

    def serve(self) -> None:
        """Blocking: run uvicorn on a fresh event loop in the calling thread."""
        app = self._fastapi_app or self.build_app()
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
        self._loop = loop
        config = uvicorn.Config(app, host=self.cfg.host, port=self.cfg.port, log_level="warning", access_log=False)
        server = uvicorn.Server(config)
        self._uvicorn_server = server
        try:
            loop.run_until_complete(server.serve())
        finally:
            loop.close()
            self._loop = None

    def start(self) -> None:
        if self._server_thread and self._server_thread.is_alive():
            self._oplog("Map Rooms server already running.")
            return
        self.prepare()
        self.build_app()
        self._stop_event.clear()
        self._start_cleanup_thread()
        self._server_thread = threading.Thread(target=self.serve, name="MapRoomsServer", daemon=True)
        self._server_thread.start()
        self._oplog(f"Map Rooms server listening at {self._best_lan_url()}")

    def stop(self) -> None:
        self._stop_event.set()
        if self._uvicorn_server is not None:
            self._uvicorn_server.should_exit = True
        self._oplog("Map Rooms server stopping.")

    def _best_lan_url(self) -> str:
        ip = "127.0.0.1"
        try:
            s = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
            s.connect(("8.8.8.8", 80))
            ip = s.getsockname()[0]
            s.close()
        except Exception:
            try:
                ip = socket.gethostbyname(socket.gethostname())
            except Exception:
                ip = "127.0.0.1"
        return f"http://{ip}:{self.cfg.port}/"


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="map-rooms-server", description="Serve Map Rooms over HTTP + WebSocket.")
    parser.add_argument("--config", type=Path, default=None, help="YAML config file (default: <data dir>/config.yaml)")
    parser.add_argument("--host", default=None)
    parser.add_argument("--port", type=int, default=None)
    parser.add_argument("--data-dir", dest="data_dir", default=None)
    parser.add_argument("--inactive-days", dest="inactive_days", type=float, default=None)
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_arg_parser().parse_args(argv)
    overrides = {
        "host": args.host,
        "port": args.port,
        "data_dir": args.data_dir,
        "inactive_days": args.inactive_days,
    }
    cfg = load_config(args.config, overrides=overrides)
    server = RoomServer(cfg)
    server.prepare()
    server.build_app()
    server._start_cleanup_thread()
    server._oplog(f"Map Rooms server listening at {server._best_lan_url()} (data: {cfg.data_dir})")
    try:
        server.serve()
    except KeyboardInterrupt:
        pass
    finally:
        server.stop()
        server.store.close()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
