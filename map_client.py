#!/usr/bin/env python3
"""
Map Rooms desktop client.

One tkinter window for every role:
- admin editor: drag/zoom the map, tune grid + distance, upload, save.
- admin/player viewer: same map component with read-only controls; it
  refetches the active map whenever the room reports a change.
"""

from __future__ import annotations

import argparse
import json
import logging
import queue
import threading
import urllib.error
import urllib.parse
import urllib.request
import uuid
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import tkinter as tk
from tkinter import filedialog, messagebox, ttk

from PIL import Image, ImageColor
from websockets.exceptions import ConnectionClosed, WebSocketException
from websockets.sync.client import connect as ws_connect

try:
    from PIL import ImageTk  # type: ignore
except Exception:  # pragma: no cover
    ImageTk = None  # type: ignore

from map_view import (
    DISTANCE_UNITS,
    EDITOR_CAPABILITIES,
    VIEWER_CAPABILITIES,
    Capabilities,
    MapSnapshot,
    MapView,
    RenderSurface,
    Segment,
)

logger = logging.getLogger(__name__)

DEFAULT_SERVER = "http://127.0.0.1:8787"
DEFAULT_MAP_NAME = "Main Map"
POLL_MS = 100


# ----------------------------- HTTP -----------------------------

class ApiError(Exception):
    def __init__(self, message: str, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status


class RoomApiClient:
    """Thin JSON client for the room server's /api routes."""

    def __init__(self, base_url: str = DEFAULT_SERVER, timeout: float = 10.0) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    def _request(self, method: str, path: str, body: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        data = json.dumps(body).encode("utf-8") if body is not None else None
        req = urllib.request.Request(f"{self.base_url}{path}", data=data, method=method)
        req.add_header("Accept", "application/json")
        if data is not None:
            req.add_header("Content-Type", "application/json")
        try:
            with urllib.request.urlopen(req, timeout=self.timeout) as response:
                payload = json.loads(response.read().decode("utf-8") or "{}")
        except urllib.error.HTTPError as e:
            message = f"HTTP {e.code}"
            try:
                message = json.loads(e.read().decode("utf-8")).get("error") or message
            except Exception:
                pass
            raise ApiError(message, status=e.code) from e
        except (urllib.error.URLError, OSError) as e:
            raise ApiError(f"Server unreachable: {getattr(e, 'reason', e)}") from e
        except json.JSONDecodeError as e:
            raise ApiError(f"Bad response from server: {e}") from e
        if not isinstance(payload, dict):
            raise ApiError("Bad response from server.")
        return payload

    @staticmethod
    def _code(room_code: str) -> str:
        return urllib.parse.quote(str(room_code).strip().upper(), safe="")

    # rooms
    def create_room(self, name: str, admin_password: str) -> Dict[str, Any]:
        return self._request("POST", "/api/rooms", {"name": name, "adminPassword": admin_password})["room"]

    def list_rooms(self, admin_password: str) -> List[Dict[str, Any]]:
        return self._request("POST", "/api/rooms/list", {"adminPassword": admin_password}).get("rooms", [])

    def verify_admin(self, room_code: str, admin_password: str) -> Dict[str, Any]:
        return self._request("POST", f"/api/rooms/{self._code(room_code)}/admin", {"adminPassword": admin_password})["room"]

    def get_room(self, room_code: str) -> Dict[str, Any]:
        return self._request("GET", f"/api/rooms/{self._code(room_code)}")["room"]

    # maps
    def list_maps(self, room_code: str) -> List[Dict[str, Any]]:
        return self._request("GET", f"/api/rooms/{self._code(room_code)}/maps").get("maps", [])

    def get_active_map(self, room_code: str) -> Optional[Dict[str, Any]]:
        return self._request("GET", f"/api/rooms/{self._code(room_code)}/maps/active").get("map")

    def create_map(self, room_code: str, admin_password: str, name: str, snapshot: Dict[str, Any]) -> Dict[str, Any]:
        body = dict(snapshot, name=name, adminPassword=admin_password)
        return self._request("POST", f"/api/rooms/{self._code(room_code)}/maps", body)["map"]

    def update_map(self, room_code: str, map_id: str, admin_password: str, snapshot: Dict[str, Any]) -> Dict[str, Any]:
        body = dict(snapshot, adminPassword=admin_password)
        return self._request("PUT", f"/api/rooms/{self._code(room_code)}/maps/{map_id}", body)["map"]

    def activate_map(self, room_code: str, map_id: str, admin_password: str) -> Dict[str, Any]:
        path = f"/api/rooms/{self._code(room_code)}/maps/{map_id}/activate"
        return self._request("PUT", path, {"adminPassword": admin_password})["map"]

    def delete_map(self, room_code: str, map_id: str, admin_password: str) -> Dict[str, Any]:
        path = f"/api/rooms/{self._code(room_code)}/maps/{map_id}"
        return self._request("DELETE", path, {"adminPassword": admin_password})["deleted"]

    # users + characters
    def identify_user(self, user_hash: str, player_name: Optional[str] = None) -> Dict[str, Any]:
        return self._request("POST", "/api/users/identify", {"userHash": user_hash, "playerName": player_name})["user"]

    def get_character(self, room_code: str, user_hash: str) -> Optional[Dict[str, Any]]:
        path = f"/api/rooms/{self._code(room_code)}/characters/{urllib.parse.quote(user_hash, safe='')}"
        return self._request("GET", path).get("character")

    def save_character(self, room_code: str, user_hash: str, character_name: str,
                       character_data: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        body = {"userId": user_hash, "characterName": character_name, "characterData": character_data or {}}
        return self._request("POST", f"/api/rooms/{self._code(room_code)}/characters", body)["character"]


def ws_url_for(base_url: str) -> str:
    parts = urllib.parse.urlsplit(base_url)
    scheme = "wss" if parts.scheme == "https" else "ws"
    return urllib.parse.urlunsplit((scheme, parts.netloc, parts.path.rstrip("/") + "/ws", "", ""))


# ----------------------------- presence -----------------------------

class RemoteChangeListener:
    """Background presence socket; pushes decoded messages into a queue for the Tk thread."""

    def __init__(self, url: str, join: Dict[str, Any], events: "queue.Queue[Dict[str, Any]]") -> None:
        self.url = url
        self.join = dict(join, type="join_room")
        self.events = events
        self._ws = None
        self._thread: Optional[threading.Thread] = None
        self._closing = False

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._closing = False
        self._thread = threading.Thread(target=self._run, name="MapRoomsPresence", daemon=True)
        self._thread.start()

    def _run(self) -> None:
        try:
            with ws_connect(self.url, open_timeout=10) as ws:
                self._ws = ws
                ws.send(json.dumps(self.join))
                for raw in ws:
                    try:
                        msg = json.loads(raw)
                    except (TypeError, ValueError):
                        continue
                    if isinstance(msg, dict):
                        self.events.put(msg)
        except ConnectionClosed:
            pass
        except (OSError, WebSocketException) as exc:
            if not self._closing:
                logger.warning("Presence connection to %s failed: %s", self.url, exc)
                self.events.put({"type": "presence_error", "error": str(exc)})
        finally:
            self._ws = None

    def send(self, payload: Dict[str, Any]) -> bool:
        ws = self._ws
        if ws is None:
            return False
        try:
            ws.send(json.dumps(payload))
            return True
        except (ConnectionClosed, OSError) as exc:
            logger.warning("Presence send failed: %s", exc)
            return False

    def notify_map_updated(self) -> bool:
        return self.send({"type": "map_updated", "roomCode": self.join.get("roomCode")})

    def close(self) -> None:
        self._closing = True
        ws = self._ws
        if ws is None:
            return
        try:
            ws.send(json.dumps({"type": "leave_room"}))
        except (ConnectionClosed, OSError):
            pass
        try:
            ws.close()
        except (ConnectionClosed, OSError):
            pass


# ----------------------------- collaborator -----------------------------

class MapSync:
    """Load/save map snapshots over HTTP and relay room change pings.

    Failures are logged and reported as (False, message) or None; nothing is retried.
    """

    def __init__(self, api: RoomApiClient, listener_factory: Optional[Callable[..., RemoteChangeListener]] = None) -> None:
        self.api = api
        self.events: "queue.Queue[Dict[str, Any]]" = queue.Queue()
        self._listener_factory = listener_factory or RemoteChangeListener
        self._listener: Optional[RemoteChangeListener] = None
        self._change_callbacks: Dict[str, List[Callable[[], None]]] = {}
        self._users_callbacks: List[Callable[[Dict[str, Any]], None]] = []
        self.current_map_id: Optional[str] = None
        self._room_code = ""

    def load(self, room_code: str, map_id: Optional[str] = None) -> Optional[MapSnapshot]:
        try:
            if map_id:
                row = next((m for m in self.api.list_maps(room_code) if m.get("id") == map_id), None)
                if row is None:
                    logger.warning("Map %s not found in room %s.", map_id, room_code)
                    return None
            else:
                row = self.api.get_active_map(room_code)
            if row is not None:
                self.current_map_id = row.get("id")
                return MapSnapshot.from_dict(row)
            room = self.api.get_room(room_code)
        except ApiError as exc:
            logger.warning("Could not load map for room %s: %s", room_code, exc)
            return None
        self.current_map_id = None
        return MapSnapshot.from_dict(
            {
                "imageData": room.get("image_data"),
                "imageTransform": room.get("image_transform"),
                "gridConfig": room.get("grid_config"),
            }
        )

    def save(
        self,
        room_code: str,
        map_id: Optional[str],
        snapshot: MapSnapshot,
        admin_password: str,
        name: str = DEFAULT_MAP_NAME,
    ) -> Tuple[bool, str]:
        """Update (or create) the map, make it active and ping the room."""
        payload = snapshot.to_dict()
        if payload.get("imageData") is None:
            payload.pop("imageData")
        try:
            if map_id:
                row = self.api.update_map(room_code, map_id, admin_password, payload)
            else:
                row = self.api.create_map(room_code, admin_password, name, payload)
            map_id = row["id"]
            self.api.activate_map(room_code, map_id, admin_password)
        except ApiError as exc:
            logger.warning("Saving map for room %s failed: %s", room_code, exc)
            return False, str(exc)
        self.current_map_id = map_id
        if self._listener is not None:
            self._listener.notify_map_updated()
        return True, "Map saved."

    def on_remote_change(self, room_code: str, callback: Callable[[], None]) -> None:
        self._change_callbacks.setdefault(str(room_code).upper(), []).append(callback)

    def on_users_updated(self, callback: Callable[[Dict[str, Any]], None]) -> None:
        self._users_callbacks.append(callback)

    def connect(self, room_code: str, user_type: str, user_name: Optional[str] = None,
                user_id: Optional[str] = None, character_name: Optional[str] = None) -> None:
        join = {
            "roomCode": str(room_code).upper(),
            "userType": user_type,
            "userName": user_name,
            "userId": user_id,
            "characterName": character_name,
        }
        self._room_code = join["roomCode"]
        self._listener = self._listener_factory(ws_url_for(self.api.base_url), join, self.events)
        self._listener.start()

    def disconnect(self) -> None:
        if self._listener is not None:
            self._listener.close()
            self._listener = None

    def pump(self) -> int:
        """Drain queued presence events on the caller's (Tk) thread."""
        handled = 0
        while True:
            try:
                msg = self.events.get_nowait()
            except queue.Empty:
                break
            handled += 1
            typ = msg.get("type")
            if typ == "map_changed":
                for cb in list(self._change_callbacks.get(self._room_code, [])):
                    try:
                        cb()
                    except Exception:
                        logger.exception("Remote change callback failed")
            elif typ == "users_updated":
                for cb in list(self._users_callbacks):
                    try:
                        cb(msg)
                    except Exception:
                        logger.exception("Users callback failed")
            elif typ == "presence_error":
                logger.warning("Presence unavailable: %s", msg.get("error"))
        return handled


# ----------------------------- local identity -----------------------------

class ClientIdentity:
    """Remember this machine's user hash + player name in a small JSON file."""

    def __init__(self, path: Path) -> None:
        self._path = path
        self.user_hash: str = ""
        self.player_name: str = ""
        self.load()

    def load(self) -> None:
        try:
            raw = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            raw = {}
        if not isinstance(raw, dict):
            raw = {}
        self.user_hash = str(raw.get("user_hash") or "")
        self.player_name = str(raw.get("player_name") or "")
        if not self.user_hash:
            self.user_hash = str(uuid.uuid4())
            self.save()

    def save(self) -> None:
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            payload = {"user_hash": self.user_hash, "player_name": self.player_name}
            self._path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
        except OSError as exc:
            logger.warning("Could not save client identity %s: %s", self._path, exc)

    def set_player_name(self, name: Optional[str]) -> None:
        if name and name != self.player_name:
            self.player_name = name
            self.save()


# ----------------------------- Tk surface -----------------------------

def _blend(color: str, background: str, opacity: float) -> str:
    """Tk canvas lines have no alpha; pre-mix the grid colour into the background."""
    try:
        fg = ImageColor.getrgb(color)[:3]
    except ValueError:
        fg = (255, 255, 255)
    try:
        bg = ImageColor.getrgb(background)[:3]
    except ValueError:
        bg = (0, 0, 0)
    a = max(0.0, min(1.0, float(opacity)))
    mixed = tuple(int(round(b + (f - b) * a)) for f, b in zip(fg, bg))
    return "#%02x%02x%02x" % mixed


class TkCanvasSurface(RenderSurface):
    def __init__(self, canvas: tk.Canvas, background: str = "#1e1e1e") -> None:
        self.canvas = canvas
        self.background = background
        self._photo = None
        self.resize(int(canvas.winfo_width() or 0), int(canvas.winfo_height() or 0))

    def clear(self) -> None:
        self.canvas.delete("bgimg")
        self.canvas.delete("grid")
        self._photo = None

    def draw_image(self, image: Image.Image, origin: Tuple[int, int]) -> None:
        if ImageTk is None:
            logger.warning("Pillow ImageTk support is required to display images in Tk.")
            return
        self._photo = ImageTk.PhotoImage(image)
        self.canvas.create_image(origin[0], origin[1], image=self._photo, anchor="nw", tags=("bgimg",))
        self.canvas.tag_lower("bgimg")

    def stroke_lines(self, segments: Sequence[Segment], color: str, line_width: int, opacity: float) -> None:
        fill = _blend(color, self.background, opacity)
        for x0, y0, x1, y1 in segments:
            self.canvas.create_line(x0, y0, x1, y1, fill=fill, width=max(1, int(line_width)), tags=("grid",))


# ----------------------------- window -----------------------------

class MapWindow(tk.Tk):
    """Room map window; capabilities decide editor vs viewer."""

    def __init__(
        self,
        sync: MapSync,
        room_code: str,
        capabilities: Capabilities = VIEWER_CAPABILITIES,
        admin_password: Optional[str] = None,
        title: str = "Map Rooms",
    ) -> None:
        super().__init__()
        self.sync = sync
        self.room_code = room_code.upper()
        self.capabilities = capabilities
        self.admin_password = admin_password
        self.title(f"{title} - {self.room_code}")
        self.geometry("1100x760")
        self.minsize(720, 520)
        self.protocol("WM_DELETE_WINDOW", self._on_close)

        self.scale_var = tk.StringVar(value="100")
        self.rotation_var = tk.StringVar(value="0")
        self.grid_size_var = tk.StringVar(value="50")
        self.grid_opacity_var = tk.StringVar(value="50")
        self.grid_color_var = tk.StringVar(value="#ffffff")
        self.grid_line_width_var = tk.StringVar(value="1")
        self.grid_visible_var = tk.BooleanVar(value=True)
        self.grid_offset_x_var = tk.StringVar(value="0")
        self.grid_offset_y_var = tk.StringVar(value="0")
        self.square_size_var = tk.StringVar(value="5")
        self.unit_var = tk.StringVar(value="feet")
        self.map_name_var = tk.StringVar(value=DEFAULT_MAP_NAME)
        self.status_var = tk.StringVar(value="")
        self.users_var = tk.StringVar(value="")
        self._poll_after_id: Optional[str] = None

        self._build_ui()
        self.surface = TkCanvasSurface(self.canvas)
        self.view = MapView(surface=self.surface, capabilities=capabilities)
        self.view.add_listener(self._on_view_change)
        self._bind_canvas()

        self.sync.on_remote_change(self.room_code, self._handle_remote_change)
        self.sync.on_users_updated(self._on_users_updated)
        self.after(0, self._initial_load)
        self._poll_after_id = self.after(POLL_MS, self._poll)

    # ---------- UI ----------

    def _build_ui(self) -> None:
        outer = ttk.Panedwindow(self, orient=tk.HORIZONTAL)
        outer.pack(fill=tk.BOTH, expand=True)

        left = ttk.Frame(outer, padding=8)
        outer.add(left, weight=0)
        right = ttk.Frame(outer, padding=8)
        outer.add(right, weight=1)

        state = "normal" if self.capabilities.editable_controls else "disabled"

        image_box = ttk.LabelFrame(left, text="Image", padding=6)
        image_box.pack(fill=tk.X, pady=(0, 10))
        if self.capabilities.editable_controls:
            ttk.Label(image_box, text="Map name:").grid(row=0, column=0, sticky="w")
            ttk.Entry(image_box, textvariable=self.map_name_var, width=18).grid(row=0, column=1, sticky="ew", padx=(6, 0))
            ttk.Button(image_box, text="Load Image…", command=self._choose_image).grid(row=1, column=0, sticky="w", pady=(6, 0))
            ttk.Button(image_box, text="Reset", command=self._reset_image).grid(row=1, column=1, sticky="w", pady=(6, 0))
        self._spin(image_box, 2, "Scale (%):", self.scale_var, 10, 300, 5, state, lambda v: self.view.set_scale_percent(v))
        self._spin(image_box, 3, "Rotation (°):", self.rotation_var, -360, 360, 1, state, lambda v: self.view.set_rotation_degrees(v))

        grid_box = ttk.LabelFrame(left, text="Grid", padding=6)
        grid_box.pack(fill=tk.X, pady=(0, 10))
        ttk.Checkbutton(
            grid_box,
            text="Show grid",
            variable=self.grid_visible_var,
            state=state,
            command=lambda: self.view.set_grid_visible(self.grid_visible_var.get()),
        ).grid(row=0, column=0, columnspan=2, sticky="w")
        self._spin(grid_box, 1, "Cell size (px):", self.grid_size_var, 1, 500, 1, state, lambda v: self.view.set_grid_size(v))
        self._spin(grid_box, 2, "Opacity (%):", self.grid_opacity_var, 0, 100, 5, state, lambda v: self.view.set_grid_opacity(v))
        self._spin(grid_box, 3, "Line width:", self.grid_line_width_var, 1, 10, 1, state, lambda v: self.view.set_grid_line_width(v))
        self._spin(grid_box, 4, "Offset X:", self.grid_offset_x_var, -500, 500, 1, state, lambda v: self.view.set_grid_offset_x(v))
        self._spin(grid_box, 5, "Offset Y:", self.grid_offset_y_var, -500, 500, 1, state, lambda v: self.view.set_grid_offset_y(v))
        ttk.Label(grid_box, text="Color:").grid(row=6, column=0, sticky="w", pady=(4, 0))
        color_entry = ttk.Entry(grid_box, textvariable=self.grid_color_var, width=10, state=state)
        color_entry.grid(row=6, column=1, sticky="w", padx=(6, 0), pady=(4, 0))
        color_entry.bind("<Return>", lambda _e: self._apply_control(self.view.set_grid_color, self.grid_color_var))
        color_entry.bind("<FocusOut>", lambda _e: self._apply_control(self.view.set_grid_color, self.grid_color_var))

        dist_box = ttk.LabelFrame(left, text="Distance", padding=6)
        dist_box.pack(fill=tk.X, pady=(0, 10))
        self._spin(dist_box, 0, "Square size:", self.square_size_var, 0.5, 1000, 0.5, state,
                   lambda v: self.view.set_distance_square_size(v))
        ttk.Label(dist_box, text="Unit:").grid(row=1, column=0, sticky="w", pady=(4, 0))
        unit_combo = ttk.Combobox(
            dist_box,
            textvariable=self.unit_var,
            values=DISTANCE_UNITS,
            state="readonly" if self.capabilities.editable_controls else "disabled",
            width=10,
        )
        unit_combo.grid(row=1, column=1, sticky="w", padx=(6, 0), pady=(4, 0))
        unit_combo.bind("<<ComboboxSelected>>", lambda _e: self.view.set_distance_unit(self.unit_var.get()))

        if self.capabilities.editable_controls:
            ttk.Button(left, text="Save & Activate", command=self._save).pack(fill=tk.X, pady=(0, 10))
        else:
            ttk.Button(left, text="Refresh", command=self._handle_remote_change).pack(fill=tk.X, pady=(0, 10))

        users_box = ttk.LabelFrame(left, text="In the room", padding=6)
        users_box.pack(fill=tk.X)
        ttk.Label(users_box, textvariable=self.users_var, justify=tk.LEFT, wraplength=220).pack(anchor="w")

        self.canvas = tk.Canvas(right, background="#1e1e1e", highlightthickness=0)
        self.canvas.pack(fill=tk.BOTH, expand=True)
        ttk.Label(right, textvariable=self.status_var).pack(anchor="w", pady=(6, 0))

    def _spin(self, parent, row: int, label: str, var: tk.StringVar, lo: float, hi: float, step: float,
              state: str, apply: Callable[[Any], None]) -> None:
        ttk.Label(parent, text=label).grid(row=row, column=0, sticky="w", pady=(4, 0))
        spin = ttk.Spinbox(
            parent,
            from_=lo,
            to=hi,
            increment=step,
            textvariable=var,
            width=8,
            state=state,
            command=lambda: self._apply_control(apply, var),
        )
        spin.grid(row=row, column=1, sticky="w", padx=(6, 0), pady=(4, 0))
        spin.bind("<Return>", lambda _e: self._apply_control(apply, var))
        spin.bind("<FocusOut>", lambda _e: self._apply_control(apply, var))

    def _bind_canvas(self) -> None:
        c = self.canvas
        ctl = self.view.controller
        c.bind("<Configure>", lambda e: self.view.resize(e.width, e.height))
        c.bind("<ButtonPress-1>", lambda e: ctl.pointer_down(e.x, e.y))
        c.bind("<B1-Motion>", lambda e: ctl.pointer_move(e.x, e.y))
        c.bind("<ButtonRelease-1>", lambda e: ctl.pointer_up())
        c.bind("<Leave>", lambda e: ctl.pointer_leave())
        c.bind("<MouseWheel>", self._on_wheel)
        c.bind("<Button-4>", self._on_wheel)
        c.bind("<Button-5>", self._on_wheel)

    def _on_wheel(self, event) -> str:
        num = getattr(event, "num", None)
        if num == 4:
            delta_y = -1.0
        elif num == 5:
            delta_y = 1.0
        else:
            delta_y = -float(getattr(event, "delta", 0) or 0)
        if self.view.controller.wheel(event.x, event.y, delta_y):
            return "break"
        return ""

    # ---------- state projection ----------

    def _apply_control(self, setter: Callable[[Any], None], var: tk.Variable) -> None:
        setter(var.get())
        self._sync_controls()

    def _on_view_change(self, _view: MapView, what: str) -> None:
        self._sync_controls()

    def _sync_controls(self) -> None:
        view = self.view
        grid = view.grid
        self.scale_var.set(str(view.scale_percent))
        self.rotation_var.set(f"{view.rotation_degrees:g}")
        self.grid_size_var.set(str(grid.size))
        self.grid_opacity_var.set(str(int(round(grid.opacity * 100))))
        self.grid_color_var.set(grid.color)
        self.grid_line_width_var.set(str(grid.line_width))
        self.grid_visible_var.set(bool(grid.visible))
        self.grid_offset_x_var.set(str(grid.offset_x))
        self.grid_offset_y_var.set(str(grid.offset_y))
        self.square_size_var.set(f"{view.distance.square_size:g}")
        self.unit_var.set(view.distance.unit)

    def _on_users_updated(self, msg: Dict[str, Any]) -> None:
        lines = [f"Admin: {name}" for name in msg.get("admins", [])]
        for player in msg.get("players", []):
            character = player.get("characterName")
            lines.append(f"{player.get('name')} ({character})" if character else str(player.get("name")))
        lines.append(f"Total: {msg.get('total', 0)}")
        self.users_var.set("\n".join(lines))

    # ---------- actions ----------

    def _initial_load(self) -> None:
        snap = self.sync.load(self.room_code)
        if snap is None:
            self.status_var.set("Could not load the room map.")
            return
        self.view.load_snapshot(snap)
        self.status_var.set("Map loaded." if snap.image_data else "No map image yet.")

    def _handle_remote_change(self) -> None:
        if self.capabilities.editable_controls:
            self.status_var.set("Another session updated the room map.")
            return
        snap = self.sync.load(self.room_code)
        if snap is not None:
            self.view.load_snapshot(snap)
            self.status_var.set("Map updated.")

    def _choose_image(self) -> None:
        path = filedialog.askopenfilename(
            parent=self,
            title="Choose map image",
            filetypes=[("Images", "*.png *.jpg *.jpeg *.gif *.webp *.bmp"), ("All files", "*.*")],
        )
        if not path:
            return
        if not self.view.load_image_file(path):
            messagebox.showerror("Map image", f"Could not open image:\n{path}", parent=self)

    def _reset_image(self) -> None:
        self.view.reset_image()

    def _save(self) -> None:
        if not self.admin_password:
            self.status_var.set("Admin password required to save.")
            return
        ok, message = self.sync.save(
            self.room_code,
            self.sync.current_map_id,
            self.view.snapshot(),
            self.admin_password,
            name=self.map_name_var.get().strip() or DEFAULT_MAP_NAME,
        )
        self.status_var.set(message)
        if not ok:
            messagebox.showerror("Save map", message, parent=self)

    def _poll(self) -> None:
        try:
            self.sync.pump()
        finally:
            self._poll_after_id = self.after(POLL_MS, self._poll)

    def _on_close(self) -> None:
        if self._poll_after_id is not None:
            try:
                self.after_cancel(self._poll_after_id)
            except tk.TclError:
                pass
        self.sync.disconnect()
        self.destroy()


# ----------------------------- CLI -----------------------------

def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="map-rooms-client", description="Open a Map Rooms room.")
    parser.add_argument("--server", default=DEFAULT_SERVER, help="Room server base URL")
    parser.add_argument("--room", default=None, help="Room code")
    parser.add_argument("--admin-password", dest="admin_password", default=None)
    parser.add_argument("--name", default=None, help="Your display name")
    parser.add_argument("--character", default=None, help="Character name (players)")
    parser.add_argument("--viewer", action="store_true", help="Open the admin read-only viewer")
    parser.add_argument("--create-room", dest="create_room", default=None, metavar="NAME",
                        help="Create a room (needs --admin-password) and open its editor")
    parser.add_argument("--serve", action="store_true", help="Also run a local room server in this process")
    return parser


def _identity_path() -> Path:
    from room_server import _default_data_dir

    return _default_data_dir() / "client_identity.json"


def main(argv: Optional[Sequence[str]] = None) -> int:
    logging.basicConfig(level=logging.INFO, format="[%(asctime)s] %(levelname)s %(message)s")
    parser = build_arg_parser()
    args = parser.parse_args(argv)

    if args.serve:
        from room_server import RoomServer, load_config

        RoomServer(load_config()).start()

    api = RoomApiClient(args.server)
    sync = MapSync(api)
    room_code = args.room
    try:
        if args.create_room:
            if not args.admin_password:
                parser.error("--create-room needs --admin-password")
            room_code = api.create_room(args.create_room, args.admin_password)["code"]
            logger.info("Created room %s", room_code)
        if not room_code:
            parser.error("--room is required")
        if args.admin_password:
            api.verify_admin(room_code, args.admin_password)
    except ApiError as exc:
        logger.error("%s", exc)
        return 1

    if args.admin_password:
        caps = VIEWER_CAPABILITIES if args.viewer else EDITOR_CAPABILITIES
        sync.connect(room_code, "admin", user_name=args.name)
    else:
        caps = VIEWER_CAPABILITIES
        identity = ClientIdentity(_identity_path())
        identity.set_player_name(args.name)
        try:
            api.identify_user(identity.user_hash, identity.player_name or None)
            character = args.character
            existing = api.get_character(room_code, identity.user_hash)
            if character:
                data = existing.get("characterData") if existing else {}
                api.save_character(room_code, identity.user_hash, character, data)
            elif existing is not None:
                character = existing.get("characterName")
        except ApiError as exc:
            logger.warning("Player identity not registered: %s", exc)
            character = args.character
        sync.connect(room_code, "player", user_name=identity.player_name or None,
                     user_id=identity.user_hash, character_name=character)

    window = MapWindow(sync, room_code, capabilities=caps, admin_password=args.admin_password)
    window.mainloop()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
