"""Map view core: image transform, grid overlay and pointer input for a room map.

The same MapView drives the admin editor, the admin/player viewers and the
server-side preview renderer. Only the surface it draws on and its
capabilities differ.
"""

from __future__ import annotations

import base64
import dataclasses
import io
import json
import logging
import math
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

from PIL import Image, ImageColor, ImageDraw

logger = logging.getLogger(__name__)

# --- Zoom bounds ---
ZOOM_MIN = 0.1
ZOOM_MAX = 3.0

WHEEL_ZOOM_OUT_FACTOR = 0.9
WHEEL_ZOOM_IN_FACTOR = 1.1

DISTANCE_UNITS = ("feet", "meters", "km", "miles")

Segment = Tuple[float, float, float, float]


def _clamp(value: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, value))


def _as_float(value: Any, fallback: Optional[float]) -> Optional[float]:
    if isinstance(value, bool):
        return fallback
    try:
        out = float(value)
    except Exception:
        return fallback
    if math.isnan(out) or math.isinf(out):
        return fallback
    return out


def _as_int(value: Any, fallback: Optional[int]) -> Optional[int]:
    out = _as_float(value, None)
    if out is None:
        return fallback
    return int(out)


def _as_bool(value: Any, fallback: bool) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        text = value.strip().lower()
        if text in ("1", "true", "yes", "on"):
            return True
        if text in ("0", "false", "no", "off"):
            return False
    return fallback


def _as_mapping(data: Any) -> Optional[Dict[str, Any]]:
    """Accept a dict or its JSON text (older rows stored config as text)."""
    if isinstance(data, str):
        try:
            data = json.loads(data)
        except Exception:
            return None
    if isinstance(data, dict):
        return data
    return None


def _is_color(value: str) -> bool:
    try:
        ImageColor.getrgb(value)
    except ValueError:
        return False
    return True


# ----------------------------- Data -----------------------------

@dataclass
class Transform:
    x: float = 0.0
    y: float = 0.0
    scale: float = 1.0
    rotation: float = 0.0  # radians

    def copy(self) -> "Transform":
        return dataclasses.replace(self)

    def to_dict(self) -> Dict[str, float]:
        return {"x": self.x, "y": self.y, "scale": self.scale, "rotation": self.rotation}

    @classmethod
    def from_dict(cls, data: Any, base: Optional["Transform"] = None) -> "Transform":
        """Merge a serialized transform over `base`; bad fields keep the base value."""
        base = base or cls()
        raw = _as_mapping(data)
        if raw is None:
            return base.copy()
        scale = _as_float(raw.get("scale"), base.scale)
        if scale is None or scale <= 0:
            scale = base.scale
        return cls(
            x=_as_float(raw.get("x"), base.x),
            y=_as_float(raw.get("y"), base.y),
            scale=_clamp(scale, ZOOM_MIN, ZOOM_MAX),
            rotation=_as_float(raw.get("rotation"), base.rotation),
        )


@dataclass
class GridConfig:
    size: int = 50
    opacity: float = 0.5
    color: str = "#ffffff"
    line_width: int = 1
    visible: bool = True
    offset_x: int = 0
    offset_y: int = 0

    def copy(self) -> "GridConfig":
        return dataclasses.replace(self)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "size": self.size,
            "opacity": self.opacity,
            "color": self.color,
            "lineWidth": self.line_width,
            "visible": self.visible,
            "offsetX": self.offset_x,
            "offsetY": self.offset_y,
        }

    @classmethod
    def from_dict(cls, data: Any, base: Optional["GridConfig"] = None) -> "GridConfig":
        base = base or cls()
        raw = _as_mapping(data)
        if raw is None:
            return base.copy()
        size = _as_int(raw.get("size"), base.size)
        line_width = _as_int(raw.get("lineWidth"), base.line_width)
        opacity = _as_float(raw.get("opacity"), base.opacity)
        color = raw.get("color")
        if not isinstance(color, str) or not color.strip() or not _is_color(color.strip()):
            color = base.color
        return cls(
            size=size if size and size > 0 else base.size,
            opacity=_clamp(opacity, 0.0, 1.0),
            color=color.strip(),
            line_width=line_width if line_width and line_width > 0 else base.line_width,
            visible=_as_bool(raw.get("visible"), base.visible),
            offset_x=_as_int(raw.get("offsetX"), base.offset_x),
            offset_y=_as_int(raw.get("offsetY"), base.offset_y),
        )


@dataclass
class DistanceConfig:
    square_size: float = 5.0
    unit: str = "feet"

    def copy(self) -> "DistanceConfig":
        return dataclasses.replace(self)

    def to_dict(self) -> Dict[str, Any]:
        return {"squareSize": self.square_size, "unit": self.unit}

    @classmethod
    def from_dict(cls, data: Any, base: Optional["DistanceConfig"] = None) -> "DistanceConfig":
        base = base or cls()
        raw = _as_mapping(data)
        if raw is None:
            return base.copy()
        square = _as_float(raw.get("squareSize"), base.square_size)
        unit = str(raw.get("unit") or "").strip().lower()
        return cls(
            square_size=square if square and square > 0 else base.square_size,
            unit=unit if unit in DISTANCE_UNITS else base.unit,
        )


@dataclass
class MapSnapshot:
    """Serialized map state exchanged with the room server."""

    image_data: Optional[str] = None
    transform: Transform = field(default_factory=Transform)
    grid: GridConfig = field(default_factory=GridConfig)
    distance: DistanceConfig = field(default_factory=DistanceConfig)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "imageData": self.image_data,
            "imageTransform": self.transform.to_dict(),
            "gridConfig": self.grid.to_dict(),
            "distanceConfig": self.distance.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Any, base: Optional["MapSnapshot"] = None) -> "MapSnapshot":
        base = base or cls()
        raw = _as_mapping(data) or {}
        image_data = base.image_data
        if "imageData" in raw:
            image_data = raw.get("imageData") or None
            if image_data is not None:
                image_data = str(image_data)
        return cls(
            image_data=image_data,
            transform=Transform.from_dict(raw.get("imageTransform"), base.transform),
            grid=GridConfig.from_dict(raw.get("gridConfig"), base.grid),
            distance=DistanceConfig.from_dict(raw.get("distanceConfig"), base.distance),
        )


@dataclass(frozen=True)
class Capabilities:
    draggable: bool = True
    zoomable: bool = True
    editable_controls: bool = True


EDITOR_CAPABILITIES = Capabilities()
VIEWER_CAPABILITIES = Capabilities(editable_controls=False)


# ----------------------------- Images -----------------------------

def decode_image_data(data_url: Optional[str]) -> Optional[Image.Image]:
    """Decode a `data:image/...;base64,` payload (or bare base64) into an RGBA image."""
    if not data_url:
        return None
    text = str(data_url).strip()
    if text.startswith("data:"):
        _header, _sep, text = text.partition(",")
    try:
        raw = base64.b64decode(text)
        img = Image.open(io.BytesIO(raw))
        img.load()
        return img.convert("RGBA")
    except Exception as exc:
        logger.warning("Could not decode map image payload: %s", exc)
        return None


def encode_image_file(path: Union[str, Path]) -> str:
    """Read an image file into the data URL form stored with a map."""
    raw = Path(path).read_bytes()
    with Image.open(io.BytesIO(raw)) as img:
        fmt = img.format or "PNG"
    mime = Image.MIME.get(fmt.upper(), "image/png")
    return f"data:{mime};base64,{base64.b64encode(raw).decode('ascii')}"


def sampling_step(scale: float) -> int:
    """Box-reduction factor applied to the source before sampling a zoomed-out view."""
    if scale <= 0 or scale >= 0.5:
        return 1
    return max(1, int(1.0 / scale))


def viewport_image(
    image: Image.Image,
    transform: Transform,
    size: Tuple[int, int],
    source: Optional[Image.Image] = None,
    step: int = 1,
) -> Optional[Image.Image]:
    """Render the transformed map onto a surface-sized RGBA tile.

    Every surface pixel samples the source through the inverse of
    scale -> rotate (about the scaled image centre) -> translate, so the work
    and the buffer are bounded by `size` whatever the image size or zoom.
    `source` may be `image` box-reduced by `step`; uncovered pixels stay
    transparent.
    """
    width, height = int(size[0]), int(size[1])
    if width <= 0 or height <= 0 or transform.scale <= 0:
        return None
    w, h = image.size
    s = transform.scale
    cx = transform.x + w * s / 2.0
    cy = transform.y + h * s / 2.0
    cos_r, sin_r = math.cos(transform.rotation), math.sin(transform.rotation)
    k = 1.0 / (s * step)
    coeffs = (
        cos_r * k,
        sin_r * k,
        (cx - cx * cos_r - cy * sin_r - transform.x) * k,
        -sin_r * k,
        cos_r * k,
        (cy + cx * sin_r - cy * cos_r - transform.y) * k,
    )
    src = source if source is not None else image
    return src.transform((width, height), Image.AFFINE, coeffs, resample=Image.BICUBIC)


# ----------------------------- Transform model -----------------------------

class TransformModel:
    """Pan/zoom/rotation of one map image on a canvas of known pixel size."""

    def __init__(
        self,
        transform: Optional[Transform] = None,
        canvas_size: Tuple[int, int] = (0, 0),
        image_size: Optional[Tuple[int, int]] = None,
    ) -> None:
        self.transform = transform.copy() if transform else Transform()
        self.canvas_width = 0
        self.canvas_height = 0
        self.image_size: Optional[Tuple[int, int]] = None
        self.set_canvas_size(*canvas_size)
        self.set_image_size(image_size)

    def set_canvas_size(self, width: float, height: float) -> None:
        self.canvas_width = max(0, int(width or 0))
        self.canvas_height = max(0, int(height or 0))

    def set_image_size(self, size: Optional[Tuple[int, int]]) -> None:
        if size is None:
            self.image_size = None
            return
        w, h = size
        self.image_size = (max(0, int(w)), max(0, int(h)))

    @property
    def rotation_degrees(self) -> float:
        return math.degrees(self.transform.rotation)

    @property
    def scale_percent(self) -> int:
        return int(round(self.transform.scale * 100))

    def pan(self, dx: float, dy: float) -> None:
        self.transform.x += dx
        self.transform.y += dy

    def _scale_about(self, ax: float, ay: float, new_scale: float) -> float:
        t = self.transform
        old = _clamp(t.scale, ZOOM_MIN, ZOOM_MAX)
        ratio = new_scale / old
        t.x = ax - (ax - t.x) * ratio
        t.y = ay - (ay - t.y) * ratio
        t.scale = new_scale
        return ratio

    def zoom_at(self, ax: float, ay: float, factor: float) -> float:
        """Zoom by `factor` keeping (ax, ay) fixed; returns the effective ratio after clamping."""
        new_scale = _clamp(self.transform.scale * factor, ZOOM_MIN, ZOOM_MAX)
        return self._scale_about(ax, ay, new_scale)

    def set_scale(self, percent: Any) -> float:
        """Absolute scale from a percent slider, anchored at the canvas centre."""
        value = _as_float(percent, None)
        if value is None:
            return self.transform.scale
        new_scale = _clamp(value / 100.0, ZOOM_MIN, ZOOM_MAX)
        self._scale_about(self.canvas_width / 2.0, self.canvas_height / 2.0, new_scale)
        return self.transform.scale

    def set_rotation(self, degrees: Any) -> float:
        value = _as_float(degrees, None)
        if value is not None:
            self.transform.rotation = value * (math.pi / 180.0)
        return self.transform.rotation

    def center_image(self) -> None:
        if self.image_size is None:
            return
        w, h = self.image_size
        t = self.transform
        t.x = (self.canvas_width - w * t.scale) / 2.0
        t.y = (self.canvas_height - h * t.scale) / 2.0

    def reset(self) -> None:
        self.transform.scale = 1.0
        self.transform.rotation = 0.0
        self.center_image()

    def image_center(self) -> Tuple[float, float]:
        w, h = self.image_size or (0, 0)
        t = self.transform
        return t.x + (w * t.scale) / 2.0, t.y + (h * t.scale) / 2.0

    def image_to_screen(self, ix: float, iy: float) -> Tuple[float, float]:
        t = self.transform
        px = t.x + ix * t.scale
        py = t.y + iy * t.scale
        cx, cy = self.image_center()
        cos_r, sin_r = math.cos(t.rotation), math.sin(t.rotation)
        dx, dy = px - cx, py - cy
        return cx + dx * cos_r - dy * sin_r, cy + dx * sin_r + dy * cos_r

    def screen_to_image(self, sx: float, sy: float) -> Tuple[float, float]:
        t = self.transform
        cx, cy = self.image_center()
        cos_r, sin_r = math.cos(-t.rotation), math.sin(-t.rotation)
        dx, dy = sx - cx, sy - cy
        ux = cx + dx * cos_r - dy * sin_r
        uy = cy + dx * sin_r + dy * cos_r
        return (ux - t.x) / t.scale, (uy - t.y) / t.scale


# ----------------------------- Surfaces -----------------------------

class RenderSurface:
    """Something a MapView can draw on. Sizes are in pixels."""

    width: int = 0
    height: int = 0

    def resize(self, width: int, height: int) -> None:
        self.width = max(0, int(width))
        self.height = max(0, int(height))

    def clear(self) -> None:
        raise NotImplementedError

    def draw_image(self, image: Image.Image, origin: Tuple[int, int]) -> None:
        raise NotImplementedError

    def stroke_lines(self, segments: Sequence[Segment], color: str, line_width: int, opacity: float) -> None:
        raise NotImplementedError


class PilSurface(RenderSurface):
    """Off-screen RGBA surface; used for server previews."""

    def __init__(self, width: int, height: int, background: str = "#1e1e1e") -> None:
        self.background = background
        self.resize(width, height)
        self.image = self._blank()

    def _blank(self) -> Image.Image:
        try:
            rgb = ImageColor.getrgb(self.background)[:3]
        except ValueError:
            rgb = (0, 0, 0)
        return Image.new("RGBA", (max(1, self.width), max(1, self.height)), rgb + (255,))

    def clear(self) -> None:
        self.image = self._blank()

    def draw_image(self, image: Image.Image, origin: Tuple[int, int]) -> None:
        self.image.paste(image, origin, image)

    def stroke_lines(self, segments: Sequence[Segment], color: str, line_width: int, opacity: float) -> None:
        if not segments:
            return
        try:
            rgb = ImageColor.getrgb(color)[:3]
        except ValueError:
            rgb = (255, 255, 255)
        alpha = int(round(255 * _clamp(float(opacity), 0.0, 1.0)))
        overlay = Image.new("RGBA", self.image.size, (0, 0, 0, 0))
        draw = ImageDraw.Draw(overlay)
        for x0, y0, x1, y1 in segments:
            draw.line([(x0, y0), (x1, y1)], fill=rgb + (alpha,), width=max(1, int(line_width)))
        self.image = Image.alpha_composite(self.image, overlay)

    def to_png(self) -> bytes:
        buf = io.BytesIO()
        self.image.save(buf, format="PNG")
        return buf.getvalue()


# ----------------------------- Grid -----------------------------

class GridRenderer:
    """Grid line positions for a panned map.

    Lines follow the image translation only; scale and rotation are ignored,
    so a cell is always `size` screen pixels.
    """

    def __init__(self, config: Optional[GridConfig] = None) -> None:
        self.config = config or GridConfig()

    def line_positions(self, origin: float, offset: int, extent: float) -> List[float]:
        size = self.config.size
        if size <= 0 or extent <= 0:
            return []
        # Truncated remainder: keeps the sign of the pan.
        start = math.fmod(origin, size) + offset
        # Far offsets: snap onto the same lattice in [0, size).
        if start <= -size or start >= extent:
            start -= math.floor(start / size) * size
        lines: List[float] = []
        k = 0
        while start + k * size < extent:
            lines.append(start + k * size)
            k += 1
        k = 1
        while start - k * size > 0:
            lines.append(start - k * size)
            k += 1
        lines.sort()
        return lines

    def vertical_lines(self, transform: Transform, width: float) -> List[float]:
        return self.line_positions(transform.x, self.config.offset_x, width)

    def horizontal_lines(self, transform: Transform, height: float) -> List[float]:
        return self.line_positions(transform.y, self.config.offset_y, height)

    def segments(self, transform: Transform, width: float, height: float) -> List[Segment]:
        segs: List[Segment] = [(x, 0.0, x, float(height)) for x in self.vertical_lines(transform, width)]
        segs.extend((0.0, y, float(width), y) for y in self.horizontal_lines(transform, height))
        return segs

    def draw(self, surface: RenderSurface, transform: Transform) -> None:
        cfg = self.config
        if not cfg.visible:
            return
        segs = self.segments(transform, surface.width, surface.height)
        surface.stroke_lines(segs, cfg.color, cfg.line_width, cfg.opacity)


# ----------------------------- Input -----------------------------

class InputController:
    """Pointer/touch/wheel handling: idle <-> dragging."""

    IDLE = "idle"
    DRAGGING = "dragging"

    def __init__(
        self,
        model: TransformModel,
        on_change: Optional[Callable[[str], None]] = None,
        capabilities: Capabilities = EDITOR_CAPABILITIES,
    ) -> None:
        self.model = model
        self.capabilities = capabilities
        self._on_change = on_change
        self.state = self.IDLE
        self.last_pos: Tuple[float, float] = (0.0, 0.0)

    def _changed(self, what: str) -> None:
        if self._on_change is not None:
            self._on_change(what)

    def pointer_down(self, x: float, y: float) -> None:
        if not self.capabilities.draggable:
            return
        self.state = self.DRAGGING
        self.last_pos = (float(x), float(y))

    def pointer_move(self, x: float, y: float) -> bool:
        if self.state != self.DRAGGING:
            return False
        lx, ly = self.last_pos
        self.model.pan(float(x) - lx, float(y) - ly)
        self.last_pos = (float(x), float(y))
        self._changed("pan")
        return True

    def pointer_up(self) -> None:
        self.state = self.IDLE

    def pointer_leave(self) -> None:
        self.pointer_up()

    def wheel(self, x: float, y: float, delta_y: float) -> bool:
        """Zoom at the canvas-relative cursor. True means the default scroll must be suppressed."""
        if not self.capabilities.zoomable:
            return False
        factor = WHEEL_ZOOM_OUT_FACTOR if delta_y > 0 else WHEEL_ZOOM_IN_FACTOR
        self.model.zoom_at(float(x), float(y), factor)
        self._changed("scale")
        return True

    def touch_start(self, touches: Sequence[Tuple[float, float]]) -> None:
        if len(touches) == 1:
            self.pointer_down(*touches[0])

    def touch_move(self, touches: Sequence[Tuple[float, float]]) -> bool:
        if len(touches) != 1:
            return False
        return self.pointer_move(*touches[0])

    def touch_end(self) -> None:
        self.pointer_up()


# ----------------------------- View-model -----------------------------

Listener = Callable[["MapView", str], None]


class MapView:
    """One map on one surface: owns the transform, grid and distance state.

    UI controls call the setters and re-read state from listeners; they never
    hold map state themselves. Listeners get (view, what) where `what` is one
    of "pan", "scale", "rotation", "reset", "grid", "distance", "image",
    "snapshot".
    """

    def __init__(
        self,
        surface: Optional[RenderSurface] = None,
        capabilities: Capabilities = EDITOR_CAPABILITIES,
        snapshot: Union[MapSnapshot, Dict[str, Any], None] = None,
    ) -> None:
        self.capabilities = capabilities
        self.surface = surface
        size = (surface.width, surface.height) if surface is not None else (0, 0)
        self.model = TransformModel(canvas_size=size)
        self.grid_renderer = GridRenderer(GridConfig())
        self.distance = DistanceConfig()
        self.image_data: Optional[str] = None
        self.image: Optional[Image.Image] = None
        self.controller = InputController(self.model, on_change=self._on_input, capabilities=capabilities)
        self._listeners: List[Listener] = []
        self._reduced: Optional[Tuple[int, Image.Image]] = None  # (step, box-reduced image)
        if snapshot is not None:
            self.load_snapshot(snapshot)

    @property
    def grid(self) -> GridConfig:
        return self.grid_renderer.config

    @grid.setter
    def grid(self, config: GridConfig) -> None:
        self.grid_renderer.config = config

    @property
    def transform(self) -> Transform:
        return self.model.transform

    # ---------- listeners ----------

    def add_listener(self, callback: Listener) -> None:
        if callback not in self._listeners:
            self._listeners.append(callback)

    def remove_listener(self, callback: Listener) -> None:
        try:
            self._listeners.remove(callback)
        except ValueError:
            pass

    def _notify(self, what: str) -> None:
        for cb in list(self._listeners):
            try:
                cb(self, what)
            except Exception:
                logger.exception("Map view listener failed on %s", what)

    def _changed(self, what: str) -> None:
        self.render()
        self._notify(what)

    def _on_input(self, what: str) -> None:
        self._changed(what)

    # ---------- surface ----------

    def resize(self, width: int, height: int) -> None:
        self.model.set_canvas_size(width, height)
        if self.surface is not None:
            self.surface.resize(width, height)
        self.render()

    # ---------- image ----------

    def _set_image(self, data_url: Optional[str]) -> bool:
        image = decode_image_data(data_url)
        self.image = image
        self.image_data = data_url if image is not None else None
        self.model.set_image_size(image.size if image is not None else None)
        self._reduced = None
        return image is not None

    def load_image_data(self, data_url: Optional[str], recenter: bool = True) -> bool:
        ok = self._set_image(data_url)
        if ok and recenter:
            self.model.center_image()
        self._changed("image")
        return ok

    def load_image_file(self, path: Union[str, Path]) -> bool:
        try:
            data_url = encode_image_file(path)
        except Exception as exc:
            logger.warning("Could not read map image %s: %s", path, exc)
            return False
        return self.load_image_data(data_url)

    # ---------- snapshot ----------

    def snapshot(self) -> MapSnapshot:
        return MapSnapshot(
            image_data=self.image_data,
            transform=self.model.transform.copy(),
            grid=self.grid.copy(),
            distance=self.distance.copy(),
        )

    def load_snapshot(self, snapshot: Union[MapSnapshot, Dict[str, Any]]) -> None:
        """Replace state from a persisted snapshot; the saved position is kept as-is."""
        if isinstance(snapshot, MapSnapshot):
            snap = snapshot
        else:
            snap = MapSnapshot.from_dict(snapshot, base=self.snapshot())
        self.model.transform = snap.transform.copy()
        self.grid = snap.grid.copy()
        self.distance = snap.distance.copy()
        if snap.image_data != self.image_data:
            self._set_image(snap.image_data)
        self._changed("snapshot")

    # ---------- transform controls ----------

    @property
    def scale_percent(self) -> int:
        return self.model.scale_percent

    @property
    def rotation_degrees(self) -> float:
        return self.model.rotation_degrees

    def set_scale_percent(self, value: Any) -> None:
        self.model.set_scale(value)
        self._changed("scale")

    def set_rotation_degrees(self, value: Any) -> None:
        self.model.set_rotation(value)
        self._changed("rotation")

    def reset_image(self) -> None:
        self.model.reset()
        self._changed("reset")

    # ---------- grid controls ----------

    def set_grid_size(self, value: Any) -> None:
        size = _as_int(value, None)
        if size is not None and size > 0:
            self.grid.size = size
        self._changed("grid")

    def set_grid_opacity(self, percent: Any) -> None:
        value = _as_float(percent, None)
        if value is not None:
            self.grid.opacity = _clamp(value / 100.0, 0.0, 1.0)
        self._changed("grid")

    def set_grid_color(self, value: Any) -> None:
        if isinstance(value, str) and value.strip() and _is_color(value.strip()):
            self.grid.color = value.strip()
        self._changed("grid")

    def set_grid_line_width(self, value: Any) -> None:
        width = _as_int(value, None)
        if width is not None and width > 0:
            self.grid.line_width = width
        self._changed("grid")

    def set_grid_visible(self, visible: Any) -> None:
        self.grid.visible = _as_bool(visible, self.grid.visible)
        self._changed("grid")

    def set_grid_offset_x(self, value: Any) -> None:
        self.grid.offset_x = _as_int(value, self.grid.offset_x)
        self._changed("grid")

    def set_grid_offset_y(self, value: Any) -> None:
        self.grid.offset_y = _as_int(value, self.grid.offset_y)
        self._changed("grid")

    # ---------- distance controls ----------

    def set_distance_square_size(self, value: Any) -> None:
        square = _as_float(value, None)
        if square is not None and square > 0:
            self.distance.square_size = square
        self._changed("distance")

    def set_distance_unit(self, unit: Any) -> None:
        text = str(unit or "").strip().lower()
        if text in DISTANCE_UNITS:
            self.distance.unit = text
        self._changed("distance")

    # ---------- render ----------

    def _sampling_source(self) -> Tuple[Image.Image, int]:
        step = sampling_step(self.model.transform.scale)
        if step == 1:
            return self.image, 1
        if self._reduced is None or self._reduced[0] != step:
            self._reduced = (step, self.image.reduce(step))
        return self._reduced[1], step

    def _viewport_image(self) -> Optional[Image.Image]:
        source, step = self._sampling_source()
        size = (self.surface.width, self.surface.height)
        return viewport_image(self.image, self.model.transform, size, source=source, step=step)

    def render(self) -> None:
        surface = self.surface
        if surface is None:
            return
        surface.clear()
        if self.image is not None:
            tile = self._viewport_image()
            if tile is not None:
                surface.draw_image(tile, (0, 0))
        if self.grid.visible:
            self.grid_renderer.draw(surface, self.model.transform)
