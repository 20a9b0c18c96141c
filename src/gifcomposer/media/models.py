"""Pydantic models for composition requests and results."""

import base64
import json
import math
from typing import Dict, List, Optional, Any
from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel
from ..core.types import ScaleMode, DitherProfile


def px(value: float) -> int:
    """Round a layout coordinate to whole pixels (half away from zero)."""
    return int(math.floor(value + 0.5)) if value >= 0 else -int(math.floor(-value + 0.5))


def _coerce_bytes(value: Any) -> Any:
    """Accept raw bytes, a list of byte values, an index->byte mapping or base64."""
    if value is None or isinstance(value, (bytes, bytearray)):
        return value
    if isinstance(value, list):
        return bytes(value)
    if isinstance(value, dict):
        # Uint8Array serialised through JSON.stringify
        return bytes(value[k] for k in sorted(value, key=int))
    if isinstance(value, str):
        return base64.b64decode(value)
    return value


class _PayloadModel(BaseModel):
    """Base model accepting both snake_case and the plugin's camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Rect(_PayloadModel):
    """Axis-aligned rectangle in canvas pixels."""

    x: float = 0.0
    y: float = 0.0
    width: float
    height: float

    def box(self) -> tuple:
        """Return (x, y, w, h) rounded to whole pixels."""
        return px(self.x), px(self.y), px(self.width), px(self.height)


class ImageFillInfo(_PayloadModel):
    """How the host scaled the media inside its layer box."""

    scale_mode: ScaleMode = ScaleMode.FILL
    image_transform: Optional[List[List[float]]] = None

    @field_validator("scale_mode", mode="before")
    @classmethod
    def _upper_scale_mode(cls, v):
        """Accept lowercase or unknown scale modes (unknown falls back to FILL)."""
        if isinstance(v, str):
            v = v.upper()
            if v not in ScaleMode.__members__:
                return ScaleMode.FILL
        return v

    @field_validator("image_transform", mode="before")
    @classmethod
    def _parse_transform(cls, v):
        """Parse a 2x3 affine transform given as nested lists or a JSON string."""
        if isinstance(v, str):
            try:
                v = json.loads(v)
            except ValueError:
                return None
        if not isinstance(v, list) or len(v) < 2:
            return None
        try:
            rows = [[float(c) for c in row[:3]] for row in v[:2]]
        except (TypeError, ValueError):
            return None
        if any(len(row) < 3 for row in rows):
            return None
        return rows

    def transform_factors(self) -> Optional[tuple]:
        """Return (a, d, tx, ty) from the transform, treating zero scales as 1."""
        if not self.image_transform:
            return None
        t = self.image_transform
        a = t[0][0] or 1.0
        d = t[1][1] or 1.0
        return a, d, t[0][2] or 0.0, t[1][2] or 0.0


class AnimatedLayer(_PayloadModel):
    """An animated source (GIF or video) placed on the canvas."""

    cache_id: Optional[str] = None
    filename: Optional[str] = None
    drive_file_id: Optional[str] = None
    oss_file_id: Optional[str] = None

    bounds: Rect
    corner_radius: float = 0.0
    clip_bounds: Optional[Rect] = None
    clip_corner_radius: float = 0.0
    image_fill_info: ImageFillInfo = Field(default_factory=ImageFillInfo)
    z_index: int = 0
    layer_id: Optional[str] = None

    @property
    def foreign_ids(self) -> List[str]:
        """Non-empty foreign identifiers from the sync services."""
        return [i for i in (self.drive_file_id, self.oss_file_id) if i]

    @property
    def label(self) -> str:
        """Human readable name for logs and errors."""
        return self.filename or self.cache_id or self.layer_id or "<unnamed>"


class StaticLayer(_PayloadModel):
    """A raster pre-rendered at canvas resolution with its position baked in."""

    data: bytes = Field(validation_alias=AliasChoices("data", "bytes"))
    z_index: int = Field(
        default=0, validation_alias=AliasChoices("z_index", "zIndex", "index")
    )
    name: Optional[str] = None
    layer_id: Optional[str] = None

    @field_validator("data", mode="before")
    @classmethod
    def _coerce_data(cls, v):
        return _coerce_bytes(v)


class AnnotationLayer(StaticLayer):
    """Static raster drawn above the animated layers, still timeline-gateable."""

    pass


class BackgroundColor(_PayloadModel):
    """Solid canvas background; only drawn when alpha is positive."""

    r: int = Field(ge=0, le=255)
    g: int = Field(ge=0, le=255)
    b: int = Field(ge=0, le=255)
    a: float = Field(default=1.0, ge=0.0, le=1.0)

    @property
    def visible(self) -> bool:
        return self.a > 0

    def ffmpeg_color(self) -> str:
        """Colour in ffmpeg's 0xRRGGBB@alpha syntax."""
        return f"0x{self.r:02X}{self.g:02X}{self.b:02X}@{self.a:g}"


class TimelineRange(_PayloadModel):
    """Visibility window as percentages of the output duration."""

    start: float = 0.0
    end: float = 100.0

    @model_validator(mode="after")
    def _clamp(self) -> "TimelineRange":
        """Clamp both ends into [0, 100] and keep start <= end."""
        start = min(100.0, max(0.0, self.start))
        end = min(100.0, max(0.0, self.end))
        if start > end:
            start, end = end, start
        self.start = start
        self.end = end
        return self

    @property
    def is_default(self) -> bool:
        return self.start <= 0.0 and self.end >= 100.0


class CompositionRequest(_PayloadModel):
    """Everything needed to produce one annotated animation."""

    frame_name: str = "Untitled"
    canvas: Rect = Field(validation_alias=AliasChoices("canvas", "frameBounds"))
    bottom_layer: Optional[bytes] = Field(
        default=None,
        validation_alias=AliasChoices("bottom_layer", "bottomLayer", "bottomLayerBytes"),
    )
    static_layers: List[StaticLayer] = Field(default_factory=list)
    annotation_layers: List[AnnotationLayer] = Field(default_factory=list)
    annotation: Optional[bytes] = Field(
        default=None,
        validation_alias=AliasChoices("annotation", "annotationBytes"),
    )
    background: Optional[BackgroundColor] = Field(
        default=None,
        validation_alias=AliasChoices("background", "frameBackground"),
    )
    animated_layers: List[AnimatedLayer] = Field(
        validation_alias=AliasChoices("animated_layers", "animatedLayers", "gifInfos"),
    )
    timeline: Dict[str, TimelineRange] = Field(
        default_factory=dict,
        validation_alias=AliasChoices("timeline", "timelineData"),
    )
    dither: DitherProfile = Field(
        default=DitherProfile.SMOOTH_GRADIENT,
        validation_alias=AliasChoices("dither", "gifAlgorithm"),
    )

    @field_validator("bottom_layer", "annotation", mode="before")
    @classmethod
    def _coerce_rasters(cls, v):
        return _coerce_bytes(v) or None

    @field_validator("dither", mode="before")
    @classmethod
    def _default_dither(cls, v):
        return v or DitherProfile.SMOOTH_GRADIENT

    @model_validator(mode="after")
    def _check_layers(self) -> "CompositionRequest":
        """Require at least one animated layer and unique z-indices."""
        if not self.animated_layers:
            raise ValueError("at least one animated layer is required")
        z_values = [layer.z_index for layer in self.animated_layers]
        z_values += [layer.z_index for layer in self.static_layers]
        z_values += [layer.z_index for layer in self.annotation_layers]
        if len(z_values) != len(set(z_values)):
            raise ValueError("z_index values must be unique within a request")
        return self

    @property
    def canvas_size(self) -> tuple:
        """Canvas (width, height) in whole pixels."""
        return px(self.canvas.width), px(self.canvas.height)

    @property
    def has_timeline_edits(self) -> bool:
        """Whether any layer's visibility window is narrower than the full range."""
        return any(not r.is_default for r in self.timeline.values())

    def range_for(self, layer_id: Optional[str]) -> Optional[TimelineRange]:
        """Timeline range for a layer, or None when it is always visible."""
        if layer_id is None:
            return None
        return self.timeline.get(layer_id)

    @property
    def legacy_top(self) -> Optional[bytes]:
        """The merged top raster, only honoured without discrete annotation layers."""
        if self.annotation_layers:
            return None
        return self.annotation


class CompositionResult(BaseModel):
    """Outcome of a composition request."""

    path: str
    filename: str
    size: int
    skipped: bool = False
