"""Layer geometry: scale/crop/pad plans, corner masks and ancestor clips.

Everything here is pure arithmetic on layer descriptors and source
dimensions. The toolchain turns the resulting plans into filters.
"""

from typing import Optional, Tuple
from pydantic import BaseModel, ConfigDict

from ..core.types import ScaleMode
from .models import AnimatedLayer, px


class ScalePlan(BaseModel):
    """Scale to ``scaled``, crop a window out of it, pad into the target box."""

    model_config = ConfigDict(frozen=True)

    scaled_w: int
    scaled_h: int
    crop_x: int
    crop_y: int
    crop_w: int
    crop_h: int
    pad_x: int
    pad_y: int
    target_w: int
    target_h: int

    @property
    def needs_crop(self) -> bool:
        return self.crop_w < self.scaled_w or self.crop_h < self.scaled_h

    @property
    def needs_pad(self) -> bool:
        return self.crop_w < self.target_w or self.crop_h < self.target_h


class ClipWindow(BaseModel):
    """Sub-rectangle of the target box that survives an ancestor clip."""

    model_config = ConfigDict(frozen=True)

    x: int
    y: int
    width: int
    height: int


class LayerGeometry(BaseModel):
    """Fully resolved placement of one animated layer on the canvas."""

    model_config = ConfigDict(frozen=True)

    source_w: int
    source_h: int
    plan: ScalePlan
    corner_radius: float = 0.0
    clip: Optional[ClipWindow] = None
    clip_radius: float = 0.0
    visible: bool = True

    # Final placement after the clip
    x: int
    y: int
    width: int
    height: int

    @property
    def is_identity(self) -> bool:
        """True when the source already is the final layer raster."""
        p = self.plan
        return (
            p.scaled_w == self.source_w
            and p.scaled_h == self.source_h
            and not p.needs_crop
            and not p.needs_pad
            and self.corner_radius <= 0
            and self.clip is None
        )

    def normalized_size(self) -> Tuple[int, int]:
        """
        Size a source should be pre-scaled to before this geometry applies.

        Sources are only ever shrunk, aspect preserved, down to what the scale
        step needs; upscaling is left to the scale step itself.
        """
        factor = max(self.plan.scaled_w / self.source_w, self.plan.scaled_h / self.source_h)
        if factor >= 1:
            return self.source_w, self.source_h
        w = max(1, px(self.source_w * factor))
        h = max(1, px(self.source_h * factor))
        return w, h


def clamp_radius(radius: float, width: int, height: int) -> float:
    """Corner radius limited to half the shorter side."""
    if radius <= 0:
        return 0.0
    return min(float(radius), width / 2.0, height / 2.0)


def _clamp(value: int, low: int, high: int) -> int:
    return max(low, min(value, high))


def _finish(scaled_w: int, scaled_h: int, crop_x: int, crop_y: int, tw: int, th: int) -> ScalePlan:
    """Clamp the crop window into the scaled raster and centre any shortfall."""
    crop_w = min(tw, scaled_w)
    crop_h = min(th, scaled_h)
    crop_x = _clamp(crop_x, 0, max(0, scaled_w - tw))
    crop_y = _clamp(crop_y, 0, max(0, scaled_h - th))
    return ScalePlan(
        scaled_w=scaled_w,
        scaled_h=scaled_h,
        crop_x=crop_x,
        crop_y=crop_y,
        crop_w=crop_w,
        crop_h=crop_h,
        pad_x=(tw - crop_w) // 2,
        pad_y=(th - crop_h) // 2,
        target_w=tw,
        target_h=th,
    )


def plan_scale(
    mode: ScaleMode,
    transform: Optional[tuple],
    source_w: int,
    source_h: int,
    target_w: int,
    target_h: int,
) -> ScalePlan:
    """
    Compute the scale/crop/pad plan for one layer.

    Args:
        mode: FILL, FIT or CROP
        transform: (a, d, tx, ty) from the layer's image transform, or None
        source_w: Source width in pixels
        source_h: Source height in pixels
        target_w: Layer box width in pixels
        target_h: Layer box height in pixels

    Returns:
        ScalePlan
    """
    tw, th = target_w, target_h

    if mode == ScaleMode.FIT:
        scale = min(tw / source_w, th / source_h)
        scaled_w = max(1, min(tw, px(source_w * scale)))
        scaled_h = max(1, min(th, px(source_h * scale)))
        return _finish(scaled_w, scaled_h, 0, 0, tw, th)

    if mode == ScaleMode.CROP:
        if transform is None:
            # Natural size, centred
            return _finish(
                source_w,
                source_h,
                (source_w - tw) // 2,
                (source_h - th) // 2,
                tw,
                th,
            )
        a, d, tx, ty = transform
        scaled_w = max(1, px(tw / a))
        scaled_h = max(1, px(th / d))
        return _finish(scaled_w, scaled_h, px(tx * scaled_w), px(ty * scaled_h), tw, th)

    # FILL: cover the box
    scale = max(tw / source_w, th / source_h)
    if transform is None:
        scaled_w = max(1, px(source_w * scale))
        scaled_h = max(1, px(source_h * scale))
        return _finish(
            scaled_w,
            scaled_h,
            px((scaled_w - tw) / 2),
            px((scaled_h - th) / 2),
            tw,
            th,
        )
    a, d, tx, ty = transform
    scaled_w = max(1, px(source_w * scale / a))
    scaled_h = max(1, px(source_h * scale / d))
    return _finish(scaled_w, scaled_h, px(tx * scaled_w), px(ty * scaled_h), tw, th)


def intersect(a: Tuple[int, int, int, int], b: Tuple[int, int, int, int]):
    """Intersection of two (x, y, w, h) boxes, or None when empty."""
    x1 = max(a[0], b[0])
    y1 = max(a[1], b[1])
    x2 = min(a[0] + a[2], b[0] + b[2])
    y2 = min(a[1] + a[3], b[1] + b[3])
    if x2 <= x1 or y2 <= y1:
        return None
    return x1, y1, x2 - x1, y2 - y1


def resolve_geometry(
    layer: AnimatedLayer, source_w: int, source_h: int
) -> LayerGeometry:
    """
    Resolve an animated layer's final placement.

    Args:
        layer: Layer descriptor
        source_w: Source width in pixels
        source_h: Source height in pixels

    Returns:
        LayerGeometry; ``visible`` is False when an ancestor clip removes the
        layer entirely
    """
    source_w = max(1, int(source_w))
    source_h = max(1, int(source_h))
    x, y, tw, th = layer.bounds.box()
    tw = max(1, tw)
    th = max(1, th)

    fill = layer.image_fill_info
    plan = plan_scale(
        fill.scale_mode, fill.transform_factors(), source_w, source_h, tw, th
    )
    radius = clamp_radius(layer.corner_radius, tw, th)

    base = dict(source_w=source_w, source_h=source_h, plan=plan, corner_radius=radius)

    if layer.clip_bounds is None:
        return LayerGeometry(x=x, y=y, width=tw, height=th, **base)

    hit = intersect((x, y, tw, th), layer.clip_bounds.box())
    if hit is None:
        return LayerGeometry(x=x, y=y, width=tw, height=th, visible=False, **base)

    ix, iy, iw, ih = hit
    clip = None
    if (ix, iy, iw, ih) != (x, y, tw, th):
        clip = ClipWindow(x=ix - x, y=iy - y, width=iw, height=ih)
    clip_radius = clamp_radius(layer.clip_corner_radius, iw, ih)
    if clip is None and clip_radius > 0:
        clip = ClipWindow(x=0, y=0, width=iw, height=ih)
    return LayerGeometry(
        x=ix,
        y=iy,
        width=iw,
        height=ih,
        clip=clip,
        clip_radius=clip_radius,
        **base,
    )