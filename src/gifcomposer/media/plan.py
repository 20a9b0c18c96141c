"""Toolchain-neutral description of a multi-layer composition."""

from typing import List, Optional, Tuple
from pydantic import BaseModel

from ..core.types import LayerKind
from .geometry import LayerGeometry
from .models import AnimatedLayer
from .sources import ResolvedSource
from .timing import SourceTiming, TimelinePlan


class PreparedLayer(BaseModel):
    """An animated layer after resolution, normalization and geometry."""

    layer: AnimatedLayer
    source: ResolvedSource
    geometry: LayerGeometry
    normalized: str
    timing: SourceTiming

    @property
    def z_index(self) -> int:
        return self.layer.z_index


class RasterLayer(BaseModel):
    """A static or annotation raster written to a canvas-sized PNG."""

    kind: LayerKind
    z_index: int
    path: str
    layer_id: Optional[str] = None
    label: str = ""


class PlanEntry(BaseModel):
    """One layer drawn between the merged base and top rasters."""

    kind: LayerKind
    z_index: int
    label: str
    # Normalized animation for animated layers, canvas-sized PNG otherwise
    path: str
    # Untrimmed frame interval in which the layer is drawn
    window: Tuple[int, int]
    geometry: Optional[LayerGeometry] = None
    timing: Optional[SourceTiming] = None

    @property
    def animated(self) -> bool:
        return self.kind == LayerKind.ANIMATED

    @property
    def position(self) -> Tuple[int, int]:
        if self.geometry is None:
            return 0, 0
        return self.geometry.x, self.geometry.y

    def visible_at(self, frame: int) -> bool:
        return self.window[0] <= frame <= self.window[1]


class CompositionPlan(BaseModel):
    """Everything a synthesis strategy needs to render the output."""

    canvas_w: int
    canvas_h: int
    timeline: TimelinePlan
    # Background, bottom layer and ungated statics below every animated layer
    base: str
    entries: List[PlanEntry]
    # Ungated layers above every animated layer plus the legacy top raster
    top: Optional[str] = None

    @property
    def pixels(self) -> int:
        return self.canvas_w * self.canvas_h

    def layers_at(self, frame: int) -> List[PlanEntry]:
        """Entries drawn on untrimmed frame ``frame``, bottom to top."""
        return [e for e in self.entries if e.visible_at(frame)]
