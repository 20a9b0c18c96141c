"""Single animated layer without timeline trims."""

from typing import List, Optional, Sequence

from .context import JobContext
from .encoders import EncoderProfile
from .models import BackgroundColor
from .plan import PreparedLayer, RasterLayer
from .timing import reconcile
from .toolchain import Toolchain


def applies(animated_count: int, has_timeline_edits: bool) -> bool:
    """Whether a request qualifies for the fast path."""
    return animated_count == 1 and not has_timeline_edits


def split_rasters(z_index: int, rasters: Sequence[RasterLayer]):
    """Rasters below and above an animated layer's z-index, each bottom to top."""
    ordered = sorted(rasters, key=lambda r: r.z_index)
    below = [r for r in ordered if r.z_index < z_index]
    above = [r for r in ordered if r.z_index > z_index]
    return below, above


class FastPath:
    """
    Whole-animation pipeline for the common single-layer case.

    The animation is transformed once as a whole, everything beneath it is
    flattened into one raster and everything above it into another, and a
    single final pass composites and encodes.
    """

    def __init__(self, toolchain: Toolchain):
        self.toolchain = toolchain

    def render(
        self,
        job: JobContext,
        prepared: PreparedLayer,
        rasters: Sequence[RasterLayer],
        canvas: tuple,
        out: str,
        encoder: EncoderProfile,
        background: Optional[BackgroundColor] = None,
        bottom: Optional[str] = None,
        legacy_top: Optional[str] = None,
    ) -> int:
        """
        Render the output animation.

        Args:
            job: Job context
            prepared: The single animated layer
            rasters: Static and annotation rasters
            canvas: (width, height)
            out: Output path
            encoder: Encoder profile
            background: Optional background colour
            bottom: Optional bottom raster path
            legacy_top: Optional merged top raster path

        Returns:
            Number of frames written
        """
        width, height = canvas
        timeline = reconcile([prepared.timing])
        geometry = prepared.geometry

        animation = None
        if geometry.visible:
            job.progress(30, "Applying layer geometry")
            animation = self.toolchain.transform(
                job, prepared.normalized, geometry, job.path("layer.mov")
            )
        else:
            job.logger.info(f"Layer {prepared.layer.label} is clipped away entirely")

        below, above = split_rasters(prepared.z_index, rasters)
        below_paths: List[str] = ([bottom] if bottom else []) + [r.path for r in below]
        above_paths: List[str] = [r.path for r in above]
        if legacy_top:
            above_paths.append(legacy_top)

        job.progress(50, "Merging static layers")
        base = self.toolchain.merge_rasters(
            job, job.path("below.png"), width, height, below_paths, background
        )
        top = None
        if above_paths:
            top = self.toolchain.merge_rasters(
                job, job.path("above.png"), width, height, above_paths
            )

        job.progress(70, "Encoding")
        self.toolchain.overlay_animation(
            job,
            base,
            animation,
            (geometry.x, geometry.y),
            top,
            timeline.output_frames,
            timeline.delay,
            out,
            encoder,
        )
        job.logger.info(
            f"Fast path: {timeline.output_frames} frames @ {timeline.delay}/100s, "
            f"{len(below)} below / {len(above)} above"
        )
        return timeline.output_frames
