"""Multi-layer frame synthesis with a filter-graph strategy and a frame fallback."""

import os
import threading
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from typing import Dict, List, Optional, Sequence, Tuple

from ..core.errors import ComposerError, CompositionCancelled, OperationTimeout
from ..core.types import LayerKind
from .context import JobContext
from .encoders import EncoderProfile
from .models import CompositionRequest
from .plan import CompositionPlan, PlanEntry, PreparedLayer, RasterLayer
from .timing import TimelinePlan
from .toolchain import Toolchain, frame_name


def _stack(
    request: CompositionRequest,
    prepared: Sequence[PreparedLayer],
    rasters: Sequence[RasterLayer],
    timeline: TimelinePlan,
) -> List[PlanEntry]:
    """Every drawable layer as a plan entry, bottom to top."""
    entries = []
    for p in prepared:
        if not p.geometry.visible:
            continue
        window = timeline.visible_frames(request.range_for(p.layer.layer_id))
        if window is None:
            continue
        entries.append(
            PlanEntry(
                kind=LayerKind.ANIMATED,
                z_index=p.z_index,
                label=p.layer.label,
                path=p.normalized,
                window=window,
                geometry=p.geometry,
                timing=p.timing,
            )
        )
    for r in rasters:
        window = timeline.visible_frames(request.range_for(r.layer_id))
        if window is None:
            continue
        entries.append(
            PlanEntry(
                kind=r.kind,
                z_index=r.z_index,
                label=r.label,
                path=r.path,
                window=window,
            )
        )
    entries.sort(key=lambda e: e.z_index)
    return entries


def build_plan(
    job: JobContext,
    toolchain: Toolchain,
    request: CompositionRequest,
    prepared: Sequence[PreparedLayer],
    rasters: Sequence[RasterLayer],
    timeline: TimelinePlan,
    bottom: Optional[str] = None,
    legacy_top: Optional[str] = None,
) -> CompositionPlan:
    """
    Group layers into a merged base, ordered middle entries and a merged top.

    Static layers that are always visible and sit below every animated or
    gated layer collapse into the base raster together with the background
    and bottom layer; the same applies on top. Everything in between stays a
    separate entry with its own visible frame window.

    Args:
        job: Job context
        toolchain: Toolchain used to merge rasters
        request: The request (for canvas, background and timeline ranges)
        prepared: Prepared animated layers
        rasters: Static and annotation rasters
        timeline: Reconciled timeline
        bottom: Optional bottom raster path
        legacy_top: Optional merged top raster path

    Returns:
        CompositionPlan
    """
    width, height = request.canvas_size
    full = (0, timeline.total_frames - 1)
    stack = _stack(request, prepared, rasters, timeline)

    lo = 0
    while lo < len(stack) and not stack[lo].animated and stack[lo].window == full:
        lo += 1
    hi = len(stack)
    while hi > lo and not stack[hi - 1].animated and stack[hi - 1].window == full:
        hi -= 1

    base_paths = ([bottom] if bottom else []) + [e.path for e in stack[:lo]]
    top_paths = [e.path for e in stack[hi:]]
    if legacy_top:
        top_paths.append(legacy_top)

    base = toolchain.merge_rasters(
        job, job.path("base.png"), width, height, base_paths, request.background
    )
    top = None
    if top_paths:
        top = toolchain.merge_rasters(job, job.path("top.png"), width, height, top_paths)

    job.logger.info(
        f"Plan: {lo} merged below, {hi - lo} separate, {len(stack) - hi} merged above; "
        f"{timeline.output_frames}/{timeline.total_frames} frames @ {timeline.delay}/100s"
    )
    return CompositionPlan(
        canvas_w=width,
        canvas_h=height,
        timeline=timeline,
        base=base,
        entries=stack[lo:hi],
        top=top,
    )


class SynthesisStrategy(ABC):
    """One way of turning a CompositionPlan into an encoded animation."""

    name = "strategy"

    def __init__(self, toolchain: Toolchain):
        self.toolchain = toolchain

    @abstractmethod
    def render(
        self, job: JobContext, plan: CompositionPlan, out: str, encoder: EncoderProfile
    ) -> None:
        """Render the plan to ``out``."""


class GraphStrategy(SynthesisStrategy):
    """Single declarative filter graph evaluated by the toolchain."""

    name = "graph"

    def available(self, job: JobContext) -> bool:
        return self.toolchain.supports_filter_graph(job)

    def render(self, job, plan, out, encoder) -> None:
        job.progress(40, "Compositing frames")
        self.toolchain.render_graph(job, plan, out, encoder)
        job.progress(80, "Frames composited")


class FrameMaterializationStrategy(SynthesisStrategy):
    """Write every output frame to disk, then encode the directory."""

    name = "frames"

    def __init__(self, toolchain: Toolchain, batch_size: int = 16, max_parallel: int = 4):
        super().__init__(toolchain)
        self.batch_size = max(1, batch_size)
        self.max_parallel = max(1, max_parallel)

    def _extract(self, job: JobContext, plan: CompositionPlan) -> Dict[int, Tuple[str, int]]:
        """Positioned frames of every animated entry: index -> (dir, count)."""
        animated = [(i, e) for i, e in enumerate(plan.entries) if e.animated]
        total = len(animated)
        done = [0]
        lock = threading.Lock()

        def work(pair):
            i, entry = pair
            out_dir = job.subdir(f"layer_{i}_frames")
            count = self.toolchain.extract_frames(job, entry.path, entry.geometry, out_dir)
            with lock:
                done[0] += 1
                job.progress(20 + done[0] * 10 // total, f"Extracted {entry.label}")
            return i, (out_dir, max(1, count))

        with ThreadPoolExecutor(max_workers=self.max_parallel) as pool:
            return dict(pool.map(work, animated))

    def frame_layers(
        self,
        plan: CompositionPlan,
        extracted: Dict[int, Tuple[str, int]],
        frame: int,
    ) -> List[Tuple[str, int, int]]:
        """Files to stack for untrimmed frame ``frame``, bottom to top."""
        layers = [(plan.base, 0, 0)]
        for i, entry in enumerate(plan.entries):
            if not entry.visible_at(frame):
                continue
            if entry.animated:
                frames_dir, count = extracted[i]
                index = min(plan.timeline.source_frame_index(entry.timing, frame), count - 1)
                x, y = entry.position
                layers.append((os.path.join(frames_dir, frame_name(index)), x, y))
            else:
                layers.append((entry.path, 0, 0))
        if plan.top:
            layers.append((plan.top, 0, 0))
        return layers

    def render(self, job, plan, out, encoder) -> None:
        extracted = self._extract(job, plan)
        frames_dir = job.subdir("frames")
        tl = plan.timeline
        total = tl.output_frames

        with ThreadPoolExecutor(max_workers=self.batch_size) as pool:
            for start in range(0, total, self.batch_size):
                job.check_cancelled()
                batch = range(start, min(total, start + self.batch_size))
                futures = [
                    pool.submit(
                        self.toolchain.composite_frame,
                        job,
                        self.frame_layers(plan, extracted, tl.untrimmed(i)),
                        os.path.join(frames_dir, frame_name(i)),
                    )
                    for i in batch
                ]
                for future in futures:
                    future.result()
                done = batch.stop
                job.progress(30 + done * 50 // total, f"Composited {done}/{total} frames")

        job.progress(85, "Encoding")
        self.toolchain.encode_frames(job, frames_dir, total, tl.delay, out, encoder)


class Synthesizer:
    """Runs the preferred strategy and demotes to the fallback on failure."""

    def __init__(self, toolchain: Toolchain, frame_batch_size: int = 16, max_parallel: int = 4):
        self.toolchain = toolchain
        self.graph = GraphStrategy(toolchain)
        self.fallback = FrameMaterializationStrategy(toolchain, frame_batch_size, max_parallel)

    def render(
        self, job: JobContext, plan: CompositionPlan, out: str, encoder: EncoderProfile
    ) -> str:
        """
        Render a plan, trying the filter graph first.

        Args:
            job: Job context
            plan: Composition plan
            out: Output path
            encoder: Encoder profile

        Returns:
            Name of the strategy that produced the output

        Raises:
            CompositionCancelled: The caller cancelled
            OperationTimeout: The request deadline ran out
        """
        if self.graph.available(job):
            try:
                self.graph.render(job, plan, out, encoder)
                return self.graph.name
            except CompositionCancelled:
                raise
            except (ComposerError, OSError) as e:
                remaining = job.remaining()
                if isinstance(e, OperationTimeout) and remaining is not None and remaining <= 0:
                    raise
                job.logger.warning(f"Filter graph failed, falling back to frame rendering: {e}")
                if os.path.exists(out):
                    os.remove(out)

        self.fallback.render(job, plan, out, encoder)
        return self.fallback.name
