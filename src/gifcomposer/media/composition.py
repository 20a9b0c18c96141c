"""Composition engine: one request in, one annotated animation out."""

import os
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import List, Optional, Tuple, Union
from pydantic import ValidationError

from ..core.config import ComposerConfig
from ..core.errors import CorruptSource, InvalidRequest
from ..core.types import CancelCb, LayerKind, ProgressCb
from . import fast_path
from .arbiter import OutputArbiter, ReservationArena, request_fingerprint
from .cache import ConversionCache, discard_corrupt
from .context import JobContext, MediaContext
from .encoders import EncoderProfile
from .fast_path import FastPath
from .geometry import resolve_geometry
from .models import CompositionRequest, CompositionResult
from .plan import PreparedLayer, RasterLayer
from .sources import ResolvedSource, SourceResolver, SourceStore
from .synthesizer import Synthesizer, build_plan
from .timing import SourceTiming, reconcile
from .toolchain import FFmpegToolchain, Toolchain


class Composer:
    """
    Engine that turns composition requests into animated GIFs.

    One Composer is meant to live as long as the host process: it owns the
    output reservation arena shared by all concurrently running requests.
    """

    def __init__(
        self,
        config: Optional[ComposerConfig] = None,
        ctx: Optional[MediaContext] = None,
        toolchain: Optional[Toolchain] = None,
        store: Optional[SourceStore] = None,
        arena: Optional[ReservationArena] = None,
    ):
        """
        Initialize the engine.

        Args:
            config: Engine configuration (defaults to ComposerConfig())
            ctx: Media context; created and verified from the config when omitted
            toolchain: Transcoding backend (defaults to FFmpegToolchain)
            store: Source store (defaults to the configured store directory)
            arena: Output reservation arena (defaults to a fresh one)

        Raises:
            ToolchainUnavailable: ffmpeg or ffprobe cannot be run
        """
        self.config = config or ComposerConfig()
        self.ctx = ctx or MediaContext(
            ffmpeg=self.config.ffmpeg,
            ffprobe=self.config.ffprobe,
            gifsicle=self.config.gifsicle,
        )
        self.logger = self.ctx.logger
        self.toolchain = toolchain or FFmpegToolchain(self.ctx)
        self.store = store or SourceStore(self.config, self.logger)
        self.resolver = SourceResolver(self.store, self.config, self.logger)
        self.cache = ConversionCache(self.config.cache_dir, self.toolchain, self.logger)
        self.arbiter = OutputArbiter(
            self.config.output_dir,
            arena or ReservationArena(self.config.output_prefix, self.config.output_ext),
            self.logger,
        )
        self.fast_path = FastPath(self.toolchain)
        self.synthesizer = Synthesizer(
            self.toolchain, self.config.frame_batch_size, self.config.max_parallel
        )

    def compose(
        self,
        request: Union[CompositionRequest, dict],
        should_cancel: CancelCb = None,
        on_progress: ProgressCb = None,
    ) -> CompositionResult:
        """
        Produce the output animation for a request.

        Args:
            request: CompositionRequest or its plugin payload
            should_cancel: Polled before every external invocation
            on_progress: Receives (percent, message); never goes backwards

        Returns:
            CompositionResult; ``skipped`` is True when an identical earlier
            output was reused

        Raises:
            InvalidRequest: The payload does not validate
            SourceUnresolved: A layer's source cannot be found
            CorruptSource: A source or cached intermediate is damaged (deleted)
            OperationTimeout: An invocation or the whole request ran out of time
            CompositionCancelled: The caller cancelled; not a user-facing error
        """
        if not isinstance(request, CompositionRequest):
            try:
                request = CompositionRequest.model_validate(request)
            except ValidationError as e:
                raise InvalidRequest(f"Invalid composition request: {e}") from e

        job = self.ctx.job(
            should_cancel, on_progress, time.monotonic() + self.config.request_timeout
        )
        reservation = None
        try:
            job.progress(0, "Starting export")
            job.check_cancelled()
            encoder = EncoderProfile.for_dither(request.dither, self.config.lossy)

            sources = self._resolve(job, request)
            fingerprint = request_fingerprint(request, sources, encoder.cache_tag)
            previous = self.arbiter.lookup(fingerprint)
            if previous is not None:
                self.logger.info(f"Identical export already exists: {previous.filename}")
                job.progress(100, f"Already exported as {previous.filename}")
                return previous

            reservation = self.arbiter.reserve()
            job.progress(5, f"Sources resolved, writing {reservation.filename}")

            prepared = self._prepare(job, request, sources, encoder)
            rasters, bottom, legacy_top = self._write_rasters(job, request)
            job.progress(20, "Layers prepared")

            out = job.path("output.gif")
            if fast_path.applies(len(prepared), request.has_timeline_edits):
                self.logger.info("🎬 Single animated layer, using the fast path")
                self.fast_path.render(
                    job,
                    prepared[0],
                    rasters,
                    request.canvas_size,
                    out,
                    encoder,
                    background=request.background,
                    bottom=bottom,
                    legacy_top=legacy_top,
                )
            else:
                timeline = reconcile(
                    [p.timing for p in prepared], request.timeline.values()
                )
                plan = build_plan(
                    job, self.toolchain, request, prepared, rasters, timeline, bottom, legacy_top
                )
                job.progress(30, "Plan ready")
                strategy = self.synthesizer.render(job, plan, out, encoder)
                self.logger.info(f"🎬 Rendered with the {strategy} strategy")

            job.progress(90, "Optimizing")
            self.toolchain.optimize(job, out, encoder)

            job.check_cancelled()
            result = self.arbiter.finalize(reservation, out, fingerprint)
            self.logger.info(
                f"✅ Export finished: {result.filename} ({result.size / 1024:.0f}KB)"
            )
            job.progress(100, f"Exported {result.filename}")
            return result

        except CorruptSource as e:
            discard_corrupt(e, self.cache, self.store)
            raise
        finally:
            if reservation is not None:
                self.arbiter.release(reservation)
            threading.Thread(target=job.cleanup, daemon=True).start()

    # Pipeline stages

    def _resolve(self, job: JobContext, request: CompositionRequest) -> List[ResolvedSource]:
        single = len(request.animated_layers) == 1
        with ThreadPoolExecutor(max_workers=self.config.max_parallel) as pool:
            sources = list(
                pool.map(
                    lambda layer: self.resolver.resolve(layer, single_layer=single),
                    request.animated_layers,
                )
            )
        for layer, source in zip(request.animated_layers, sources):
            self.logger.debug(f"Resolved {layer.label} via {source.strategy}: {source.path}")
        return sources

    def _prepare_one(
        self,
        job: JobContext,
        layer,
        source: ResolvedSource,
        encoder: EncoderProfile,
    ) -> PreparedLayer:
        """Probe, resolve geometry and normalize one animated layer."""
        info = self.toolchain.probe(job, source.path)
        geometry = resolve_geometry(layer, info.width, info.height)
        width, height = geometry.normalized_size()
        delay = info.timing.delay
        normalized = self.cache.normalize(job, source, width, height, delay, encoder)
        normalized_info = self.toolchain.probe(job, normalized)
        return PreparedLayer(
            layer=layer,
            source=source,
            geometry=geometry,
            normalized=normalized,
            timing=SourceTiming.uniform(len(normalized_info.delays), delay),
        )

    def _prepare(
        self,
        job: JobContext,
        request: CompositionRequest,
        sources: List[ResolvedSource],
        encoder: EncoderProfile,
    ) -> List[PreparedLayer]:
        total = len(sources)
        done = [0]
        lock = threading.Lock()

        def work(pair):
            layer, source = pair
            prepared = self._prepare_one(job, layer, source, encoder)
            with lock:
                done[0] += 1
                job.progress(5 + done[0] * 10 // total, f"Prepared {done[0]}/{total} animations")
            return prepared

        with ThreadPoolExecutor(max_workers=self.config.max_parallel) as pool:
            return list(pool.map(work, zip(request.animated_layers, sources)))

    def _write_rasters(
        self, job: JobContext, request: CompositionRequest
    ) -> Tuple[List[RasterLayer], Optional[str], Optional[str]]:
        """Write static, bottom and legacy top rasters into the job directory."""
        rasters = []
        for i, layer in enumerate(request.static_layers):
            rasters.append(self._raster(job, f"static_{i}.png", LayerKind.STATIC, layer))
        for i, layer in enumerate(request.annotation_layers):
            rasters.append(
                self._raster(job, f"annotation_{i}.png", LayerKind.ANNOTATION, layer)
            )

        bottom = None
        if request.bottom_layer:
            bottom = _write(job.path("bottom.png"), request.bottom_layer)
        legacy_top = None
        if request.legacy_top:
            legacy_top = _write(job.path("top_legacy.png"), request.legacy_top)
        return rasters, bottom, legacy_top

    @staticmethod
    def _raster(job: JobContext, name: str, kind: LayerKind, layer) -> RasterLayer:
        return RasterLayer(
            kind=kind,
            z_index=layer.z_index,
            path=_write(job.path(name), layer.data),
            layer_id=layer.layer_id,
            label=layer.name or os.path.splitext(name)[0],
        )


def _write(path: str, data: bytes) -> str:
    with open(path, "wb") as f:
        f.write(data)
    return path
