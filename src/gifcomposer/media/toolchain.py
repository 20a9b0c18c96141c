"""Transcoding capability boundary and its ffmpeg/gifsicle implementation.

The engine never touches pixels itself. Everything that decodes, scales,
masks, composites or encodes goes through a :class:`Toolchain`.
"""

import json
import os
import shutil
from abc import ABC, abstractmethod
from typing import List, Optional, Sequence, Tuple
from pydantic import BaseModel

from ..core.errors import CorruptSource, OperationTimeout, ToolFailure
from .context import JobContext, MediaContext
from .encoders import EncoderProfile
from .geometry import LayerGeometry
from .models import BackgroundColor
from .plan import CompositionPlan
from .timing import SourceTiming, fps_fraction

# stderr fragments that mean the input itself is unreadable
CORRUPT_MARKERS = (
    "Invalid data found when processing input",
    "moov atom not found",
    "improper image header",
    "no decode delegate",
)

GRAPH_FILTERS = (
    "overlay",
    "palettegen",
    "paletteuse",
    "geq",
    "trim",
    "fps",
    "pad",
    "crop",
    "scale",
    "setpts",
)

TRANSPARENT = "black@0"


class MediaInfo(BaseModel):
    """Probe result for one media file."""

    width: int
    height: int
    delays: List[int]
    codec: str = "unknown"

    @property
    def timing(self) -> SourceTiming:
        return SourceTiming.from_delays(self.delays)

    @property
    def pixels(self) -> int:
        return self.width * self.height


def is_corrupt(stderr: str) -> bool:
    return any(marker in (stderr or "") for marker in CORRUPT_MARKERS)


def rounded_mask_filter(width: int, height: int, radius: float) -> str:
    """geq filter that zeroes alpha outside a rounded rectangle."""
    r = f"{radius:g}"
    dx = f"max(max({r}-X-0.5,X+0.5-({width}-{r})),0)"
    dy = f"max(max({r}-Y-0.5,Y+0.5-({height}-{r})),0)"
    return (
        "geq=r='r(X,Y)':g='g(X,Y)':b='b(X,Y)'"
        f":a='alpha(X,Y)*lte(hypot({dx},{dy}),{r})'"
    )


def geometry_filters(geometry: LayerGeometry) -> List[str]:
    """
    Filter chain that turns a normalized source into the final layer raster.

    Args:
        geometry: Resolved layer geometry

    Returns:
        List of filters, applied in order
    """
    p = geometry.plan
    filters = ["format=rgba", f"scale={p.scaled_w}:{p.scaled_h}:flags=lanczos"]
    if p.needs_crop:
        filters.append(f"crop={p.crop_w}:{p.crop_h}:{p.crop_x}:{p.crop_y}")
    if p.needs_pad:
        filters.append(
            f"pad={p.target_w}:{p.target_h}:{p.pad_x}:{p.pad_y}:color={TRANSPARENT}"
        )
    if geometry.corner_radius > 0:
        filters.append(rounded_mask_filter(p.target_w, p.target_h, geometry.corner_radius))
    if geometry.clip is not None:
        c = geometry.clip
        filters.append(f"crop={c.width}:{c.height}:{c.x}:{c.y}")
        if geometry.clip_radius > 0:
            filters.append(rounded_mask_filter(c.width, c.height, geometry.clip_radius))
    return filters


def retime_filters(timing: SourceTiming, output_delay: int) -> List[str]:
    """Give a looping source exact timestamps, then sample it at the output rate."""
    return [
        f"setpts=N*{timing.delay}/100/TB",
        f"fps=fps={fps_fraction(output_delay)}:round=up",
    ]


class Toolchain(ABC):
    """Capabilities the engine needs from a transcoding backend."""

    @abstractmethod
    def probe(self, job: JobContext, path: str) -> MediaInfo:
        """Dimensions and per-frame delays of a media file."""

    @abstractmethod
    def normalize(
        self,
        job: JobContext,
        src: str,
        out: str,
        width: int,
        height: int,
        delay: int,
        encoder: EncoderProfile,
    ) -> None:
        """Resample to a uniform delay, scale to ``width``x``height`` and re-palette."""

    @abstractmethod
    def transform(
        self, job: JobContext, src: str, geometry: LayerGeometry, out: str
    ) -> str:
        """Apply a layer's geometry to a whole animation; returns the result path."""

    @abstractmethod
    def merge_rasters(
        self,
        job: JobContext,
        out: str,
        width: int,
        height: int,
        rasters: Sequence[str] = (),
        background: Optional[BackgroundColor] = None,
    ) -> str:
        """Flatten a background colour and canvas-sized rasters into one PNG."""

    @abstractmethod
    def overlay_animation(
        self,
        job: JobContext,
        base: str,
        animation: Optional[str],
        position: Tuple[int, int],
        top: Optional[str],
        frames: int,
        delay: int,
        out: str,
        encoder: EncoderProfile,
    ) -> None:
        """Draw one positioned animation between two rasters and encode."""

    @abstractmethod
    def supports_filter_graph(self, job: JobContext) -> bool:
        """Cheap capability probe for the single-graph synthesis strategy."""

    @abstractmethod
    def render_graph(
        self, job: JobContext, plan: CompositionPlan, out: str, encoder: EncoderProfile
    ) -> None:
        """Render a full composition plan in one invocation."""

    @abstractmethod
    def extract_frames(
        self,
        job: JobContext,
        src: str,
        geometry: LayerGeometry,
        out_dir: str,
    ) -> int:
        """Write a normalized animation's positioned frames as numbered PNGs."""

    @abstractmethod
    def composite_frame(
        self,
        job: JobContext,
        layers: Sequence[Tuple[str, int, int]],
        out: str,
    ) -> None:
        """Stack ``(png, x, y)`` layers, the first one defining the canvas."""

    @abstractmethod
    def encode_frames(
        self,
        job: JobContext,
        frames_dir: str,
        count: int,
        delay: int,
        out: str,
        encoder: EncoderProfile,
    ) -> None:
        """Encode ``frame_%04d.png`` files into the output animation."""

    @abstractmethod
    def optimize(
        self, job: JobContext, path: str, encoder: EncoderProfile
    ) -> bool:
        """Best-effort size optimization in place; True when the file shrank."""


def frame_name(index: int) -> str:
    return f"frame_{index:04d}.png"


class FFmpegToolchain(Toolchain):
    """Toolchain backed by ffmpeg/ffprobe subprocesses and optional gifsicle."""

    def __init__(self, ctx: MediaContext):
        self.ctx = ctx
        self._graph_support: Optional[bool] = None

    # Probing

    def probe(self, job: JobContext, path: str) -> MediaInfo:
        """
        Probe a media file with ffprobe.

        GIFs are read frame by frame to recover every delay; video containers
        report a frame rate and frame count instead.

        Args:
            job: Job context
            path: Media file

        Returns:
            MediaInfo

        Raises:
            CorruptSource: The file cannot be decoded
        """
        is_gif = path.lower().endswith(".gif")
        entries = "stream=codec_name,width,height,avg_frame_rate,nb_frames,duration"
        extra = []
        if is_gif:
            entries += ":frame=duration_time,pkt_duration_time"
        else:
            entries += ",nb_read_packets"
            extra = ["-count_packets"]
        cmd = [self.ctx.ffprobe, "-v", "error", "-print_format", "json"]
        cmd += ["-select_streams", "v:0", "-show_entries", entries] + extra + [path]
        size = os.path.getsize(path) if os.path.exists(path) else 0
        try:
            result = job.run(cmd, timeout=job.timeout_for(input_bytes=size, base=30))
        except ToolFailure as e:
            if is_corrupt(e.stderr):
                raise CorruptSource(path, e.stderr)
            raise

        data = json.loads(result.stdout.decode("utf-8", "replace") or "{}")
        streams = data.get("streams") or []
        if not streams or not streams[0].get("width"):
            raise CorruptSource(path, "no video stream")
        stream = streams[0]

        if is_gif:
            delays = []
            for frame in data.get("frames") or []:
                seconds = frame.get("duration_time") or frame.get("pkt_duration_time")
                delays.append(int(round(float(seconds) * 100)) if seconds else 0)
        else:
            delays = self._uniform_delays(stream)

        return MediaInfo(
            width=int(stream["width"]),
            height=int(stream["height"]),
            delays=delays or [10],
            codec=stream.get("codec_name", "unknown"),
        )

    @staticmethod
    def _uniform_delays(stream: dict) -> List[int]:
        rate = stream.get("avg_frame_rate") or "0/0"
        num, _, den = rate.partition("/")
        try:
            fps = float(num) / float(den or 1)
        except (ValueError, ZeroDivisionError):
            fps = 0.0
        delay = max(1, int(round(100 / fps))) if fps > 0 else 10
        count = stream.get("nb_read_packets") or stream.get("nb_frames")
        if not count and stream.get("duration") and fps > 0:
            count = float(stream["duration"]) * fps
        return [delay] * max(1, int(count or 1))

    # Whole-animation operations

    def normalize(self, job, src, out, width, height, delay, encoder) -> None:
        chain = ["setpts=PTS-STARTPTS", f"fps=fps={fps_fraction(delay)}", "format=rgba"]
        chain.append(f"scale={width}:{height}:flags=lanczos")
        graph = f"[0:v]{','.join(chain)}[n];" + encoder.palette_filter("[n]", "[out]")
        cmd = [self.ctx.ffmpeg, "-v", "error", "-i", src]
        cmd += ["-filter_complex", graph, "-map", "[out]"]
        cmd += encoder.args(out)
        size = os.path.getsize(src)
        try:
            job.run(cmd, timeout=job.timeout_for(size, width * height))
        except ToolFailure as e:
            if is_corrupt(e.stderr):
                raise CorruptSource(src, e.stderr)
            raise
        job.logger.debug(f"Normalized {os.path.basename(src)} -> {width}x{height} @ {delay}/100s")

    def transform(self, job, src, geometry, out) -> str:
        if geometry.is_identity:
            return src
        # Lossless RGBA intermediate so the final encode quantizes only once
        cmd = [self.ctx.ffmpeg, "-v", "error", "-i", src]
        cmd += ["-vf", ",".join(geometry_filters(geometry))]
        cmd += ["-fps_mode", "passthrough", "-c:v", "png", "-pix_fmt", "rgba", "-y", out]
        pixels = geometry.plan.target_w * geometry.plan.target_h
        job.run(cmd, timeout=job.timeout_for(os.path.getsize(src), pixels))
        return out

    def merge_rasters(self, job, out, width, height, rasters=(), background=None) -> str:
        color = background.ffmpeg_color() if background and background.visible else TRANSPARENT
        cmd = [
            self.ctx.ffmpeg,
            "-v",
            "error",
            "-f",
            "lavfi",
            "-i",
            f"color=c={color}:s={width}x{height}:r=1",
        ]
        parts = ["[0:v]format=rgba[c0]"]
        current = "[c0]"
        for i, raster in enumerate(rasters, start=1):
            cmd += ["-i", raster]
            label = f"[c{i}]"
            parts.append(f"{current}[{i}:v]overlay=0:0:format=rgb{label}")
            current = label
        parts.append(f"{current}format=rgba[out]")
        cmd += ["-filter_complex", ";".join(parts), "-map", "[out]"]
        cmd += ["-frames:v", "1", "-y", out]
        job.run(cmd, timeout=job.timeout_for(pixels=width * height))
        return out

    def overlay_animation(
        self, job, base, animation, position, top, frames, delay, out, encoder
    ) -> None:
        rate = fps_fraction(delay)
        cmd = [self.ctx.ffmpeg, "-v", "error"]
        cmd += ["-loop", "1", "-framerate", rate, "-i", base]
        parts = []
        current = "[0:v]"
        idx = 1
        if animation is not None:
            cmd += ["-i", animation]
            x, y = position
            parts.append(f"{current}[{idx}:v]overlay={x}:{y}:format=rgb[anim]")
            current = "[anim]"
            idx += 1
        if top is not None:
            cmd += ["-loop", "1", "-framerate", rate, "-i", top]
            parts.append(f"{current}[{idx}:v]overlay=0:0:format=rgb[above]")
            current = "[above]"
        parts.append(encoder.palette_filter(f"{current}format=rgba,", "[out]"))
        cmd += ["-filter_complex", ";".join(parts), "-map", "[out]"]
        cmd += ["-frames:v", str(frames)]
        cmd += encoder.args(out)
        size = os.path.getsize(animation) if animation else 0
        job.run(cmd, timeout=max(300.0, frames * 2.0, job.timeout_for(size, 0)))

    # Filter graph strategy

    def supports_filter_graph(self, job) -> bool:
        if self._graph_support is None:
            try:
                result = job.run([self.ctx.ffmpeg, "-hide_banner", "-filters"], timeout=10)
                listing = result.stdout.decode("utf-8", "replace")
                names = {line.split()[1] for line in listing.splitlines() if len(line.split()) > 2}
                missing = [f for f in GRAPH_FILTERS if f not in names]
                if missing:
                    job.logger.info(f"Filter graph unavailable, missing filters: {missing}")
                self._graph_support = not missing
            except ToolFailure as e:
                job.logger.warning(f"Could not list ffmpeg filters: {e}")
                self._graph_support = False
        return self._graph_support

    def build_graph_argv(
        self, plan: CompositionPlan, out: str, encoder: EncoderProfile
    ) -> List[str]:
        """
        Build the ffmpeg argument list that renders a plan in one pass.

        Frame numbers in overlay ``enable`` expressions refer to the untrimmed
        timeline; the trim filter cuts the window afterwards.

        Args:
            plan: Composition plan
            out: Output path
            encoder: Encoder profile

        Returns:
            List of ffmpeg arguments
        """
        tl = plan.timeline
        rate = fps_fraction(tl.delay)
        argv = [self.ctx.ffmpeg, "-v", "error", "-y"]
        argv += ["-loop", "1", "-framerate", rate, "-i", plan.base]
        filter_parts = ["[0:v]format=rgba[base]"]
        current = "[base]"
        input_idx = 1

        for i, entry in enumerate(plan.entries):
            if entry.animated:
                argv += ["-ignore_loop", "0", "-i", entry.path]
                chain = retime_filters(entry.timing, tl.delay)
                chain += geometry_filters(entry.geometry)
            else:
                argv += ["-loop", "1", "-framerate", rate, "-i", entry.path]
                chain = ["format=rgba"]
            layer_label = f"[layer_{i}]"
            filter_parts.append(f"[{input_idx}:v]{','.join(chain)}{layer_label}")
            input_idx += 1

            x, y = entry.position
            overlay = f"overlay={x}:{y}:format=rgb"
            first, last = entry.window
            if (first, last) != (0, tl.total_frames - 1):
                overlay += f":enable='between(n,{first},{last})'"
            temp_output = f"[tmp{i}]"
            filter_parts.append(f"{current}{layer_label}{overlay}{temp_output}")
            current = temp_output

        if plan.top:
            argv += ["-loop", "1", "-framerate", rate, "-i", plan.top]
            filter_parts.append(f"{current}[{input_idx}:v]overlay=0:0:format=rgb[top]")
            current = "[top]"

        tail = "format=rgba"
        if tl.is_trimmed:
            tail = (
                f"trim=start_frame={tl.trim_start}:end_frame={tl.trim_end + 1},"
                f"setpts=PTS-STARTPTS,{tail}"
            )
        filter_parts.append(encoder.palette_filter(f"{current}{tail},", "[out]"))

        argv += ["-filter_complex", ";".join(filter_parts), "-map", "[out]"]
        argv += ["-frames:v", str(tl.output_frames)]
        argv += encoder.args(out)
        return argv

    def render_graph(self, job, plan, out, encoder) -> None:
        argv = self.build_graph_argv(plan, out, encoder)
        job.logger.info(
            f"Rendering {plan.timeline.output_frames} frames in one filter graph "
            f"({len(plan.entries)} layers)"
        )
        job.run(argv, timeout=max(300.0, plan.timeline.total_frames * 2.0))

    # Frame materialization strategy

    def extract_frames(self, job, src, geometry, out_dir) -> int:
        os.makedirs(out_dir, exist_ok=True)
        cmd = [self.ctx.ffmpeg, "-v", "error", "-i", src]
        cmd += ["-vf", ",".join(geometry_filters(geometry))]
        cmd += ["-fps_mode", "passthrough", "-start_number", "0"]
        cmd += ["-y", os.path.join(out_dir, "frame_%04d.png")]
        pixels = geometry.plan.target_w * geometry.plan.target_h
        job.run(cmd, timeout=job.timeout_for(os.path.getsize(src), pixels))
        return len([n for n in os.listdir(out_dir) if n.endswith(".png")])

    def composite_frame(self, job, layers, out) -> None:
        if len(layers) == 1:
            shutil.copyfile(layers[0][0], out)
            return
        cmd = [self.ctx.ffmpeg, "-v", "error"]
        parts = []
        current = "[0:v]"
        for i, (path, x, y) in enumerate(layers):
            cmd += ["-i", path]
            if i == 0:
                parts.append(f"{current}format=rgba[f0]")
                current = "[f0]"
                continue
            label = f"[f{i}]"
            parts.append(f"{current}[{i}:v]overlay={x}:{y}:format=rgb{label}")
            current = label
        parts.append(f"{current}format=rgba[out]")
        cmd += ["-filter_complex", ";".join(parts), "-map", "[out]"]
        cmd += ["-frames:v", "1", "-y", out]
        job.run(cmd)

    def encode_frames(self, job, frames_dir, count, delay, out, encoder) -> None:
        cmd = [self.ctx.ffmpeg, "-v", "error"]
        cmd += ["-framerate", fps_fraction(delay), "-start_number", "0"]
        cmd += ["-i", os.path.join(frames_dir, "frame_%04d.png")]
        cmd += ["-filter_complex", encoder.palette_filter("[0:v]format=rgba,", "[out]")]
        cmd += ["-map", "[out]", "-frames:v", str(count)]
        cmd += encoder.args(out)
        job.run(cmd, timeout=max(300.0, count * 2.0))

    # Optimization

    def optimize(self, job, path, encoder) -> bool:
        """
        Shrink an encoded GIF with gifsicle, keeping the result only if smaller.

        Any failure is logged and ignored; the unoptimized file stays valid.
        """
        if not self.ctx.gifsicle:
            return False
        before = os.path.getsize(path)
        candidate = path + ".opt.gif"
        cmd = [self.ctx.gifsicle] + encoder.optimize_args(path, candidate)
        timeout = max(60.0, before / (1024 * 1024) * 2.0)
        try:
            job.run(cmd, timeout=timeout)
        except (ToolFailure, OperationTimeout) as e:
            job.logger.warning(f"gifsicle optimization failed, keeping original: {e}")
            _remove_quietly(candidate)
            return False

        after = os.path.getsize(candidate) if os.path.exists(candidate) else 0
        if 0 < after < before:
            os.replace(candidate, path)
            job.logger.info(
                f"Optimized {before / 1024:.0f}KB -> {after / 1024:.0f}KB "
                f"({(1 - after / before) * 100:.0f}% smaller)"
            )
            return True
        _remove_quietly(candidate)
        return False


def _remove_quietly(path: str) -> None:
    if os.path.exists(path):
        os.remove(path)
