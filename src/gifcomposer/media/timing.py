"""Frame timing reconciliation across independently timed sources.

All durations are in GIF delay ticks (1/100 s).
"""

import math
from typing import Iterable, List, Optional, Sequence, Tuple
from pydantic import BaseModel, ConfigDict

from .models import TimelineRange

TICKS_PER_SECOND = 100


class SourceTiming(BaseModel):
    """Frame count and timing of one animated source."""

    model_config = ConfigDict(frozen=True)

    frame_count: int
    duration: int
    delay: int

    @staticmethod
    def from_delays(delays: Sequence[int]) -> "SourceTiming":
        """
        Summarise per-frame delays.

        Args:
            delays: Delay of every frame in ticks

        Returns:
            SourceTiming with the representative (mean, at least one tick) delay
        """
        delays = [max(0, int(d)) for d in delays]
        if not delays:
            return SourceTiming(frame_count=1, duration=1, delay=1)
        total = sum(delays)
        delay = max(1, int(math.floor(total / len(delays) + 0.5)))
        # All-zero delays still play one tick per frame
        duration = total or delay * len(delays)
        return SourceTiming(frame_count=len(delays), duration=duration, delay=delay)

    @staticmethod
    def uniform(frame_count: int, delay: int) -> "SourceTiming":
        frame_count = max(1, frame_count)
        delay = max(1, delay)
        return SourceTiming(
            frame_count=frame_count, duration=frame_count * delay, delay=delay
        )


class TimelinePlan(BaseModel):
    """Common output timing plus the trim window, in untrimmed frame indices."""

    model_config = ConfigDict(frozen=True)

    delay: int
    duration: int
    total_frames: int
    trim_start: int
    trim_end: int

    @property
    def output_frames(self) -> int:
        """Number of frames actually emitted."""
        return self.trim_end - self.trim_start + 1

    @property
    def is_trimmed(self) -> bool:
        return self.trim_start > 0 or self.trim_end < self.total_frames - 1

    def untrimmed(self, output_index: int) -> int:
        """Map an emitted frame number back to its untrimmed index."""
        return self.trim_start + output_index

    def output_indices(self) -> range:
        """Untrimmed indices of every emitted frame, in order."""
        return range(self.trim_start, self.trim_end + 1)

    def source_frame_index(self, source: SourceTiming, frame: int) -> int:
        """Frame of ``source`` shown at untrimmed output frame ``frame``."""
        local = (frame * self.delay) % source.duration
        return min(local // source.delay, source.frame_count - 1)

    def progress(self, frame: int) -> float:
        """Percentage position of an untrimmed frame on the full timeline."""
        if self.total_frames <= 1:
            return 0.0
        return frame / (self.total_frames - 1) * 100.0

    def is_visible(self, timeline: Optional[TimelineRange], frame: int) -> bool:
        """Whether a layer with this range is drawn on untrimmed frame ``frame``."""
        if timeline is None or timeline.is_default:
            return True
        progress = self.progress(frame)
        return timeline.start <= progress <= timeline.end

    def visible_frames(self, timeline: Optional[TimelineRange]) -> Optional[Tuple[int, int]]:
        """
        Inclusive untrimmed frame interval in which a layer is drawn.

        Args:
            timeline: The layer's range, None for always visible

        Returns:
            (first, last) or None if the layer never shows
        """
        if timeline is None or timeline.is_default:
            return 0, self.total_frames - 1
        return _frame_window(self.total_frames, timeline.start, timeline.end)


def _frame_window(total: int, start: float, end: float) -> Optional[Tuple[int, int]]:
    """Frames whose progress lies in [start, end], matching TimelinePlan.progress."""
    last = total - 1
    if last <= 0:
        return (0, 0) if start <= 0.0 <= end else None

    def progress(f: int) -> float:
        return f / last * 100.0

    lo = max(0, min(last, math.ceil(start * last / 100.0)))
    hi = max(0, min(last, math.floor(end * last / 100.0)))
    # Settle float rounding so the window agrees with per-frame checks
    while lo > 0 and progress(lo - 1) >= start:
        lo -= 1
    while lo <= last and progress(lo) < start:
        lo += 1
    while hi < last and progress(hi + 1) <= end:
        hi += 1
    while hi >= 0 and progress(hi) > end:
        hi -= 1
    if lo > hi:
        return None
    return lo, hi


def _trim_window(total: int, start: float, end: float) -> Tuple[int, int]:
    """Outer frame window covering [start, end]; never empty."""
    last = total - 1
    if last <= 0:
        return 0, 0
    # Small tolerance so exact multiples are not pushed outward by float error
    lo = math.floor(start * last / 100.0 + 1e-9)
    hi = math.ceil(end * last / 100.0 - 1e-9)
    return max(0, min(last, lo)), max(0, min(last, hi))


def reconcile(
    sources: Sequence[SourceTiming], ranges: Iterable[TimelineRange] = ()
) -> TimelinePlan:
    """
    Derive the common output timing for a set of sources.

    The output lasts as long as the longest source and samples at the fastest
    representative delay. When any range is narrower than the full timeline,
    only frames between the earliest start and the latest end are emitted,
    widened outward to whole frames.

    Args:
        sources: Timing of every animated source
        ranges: Timeline ranges supplied with the request

    Returns:
        TimelinePlan
    """
    if not sources:
        raise ValueError("at least one source is required")
    duration = max(s.duration for s in sources)
    delay = min(s.delay for s in sources)
    total = max(1, math.ceil(duration / delay))

    ranges: List[TimelineRange] = list(ranges)
    trim_start, trim_end = 0, total - 1
    if any(not r.is_default for r in ranges):
        start = min(r.start for r in ranges)
        end = max(r.end for r in ranges)
        trim_start, trim_end = _trim_window(total, start, end)

    return TimelinePlan(
        delay=delay,
        duration=duration,
        total_frames=total,
        trim_start=trim_start,
        trim_end=trim_end,
    )


def fps_fraction(delay: int) -> str:
    """Frame rate for a delay in ticks, as an exact ffmpeg rational."""
    return f"{TICKS_PER_SECOND}/{max(1, int(delay))}"
