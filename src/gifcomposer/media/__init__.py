"""Media module for animation composition."""

from .models import (
    Rect,
    ImageFillInfo,
    AnimatedLayer,
    StaticLayer,
    AnnotationLayer,
    BackgroundColor,
    TimelineRange,
    CompositionRequest,
    CompositionResult,
)
from .composition import Composer
from .encoders import EncoderProfile
from .context import MediaContext, JobContext
from .toolchain import Toolchain, FFmpegToolchain
from .sources import SourceStore, SourceResolver, ResolvedSource
from .arbiter import ReservationArena, OutputArbiter

__all__ = [
    "Rect",
    "ImageFillInfo",
    "AnimatedLayer",
    "StaticLayer",
    "AnnotationLayer",
    "BackgroundColor",
    "TimelineRange",
    "CompositionRequest",
    "CompositionResult",
    "Composer",
    "EncoderProfile",
    "MediaContext",
    "JobContext",
    "Toolchain",
    "FFmpegToolchain",
    "SourceStore",
    "SourceResolver",
    "ResolvedSource",
    "ReservationArena",
    "OutputArbiter",
]
