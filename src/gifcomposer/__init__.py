"""gifcomposer - Composite animated and static layers into one annotated GIF."""

from .__version__ import __version__
from .media import (
    Rect,
    ImageFillInfo,
    AnimatedLayer,
    StaticLayer,
    AnnotationLayer,
    BackgroundColor,
    TimelineRange,
    CompositionRequest,
    CompositionResult,
    Composer,
    EncoderProfile,
    MediaContext,
    Toolchain,
    FFmpegToolchain,
)
from .core import (
    ScaleMode,
    DitherProfile,
    ComposerConfig,
    ComposerError,
    ToolchainUnavailable,
    SourceUnresolved,
    CorruptSource,
    ToolFailure,
    OperationTimeout,
    CompositionCancelled,
    InvalidRequest,
)


__all__ = [
    "__version__",
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
    "Toolchain",
    "FFmpegToolchain",
    "ScaleMode",
    "DitherProfile",
    "ComposerConfig",
    "ComposerError",
    "ToolchainUnavailable",
    "SourceUnresolved",
    "CorruptSource",
    "ToolFailure",
    "OperationTimeout",
    "CompositionCancelled",
    "InvalidRequest",
]
