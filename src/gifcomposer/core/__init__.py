"""Core module for the gifcomposer engine."""

from .types import (
    ProgressCb,
    CancelCb,
    ScaleMode,
    DitherProfile,
    LayerKind,
)
from .errors import (
    ComposerError,
    ToolchainUnavailable,
    SourceUnresolved,
    CorruptSource,
    ToolFailure,
    OperationTimeout,
    CompositionCancelled,
    InvalidRequest,
)
from .config import ComposerConfig

__all__ = [
    "ProgressCb",
    "CancelCb",
    "ScaleMode",
    "DitherProfile",
    "LayerKind",
    "ComposerError",
    "ToolchainUnavailable",
    "SourceUnresolved",
    "CorruptSource",
    "ToolFailure",
    "OperationTimeout",
    "CompositionCancelled",
    "InvalidRequest",
    "ComposerConfig",
]
