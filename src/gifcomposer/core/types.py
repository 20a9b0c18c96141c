"""Core types and enums for the gifcomposer engine."""

from enum import Enum
from typing import Optional, Callable

# Progress callback type: receives (percent, message)
ProgressCb = Optional[Callable[[int, str], None]]

# Cancellation predicate: returns True once the request should stop
CancelCb = Optional[Callable[[], bool]]


class ScaleMode(str, Enum):
    """How an animated source is fitted into its layer box."""

    FILL = "FILL"  # Cover the box, crop the overflow
    FIT = "FIT"  # Contain within the box, pad with transparency
    CROP = "CROP"  # Explicit user pan/zoom through the image transform


class DitherProfile(str, Enum):
    """Palette reduction profile for the encoded GIF."""

    SMOOTH_GRADIENT = "smooth_gradient"  # Ordered dither, better for photos/gradients
    LESS_NOISE = "less_noise"  # No dither, cleanest for flat UI content


class LayerKind(str, Enum):
    """Kinds of layers that take part in a composition."""

    ANIMATED = "animated"
    STATIC = "static"
    ANNOTATION = "annotation"
