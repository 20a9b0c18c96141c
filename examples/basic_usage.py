#!/usr/bin/env python3
"""
Basic usage example for gifcomposer.

This example demonstrates:
1. Configuring the engine from GIFCOMPOSER_* environment variables
2. Placing one animated GIF on a frame with a static layer underneath
3. Exporting the result and reporting progress
"""

import logging
import sys

from gifcomposer import (
    Composer,
    ComposerConfig,
    ComposerError,
    CompositionRequest,
)


def main():
    """Run basic usage example."""
    logging.basicConfig(level=logging.INFO, format="%(message)s")

    # Source root defaults to ~/ScreenSyncImg; drop demo.gif there first
    config = ComposerConfig.from_env()
    print(f"Looking for sources in: {config.source_root}")

    try:
        composer = Composer(config)
    except ComposerError as e:
        print(f"Cannot start: {e}")
        return 1

    request = CompositionRequest.model_validate(
        {
            "frameName": "Onboarding",
            "frameBounds": {"x": 0, "y": 0, "width": 640, "height": 480},
            "frameBackground": {"r": 245, "g": 245, "b": 245, "a": 1},
            "gifInfos": [
                {
                    "filename": "demo.gif",
                    "bounds": {"x": 80, "y": 60, "width": 480, "height": 360},
                    "cornerRadius": 16,
                    "imageFillInfo": {"scaleMode": "FILL"},
                    "zIndex": 1,
                    "layerId": "1:2",
                }
            ],
            "gifAlgorithm": "smooth_gradient",
        }
    )

    def progress_callback(percent, message):
        print(f"Progress: {percent:3d}% {message}")

    try:
        result = composer.compose(request, on_progress=progress_callback)
    except ComposerError as e:
        print(f"❌ Export failed:\n{e}")
        return 1

    if result.skipped:
        print(f"Identical export already exists: {result.path}")
    else:
        print("✅ Export completed!")
        print(f"Output saved to: {result.path} ({result.size / 1024:.0f}KB)")
    return 0


if __name__ == "__main__":
    sys.exit(main())
