#!/usr/bin/env python3
"""
Advanced composition example for gifcomposer.

This example demonstrates:
1. Several independently timed animations on one frame
2. Annotation layers shown only during part of the timeline
3. Running concurrent exports on one engine
4. Cancelling an export from another thread
"""

import logging
import os
import sys
import threading
from concurrent.futures import ThreadPoolExecutor

from gifcomposer import (
    Composer,
    ComposerConfig,
    CompositionCancelled,
    ComposerError,
)


def load_png(path):
    """Canvas-sized PNG exported by the design tool, as a byte list."""
    with open(path, "rb") as f:
        return list(f.read())


def build_payload(callout_png):
    """Two animations side by side and a callout during the first half."""
    return {
        "frameName": "Feature tour",
        "frameBounds": {"x": 0, "y": 0, "width": 960, "height": 540},
        "frameBackground": {"r": 18, "g": 18, "b": 24, "a": 1},
        "gifInfos": [
            {
                "filename": "screen_left.mov",
                "bounds": {"x": 40, "y": 70, "width": 420, "height": 400},
                "imageFillInfo": {"scaleMode": "FIT"},
                "zIndex": 1,
                "layerId": "10:1",
            },
            {
                "filename": "screen_right.gif",
                "bounds": {"x": 500, "y": 70, "width": 420, "height": 400},
                "cornerRadius": 24,
                "clipBounds": {"x": 480, "y": 60, "width": 460, "height": 380},
                "zIndex": 2,
                "layerId": "10:2",
            },
        ],
        "annotationLayers": [{"bytes": callout_png, "index": 3, "layerId": "10:3"}],
        "timelineData": {"10:3": {"start": 0, "end": 50}},
        "gifAlgorithm": "less_noise",
    }


def main():
    """Run advanced composition example."""
    logging.basicConfig(level=logging.INFO, format="%(threadName)s %(message)s")

    callout_path = os.getenv("GIFCOMPOSER_CALLOUT_PNG", "callout.png")
    if not os.path.exists(callout_path):
        print(f"Please provide a canvas-sized callout PNG at {callout_path}")
        return 1

    config = ComposerConfig.from_env()
    composer = Composer(config)
    payload = build_payload(load_png(callout_path))

    # Two different dither profiles exported concurrently on one engine
    variants = [dict(payload), dict(payload, gifAlgorithm="smooth_gradient")]
    with ThreadPoolExecutor(max_workers=2) as pool:
        futures = [pool.submit(composer.compose, v) for v in variants]
        for future in futures:
            try:
                result = future.result()
                print(f"✅ {result.filename} ({result.size / 1024:.0f}KB)")
            except ComposerError as e:
                print(f"❌ Export failed:\n{e}")

    # Cancel a third, single-layer export once it reaches the compositing stage
    stop = threading.Event()

    def on_progress(percent, message):
        if percent >= 30:
            stop.set()

    try:
        composer.compose(
            dict(payload, gifInfos=payload["gifInfos"][:1], timelineData={}),
            should_cancel=stop.is_set,
            on_progress=on_progress,
        )
    except CompositionCancelled:
        print("Export cancelled, no partial output was written")
    return 0


if __name__ == "__main__":
    sys.exit(main())
