"""Tests for request models and payload parsing."""

import base64

import pytest
from pydantic import ValidationError

from gifcomposer import (
    AnimatedLayer,
    BackgroundColor,
    CompositionRequest,
    DitherProfile,
    ImageFillInfo,
    ScaleMode,
    TimelineRange,
)
from gifcomposer.media.models import px


def plugin_payload(**overrides):
    """Request payload in the plugin's wire format."""
    payload = {
        "frameName": "Frame 1",
        "frameBounds": {"x": 0, "y": 0, "width": 320, "height": 240},
        "gifInfos": [
            {
                "cacheId": "abc123",
                "filename": "demo.gif",
                "bounds": {"x": 10, "y": 20, "width": 100, "height": 80},
                "cornerRadius": 8,
                "imageFillInfo": {"scaleMode": "fit"},
                "zIndex": 1,
                "layerId": "1:2",
            }
        ],
        "staticLayers": [{"bytes": [137, 80, 78, 71], "index": 0, "layerId": "1:3"}],
        "gifAlgorithm": "less_noise",
    }
    payload.update(overrides)
    return payload


class TestPixelRounding:
    """Test layout coordinate rounding."""

    def test_half_rounds_away_from_zero(self):
        assert px(2.5) == 3
        assert px(3.5) == 4
        assert px(-2.5) == -3

    def test_regular_rounding(self):
        assert px(2.49) == 2
        assert px(99.999) == 100


class TestCompositionRequest:
    """Test CompositionRequest parsing."""

    def test_plugin_payload(self):
        """Plugin field names map onto the engine's model."""
        request = CompositionRequest.model_validate(plugin_payload())

        assert request.frame_name == "Frame 1"
        assert request.canvas_size == (320, 240)
        assert len(request.animated_layers) == 1
        layer = request.animated_layers[0]
        assert layer.cache_id == "abc123"
        assert layer.corner_radius == 8
        assert layer.image_fill_info.scale_mode == ScaleMode.FIT
        assert layer.z_index == 1
        assert request.static_layers[0].data == b"\x89PNG"
        assert request.static_layers[0].z_index == 0
        assert request.dither == DitherProfile.LESS_NOISE

    def test_snake_case_construction(self):
        """Models can be built directly with Python field names."""
        request = CompositionRequest(
            canvas={"width": 50, "height": 40},
            animated_layers=[AnimatedLayer(filename="a.gif", bounds={"width": 50, "height": 40})],
        )
        assert request.canvas_size == (50, 40)
        assert request.dither == DitherProfile.SMOOTH_GRADIENT
        assert request.timeline == {}

    def test_requires_animated_layer(self):
        with pytest.raises(ValidationError, match="at least one animated layer"):
            CompositionRequest.model_validate(plugin_payload(gifInfos=[]))

    def test_duplicate_z_index_rejected(self):
        payload = plugin_payload(
            staticLayers=[{"bytes": [1, 2, 3], "index": 1}],
        )
        with pytest.raises(ValidationError, match="unique"):
            CompositionRequest.model_validate(payload)

    def test_bytes_encodings(self):
        """Raster bytes arrive as lists, index maps or base64 strings."""
        encoded = base64.b64encode(b"\x01\x02").decode()
        payload = plugin_payload(
            bottomLayerBytes={"1": 2, "0": 1},
            annotationBytes=encoded,
        )
        request = CompositionRequest.model_validate(payload)
        assert request.bottom_layer == b"\x01\x02"
        assert request.annotation == b"\x01\x02"

    def test_empty_raster_is_none(self):
        request = CompositionRequest.model_validate(plugin_payload(bottomLayerBytes=[]))
        assert request.bottom_layer is None

    def test_legacy_top_only_without_annotation_layers(self):
        payload = plugin_payload(annotationBytes=[1, 2, 3])
        assert CompositionRequest.model_validate(payload).legacy_top == b"\x01\x02\x03"

        payload["annotationLayers"] = [{"bytes": [4], "index": 5}]
        assert CompositionRequest.model_validate(payload).legacy_top is None

    def test_timeline_edits(self):
        payload = plugin_payload(timelineData={"1:2": {"start": 0, "end": 100}})
        request = CompositionRequest.model_validate(payload)
        assert request.has_timeline_edits is False
        assert request.range_for("1:2").is_default
        assert request.range_for(None) is None

        payload["timelineData"]["1:3"] = {"start": 25, "end": 75}
        request = CompositionRequest.model_validate(payload)
        assert request.has_timeline_edits is True
        assert request.range_for("1:3").start == 25
        assert request.range_for("missing") is None


class TestTimelineRange:
    """Test TimelineRange normalization."""

    def test_clamped(self):
        r = TimelineRange(start=-10, end=150)
        assert (r.start, r.end) == (0.0, 100.0)
        assert r.is_default

    def test_swapped(self):
        r = TimelineRange(start=80, end=20)
        assert (r.start, r.end) == (20.0, 80.0)
        assert not r.is_default


class TestImageFillInfo:
    """Test ImageFillInfo parsing."""

    def test_unknown_scale_mode_falls_back_to_fill(self):
        assert ImageFillInfo(scale_mode="tile").scale_mode == ScaleMode.FILL

    def test_transform_from_json_string(self):
        info = ImageFillInfo(
            scale_mode="CROP", image_transform="[[0.5, 0, 0.25], [0, 0.5, 0.1]]"
        )
        assert info.transform_factors() == (0.5, 0.5, 0.25, 0.1)

    def test_zero_scale_treated_as_one(self):
        info = ImageFillInfo(image_transform=[[0, 0, 0.2], [0, 0, 0]])
        assert info.transform_factors() == (1.0, 1.0, 0.2, 0.0)

    def test_malformed_transform_ignored(self):
        assert ImageFillInfo(image_transform="not json").transform_factors() is None
        assert ImageFillInfo(image_transform=[[1, 0]]).transform_factors() is None


class TestAnimatedLayer:
    """Test AnimatedLayer helpers."""

    def test_foreign_ids_skip_empty(self):
        layer = AnimatedLayer(
            drive_file_id="", oss_file_id="oss-1", bounds={"width": 1, "height": 1}
        )
        assert layer.foreign_ids == ["oss-1"]

    def test_label_fallbacks(self):
        bounds = {"width": 1, "height": 1}
        assert AnimatedLayer(filename="a.gif", bounds=bounds).label == "a.gif"
        assert AnimatedLayer(cache_id="c1", bounds=bounds).label == "c1"
        assert AnimatedLayer(bounds=bounds).label == "<unnamed>"


class TestBackgroundColor:
    """Test BackgroundColor."""

    def test_ffmpeg_color(self):
        bg = BackgroundColor(r=255, g=0, b=16, a=0.5)
        assert bg.ffmpeg_color() == "0xFF0010@0.5"
        assert bg.visible

    def test_transparent_background_invisible(self):
        assert not BackgroundColor(r=0, g=0, b=0, a=0).visible
