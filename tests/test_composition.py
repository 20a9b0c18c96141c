"""Tests for the composition engine using a recording toolchain."""

import os
import threading
from concurrent.futures import ThreadPoolExecutor
from unittest.mock import patch

import pytest

from gifcomposer import (
    AnimatedLayer,
    Composer,
    CompositionCancelled,
    CompositionRequest,
    CorruptSource,
    InvalidRequest,
    SourceUnresolved,
    ToolFailure,
)
from gifcomposer.core import LayerKind
from gifcomposer.media.arbiter import ReservationArena
from gifcomposer.media.geometry import resolve_geometry
from gifcomposer.media.plan import PreparedLayer, RasterLayer
from gifcomposer.media.sources import ResolvedSource
from gifcomposer.media.synthesizer import FrameMaterializationStrategy, build_plan
from gifcomposer.media.timing import SourceTiming, reconcile

PNG = [137, 80, 78, 71]


def drop(config, name):
    path = os.path.join(config.source_root, name)
    with open(path, "wb") as f:
        f.write(b"GIF89a" + name.encode())
    return path


def animated(filename, z, layer_id, x=10, y=20):
    return {
        "filename": filename,
        "bounds": {"x": x, "y": y, "width": 100, "height": 80},
        "zIndex": z,
        "layerId": layer_id,
    }


def payload(layers, **extra):
    data = {
        "frameName": "Frame",
        "frameBounds": {"x": 0, "y": 0, "width": 200, "height": 160},
        "gifInfos": layers,
    }
    data.update(extra)
    return data


def exports(config):
    if not os.path.isdir(config.output_dir):
        return []
    return sorted(n for n in os.listdir(config.output_dir) if n.startswith("ExportedGIF"))


@pytest.fixture
def composer(config, media_ctx, fake_toolchain):
    return Composer(config, ctx=media_ctx, toolchain=fake_toolchain, arena=ReservationArena())


class TestComposerFastPath:
    """Test the single-layer pipeline."""

    def test_single_layer_uses_fast_path(self, composer, config, fake_toolchain):
        drop(config, "one.gif")
        request = payload(
            [animated("one.gif", 1, "L1")],
            staticLayers=[{"bytes": PNG, "index": 0}],
            annotationLayers=[{"bytes": PNG, "index": 5}],
        )

        result = composer.compose(request)

        names = fake_toolchain.names
        assert "overlay_animation" in names
        assert "render_graph" not in names
        assert result.filename == "ExportedGIF_001.gif"
        assert not result.skipped
        assert os.path.isfile(result.path)

        below, above = fake_toolchain.calls_to("merge_rasters")
        assert below[0].endswith("below.png")
        assert [os.path.basename(p) for p in below[3]] == ["static_0.png"]
        assert [os.path.basename(p) for p in above[3]] == ["annotation_0.png"]

        _, _, position, top, frames, delay = fake_toolchain.calls_to("overlay_animation")[0]
        assert position == (10, 20)
        assert top == above[0]
        assert (frames, delay) == (5, 10)

    def test_timeline_edit_disables_fast_path(self, composer, config, fake_toolchain):
        drop(config, "one.gif")
        request = payload(
            [animated("one.gif", 1, "L1")],
            timelineData={"L1": {"start": 0, "end": 50}},
        )

        composer.compose(request)

        assert "render_graph" in fake_toolchain.names
        assert "overlay_animation" not in fake_toolchain.names

    def test_progress_monotonic_to_completion(self, composer, config):
        drop(config, "one.gif")
        seen = []

        composer.compose(
            payload([animated("one.gif", 1, "L1")]),
            on_progress=lambda p, m: seen.append(p),
        )

        assert seen[0] == 0
        assert seen[-1] == 100
        assert seen == sorted(seen)


class TestComposerMultiLayer:
    """Test the multi-layer synthesizer path."""

    @pytest.fixture
    def request_data(self, config):
        drop(config, "one.gif")
        drop(config, "two.gif")
        return payload([animated("one.gif", 1, "L1"), animated("two.gif", 2, "L2", x=50)])

    def test_graph_strategy(self, composer, fake_toolchain, request_data):
        result = composer.compose(request_data)

        assert "render_graph" in fake_toolchain.names
        assert "composite_frame" not in fake_toolchain.names
        plan = fake_toolchain.calls_to("render_graph")[0][0]
        assert [e.label for e in plan.entries] == ["one.gif", "two.gif"]
        assert plan.timeline.total_frames == 5
        assert os.path.isfile(result.path)

    def test_graph_failure_falls_back_to_frames(self, composer, fake_toolchain, request_data):
        fake_toolchain.graph_error = ToolFailure(["ffmpeg"], 1, "No such filter")

        result = composer.compose(request_data)

        names = fake_toolchain.names
        assert names.count("extract_frames") == 2
        assert names.count("composite_frame") == 5
        assert "encode_frames" in names
        assert os.path.isfile(result.path)

    def test_layer_frames_extracted_concurrently(self, composer, fake_toolchain, request_data):
        fake_toolchain.graph_support = False
        # Both layers must be extracting at the same time to pass the barrier
        barrier = threading.Barrier(2, timeout=5)
        extract = fake_toolchain.extract_frames

        def extract_together(job, src, geometry, out_dir):
            barrier.wait()
            return extract(job, src, geometry, out_dir)

        with patch.object(fake_toolchain, "extract_frames", side_effect=extract_together):
            result = composer.compose(request_data)

        assert os.path.isfile(result.path)
        assert fake_toolchain.names.count("extract_frames") == 2

    def test_unsupported_graph_goes_straight_to_frames(
        self, composer, fake_toolchain, request_data
    ):
        fake_toolchain.graph_support = False

        composer.compose(request_data)

        assert "render_graph" not in fake_toolchain.names
        assert "encode_frames" in fake_toolchain.names

    def test_repeat_request_is_skipped(self, composer, fake_toolchain, request_data):
        first = composer.compose(request_data)
        fake_toolchain.calls.clear()

        second = composer.compose(request_data)

        assert second.skipped
        assert second.filename == first.filename
        assert fake_toolchain.calls == []

    def test_changed_request_gets_next_slot(self, composer, config, request_data):
        first = composer.compose(request_data)
        changed = dict(request_data, bottomLayerBytes=PNG)
        second = composer.compose(changed)

        assert first.filename == "ExportedGIF_001.gif"
        assert second.filename == "ExportedGIF_002.gif"
        assert exports(config) == ["ExportedGIF_001.gif", "ExportedGIF_002.gif"]

    def test_deleted_export_slot_reused_by_other_request(self, composer, request_data):
        first = composer.compose(request_data)
        os.remove(first.path)
        other = composer.compose(dict(request_data, bottomLayerBytes=PNG))

        again = composer.compose(request_data)

        assert other.filename == first.filename
        assert not again.skipped
        assert again.filename == "ExportedGIF_002.gif"

    def test_simultaneous_requests_get_distinct_names(self, composer, config, request_data):
        variants = [dict(request_data, bottomLayerBytes=PNG + [i]) for i in range(4)]
        with ThreadPoolExecutor(max_workers=4) as pool:
            results = list(pool.map(composer.compose, variants))

        names = sorted(r.filename for r in results)
        assert names == [f"ExportedGIF_{n:03d}.gif" for n in range(1, 5)]
        assert exports(config) == names
        assert composer.arbiter.arena.reserved() == set()

    def test_cancel_leaves_no_output(self, composer, config, fake_toolchain, request_data):
        with pytest.raises(CompositionCancelled):
            composer.compose(
                request_data, should_cancel=lambda: "render_graph" in fake_toolchain.names
            )

        assert exports(config) == []
        assert composer.arbiter.arena.reserved() == set()


class TestComposerErrors:
    """Test failure reporting."""

    def test_invalid_request(self, composer):
        with pytest.raises(InvalidRequest):
            composer.compose(payload([]))

    def test_unresolved_source(self, composer, fake_toolchain):
        with pytest.raises(SourceUnresolved):
            composer.compose(payload([animated("missing.gif", 1, "L1")]))
        assert fake_toolchain.calls == []

    def test_corrupt_store_entry_is_deleted(self, composer, config, fake_toolchain, store_entry):
        media = store_entry("abc", "clip.gif")
        fake_toolchain.corrupt.add(os.path.abspath(media))
        layer = dict(animated("clip.gif", 1, "L1"), cacheId="abc")

        with pytest.raises(CorruptSource):
            composer.compose(payload([layer]))

        assert not os.path.exists(media)
        assert exports(config) == []


class TestBuildPlan:
    """Test layer grouping into base, entries and top."""

    @pytest.fixture
    def timing(self):
        return SourceTiming.uniform(5, 10)

    def _prepared(self, request, timing):
        prepared = []
        for layer in request.animated_layers:
            source = ResolvedSource(path=layer.filename, size=1, mtime=0.0, strategy="test")
            prepared.append(
                PreparedLayer(
                    layer=layer,
                    source=source,
                    geometry=resolve_geometry(layer, 100, 80),
                    normalized=layer.filename,
                    timing=timing,
                )
            )
        return prepared

    def _rasters(self, request):
        rasters = [
            RasterLayer(kind=LayerKind.STATIC, z_index=s.z_index, path=f"s{s.z_index}.png")
            for s in request.static_layers
        ]
        rasters += [
            RasterLayer(
                kind=LayerKind.ANNOTATION,
                z_index=a.z_index,
                path=f"n{a.z_index}.png",
                layer_id=a.layer_id,
            )
            for a in request.annotation_layers
        ]
        return rasters

    def _request(self, **extra):
        return CompositionRequest.model_validate(
            payload(
                [animated("a.gif", 1, "a1", x=0, y=0), animated("b.gif", 3, "a3", x=0, y=0)],
                staticLayers=[
                    {"bytes": PNG, "index": 0},
                    {"bytes": PNG, "index": 2},
                    {"bytes": PNG, "index": 4},
                ],
                annotationLayers=[{"bytes": PNG, "index": 5, "layerId": "n5"}],
                **extra,
            )
        )

    def _build(self, media_ctx, toolchain, request, timing, **kwargs):
        job = media_ctx.job()
        timeline = reconcile([timing, timing])
        return build_plan(
            job,
            toolchain,
            request,
            self._prepared(request, timing),
            self._rasters(request),
            timeline,
            **kwargs,
        )

    def test_ungated_layers_collapse(self, media_ctx, fake_toolchain, timing):
        request = self._request()
        plan = self._build(media_ctx, fake_toolchain, request, timing, legacy_top="legacy.png")

        assert [e.z_index for e in plan.entries] == [1, 2, 3]
        base_call, top_call = fake_toolchain.calls_to("merge_rasters")
        assert base_call[3] == ["s0.png"]
        assert top_call[3] == ["s4.png", "n5.png", "legacy.png"]
        assert plan.top == top_call[0]

    def test_gated_annotation_stays_separate(self, media_ctx, fake_toolchain, timing):
        request = self._request(timelineData={"n5": {"start": 0, "end": 50}})
        plan = self._build(media_ctx, fake_toolchain, request, timing, bottom="bottom.png")

        assert [e.kind for e in plan.entries] == [
            LayerKind.ANIMATED,
            LayerKind.STATIC,
            LayerKind.ANIMATED,
            LayerKind.STATIC,
            LayerKind.ANNOTATION,
        ]
        assert plan.entries[-1].window == (0, 2)
        assert plan.top is None
        (base_call,) = fake_toolchain.calls_to("merge_rasters")
        assert base_call[3] == ["bottom.png", "s0.png"]

    def test_clipped_away_layer_dropped(self, media_ctx, fake_toolchain, timing):
        request = self._request()
        hidden = request.animated_layers[1].model_copy(
            update={"clip_bounds": request.canvas.model_copy(update={"x": 5000})}
        )
        request.animated_layers[1] = hidden

        plan = self._build(media_ctx, fake_toolchain, request, timing)

        assert LayerKind.ANIMATED in [e.kind for e in plan.entries]
        assert [e.z_index for e in plan.entries if e.animated] == [1]

    def test_frame_layers_follow_windows(self, media_ctx, fake_toolchain, timing):
        request = self._request(timelineData={"n5": {"start": 0, "end": 50}})
        plan = self._build(media_ctx, fake_toolchain, request, timing)
        strategy = FrameMaterializationStrategy(fake_toolchain)
        extracted = {0: ("dir_a", 5), 2: ("dir_b", 5)}

        early = strategy.frame_layers(plan, extracted, 1)
        late = strategy.frame_layers(plan, extracted, 3)

        assert early[-1] == ("n5.png", 0, 0)
        assert late[1] == (os.path.join("dir_a", "frame_0003.png"), 0, 0)
        assert late[-1] == ("s4.png", 0, 0)
        assert len(late) == len(early) - 1


def test_animated_layer_model_accepts_plugin_names():
    layer = AnimatedLayer.model_validate(animated("a.gif", 7, "x"))
    assert (layer.z_index, layer.layer_id) == (7, "x")
