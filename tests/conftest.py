"""Shared test fixtures and configuration."""

import json
import os
import tempfile
import threading

import pytest

from gifcomposer.core import ComposerConfig
from gifcomposer.media.context import MediaContext
from gifcomposer.media.toolchain import MediaInfo, Toolchain

# Auto-load .env file for tests
try:
    from dotenv import load_dotenv

    load_dotenv()  # Load .env file automatically
except ImportError:
    pass  # dotenv not available, use regular env vars


@pytest.fixture
def temp_dir():
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmp_dir:
        yield tmp_dir


@pytest.fixture
def config(temp_dir):
    """Engine configuration rooted in the temporary directory."""
    return ComposerConfig(
        source_root=temp_dir, max_parallel=2, frame_batch_size=4, request_timeout=60
    )


@pytest.fixture
def media_ctx(temp_dir):
    """Media context that skips binary verification."""
    ctx = MediaContext(tmp_root=temp_dir, gifsicle=None, verify=False)
    yield ctx
    ctx.cleanup()


@pytest.fixture
def fake_toolchain():
    """Toolchain double that records calls and writes placeholder files."""
    return FakeToolchain()


@pytest.fixture
def store_entry(config):
    """Factory creating entries in the configured source store."""

    def factory(cache_id, original_filename, ext=".gif", data=b"GIF89a", **meta):
        return add_store_entry(config, cache_id, original_filename, ext, data, **meta)

    return factory


def write_file(path, data=b"GIF89a-test"):
    """Write ``data`` to ``path``, creating parent directories."""
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "wb") as f:
        f.write(data)
    return path


def add_store_entry(config, cache_id, original_filename, ext=".gif", data=b"GIF89a", **meta):
    """Create a synced media entry plus its metadata sidecar."""
    media = write_file(os.path.join(config.store_dir, cache_id + ext), data)
    sidecar = {"cacheId": cache_id, "originalFilename": original_filename, "ext": ext}
    sidecar.update(meta)
    with open(os.path.join(config.store_dir, cache_id + ".meta.json"), "w") as f:
        json.dump(sidecar, f)
    return media


class FakeToolchain(Toolchain):
    """
    In-memory toolchain for engine tests.

    Every operation checks cancellation like a real invocation would, records
    ``(name, args)`` and writes a placeholder output file.
    """

    def __init__(self, info=None):
        self.default_info = info or MediaInfo(width=100, height=80, delays=[10] * 5)
        self.infos = {}
        self.corrupt = set()
        self.graph_support = True
        self.graph_error = None
        self.calls = []
        self._lock = threading.Lock()

    def _record(self, job, name, *args):
        job.check_cancelled()
        with self._lock:
            self.calls.append((name, args))

    @property
    def names(self):
        with self._lock:
            return [name for name, _ in self.calls]

    def calls_to(self, name):
        with self._lock:
            return [args for n, args in self.calls if n == name]

    def probe(self, job, path):
        self._record(job, "probe", path)
        if path in self.corrupt:
            from gifcomposer.core.errors import CorruptSource

            raise CorruptSource(path, "Invalid data found when processing input")
        return self.infos.get(os.path.basename(path), self.default_info)

    def normalize(self, job, src, out, width, height, delay, encoder):
        self._record(job, "normalize", src, out, width, height, delay)
        write_file(out)

    def transform(self, job, src, geometry, out):
        self._record(job, "transform", src, geometry, out)
        if geometry.is_identity:
            return src
        write_file(out)
        return out

    def merge_rasters(self, job, out, width, height, rasters=(), background=None):
        self._record(job, "merge_rasters", out, width, height, list(rasters), background)
        write_file(out, b"PNG")
        return out

    def overlay_animation(
        self, job, base, animation, position, top, frames, delay, out, encoder
    ):
        self._record(
            job, "overlay_animation", base, animation, position, top, frames, delay
        )
        write_file(out)

    def supports_filter_graph(self, job):
        self._record(job, "supports_filter_graph")
        return self.graph_support

    def render_graph(self, job, plan, out, encoder):
        self._record(job, "render_graph", plan)
        if self.graph_error is not None:
            raise self.graph_error
        write_file(out)

    def extract_frames(self, job, src, geometry, out_dir):
        self._record(job, "extract_frames", src, out_dir)
        for i in range(3):
            write_file(os.path.join(out_dir, f"frame_{i:04d}.png"), b"PNG")
        return 3

    def composite_frame(self, job, layers, out):
        self._record(job, "composite_frame", list(layers), out)
        write_file(out, b"PNG")

    def encode_frames(self, job, frames_dir, count, delay, out, encoder):
        self._record(job, "encode_frames", frames_dir, count, delay)
        write_file(out)

    def optimize(self, job, path, encoder):
        self._record(job, "optimize", path)
        return False
