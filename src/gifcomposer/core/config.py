"""Engine configuration with directory layout and concurrency defaults."""

import os
from pathlib import Path
from typing import List, Optional
from pydantic import BaseModel, Field, model_validator


def _default_max_parallel() -> int:
    return max(1, min(8, os.cpu_count() or 1))


def _default_frame_batch_size() -> int:
    return min(64, max(16, (os.cpu_count() or 1) * 4))


class ComposerConfig(BaseModel):
    """Configuration for a Composer engine.

    Every directory defaults to a location below ``source_root``, which is the
    folder the sync service drops media into.
    """

    source_root: str = Field(
        default_factory=lambda: str(Path.home() / "ScreenSyncImg")
    )
    output_dir: Optional[str] = None
    store_dir: Optional[str] = None
    cache_dir: Optional[str] = None
    probe_dirs: List[str] = Field(default_factory=list)
    drop_dirs: List[str] = Field(default_factory=list)

    output_prefix: str = "ExportedGIF"
    output_ext: str = "gif"

    max_parallel: int = Field(default_factory=_default_max_parallel, ge=1)
    frame_batch_size: int = Field(default_factory=_default_frame_batch_size, ge=1)
    request_timeout: float = Field(default=1800.0, gt=0)
    lossy: int = Field(default=80, ge=0, le=200)

    ffmpeg: str = "ffmpeg"
    ffprobe: str = "ffprobe"
    gifsicle: Optional[str] = "gifsicle"

    @model_validator(mode="after")
    def _fill_directories(self) -> "ComposerConfig":
        """Derive unset directories from source_root."""
        root = Path(self.source_root)
        if self.output_dir is None:
            self.output_dir = str(root / "exports")
        if self.store_dir is None:
            self.store_dir = str(root / ".gif_cache")
        if self.cache_dir is None:
            self.cache_dir = str(root / ".gif_process_cache")
        if not self.probe_dirs:
            self.probe_dirs = [
                self.output_dir,
                str(root / "videos"),
                str(root / "gifs"),
                str(root / "images"),
                str(root),
            ]
        if not self.drop_dirs:
            self.drop_dirs = [str(root), str(root / "videos"), str(root / "gifs")]
        return self

    @staticmethod
    def from_env(**overrides) -> "ComposerConfig":
        """
        Build a configuration from GIFCOMPOSER_* environment variables.

        Args:
            **overrides: Explicit values that win over the environment

        Returns:
            ComposerConfig instance
        """
        env_map = {
            "source_root": "GIFCOMPOSER_SOURCE_ROOT",
            "output_dir": "GIFCOMPOSER_OUTPUT_DIR",
            "store_dir": "GIFCOMPOSER_STORE_DIR",
            "cache_dir": "GIFCOMPOSER_CACHE_DIR",
            "output_prefix": "GIFCOMPOSER_OUTPUT_PREFIX",
            "max_parallel": "GIFCOMPOSER_MAX_PARALLEL",
            "frame_batch_size": "GIFCOMPOSER_FRAME_BATCH_SIZE",
            "request_timeout": "GIFCOMPOSER_REQUEST_TIMEOUT",
            "lossy": "GIFCOMPOSER_LOSSY",
            "ffmpeg": "GIFCOMPOSER_FFMPEG",
            "ffprobe": "GIFCOMPOSER_FFPROBE",
            "gifsicle": "GIFCOMPOSER_GIFSICLE",
        }
        values = {}
        for field_name, var in env_map.items():
            value = os.getenv(var)
            if value:
                values[field_name] = value

        list_map = {
            "probe_dirs": "GIFCOMPOSER_PROBE_DIRS",
            "drop_dirs": "GIFCOMPOSER_DROP_DIRS",
        }
        for field_name, var in list_map.items():
            value = os.getenv(var)
            if value:
                values[field_name] = [p for p in value.split(os.pathsep) if p]

        values.update(overrides)
        return ComposerConfig(**values)
