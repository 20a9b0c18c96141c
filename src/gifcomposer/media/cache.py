"""Fingerprint-keyed on-disk cache of normalized layer sources."""

import hashlib
import logging
import os
import uuid
from typing import Optional

from ..core.errors import CorruptSource
from .context import JobContext
from .encoders import EncoderProfile
from .sources import ResolvedSource
from .toolchain import Toolchain

CACHE_VERSION = "v2"


class ConversionCache:
    """
    Normalized intermediates, one per (source, size, palette profile).

    Entries are written to a temporary name and renamed into place, so
    concurrent requests converting the same source can only ever observe a
    complete file; the loser of the race simply overwrites an identical one.
    """

    def __init__(
        self,
        cache_dir: str,
        toolchain: Toolchain,
        logger: Optional[logging.Logger] = None,
    ):
        self.cache_dir = cache_dir
        self.toolchain = toolchain
        self.logger = logger or logging.getLogger("gifcomposer.cache")

    @staticmethod
    def key(
        source: ResolvedSource, width: int, height: int, encoder: EncoderProfile
    ) -> str:
        """md5 over the source identity, target size and palette settings."""
        mtime_ms = int(source.mtime * 1000)
        raw = (
            f"{CACHE_VERSION}_{source.path}_{source.size}_{mtime_ms}"
            f"_{width}x{height}_{encoder.cache_tag}"
        )
        return hashlib.md5(raw.encode("utf-8")).hexdigest()

    def path_for(self, key: str) -> str:
        return os.path.join(self.cache_dir, f"{key}.gif")

    def lookup(
        self, source: ResolvedSource, width: int, height: int, encoder: EncoderProfile
    ) -> Optional[str]:
        path = self.path_for(self.key(source, width, height, encoder))
        if os.path.isfile(path) and os.path.getsize(path) > 0:
            return path
        return None

    def normalize(
        self,
        job: JobContext,
        source: ResolvedSource,
        width: int,
        height: int,
        delay: int,
        encoder: EncoderProfile,
    ) -> str:
        """
        Return the normalized intermediate, converting on a miss.

        Args:
            job: Job context
            source: Resolved source file
            width: Normalized width
            height: Normalized height
            delay: Uniform frame delay in ticks
            encoder: Palette profile

        Returns:
            Path to the cached intermediate

        Raises:
            CorruptSource: The source cannot be decoded
        """
        key = self.key(source, width, height, encoder)
        final = self.path_for(key)
        if os.path.isfile(final) and os.path.getsize(final) > 0:
            job.logger.debug(f"Cache hit for {os.path.basename(source.path)}: {key}")
            return final

        os.makedirs(self.cache_dir, exist_ok=True)
        tmp = os.path.join(self.cache_dir, f".{key}.{uuid.uuid4().hex}.gif")
        job.logger.info(
            f"Converting {os.path.basename(source.path)} -> {width}x{height} "
            f"(cache miss)"
        )
        try:
            self.toolchain.normalize(job, source.path, tmp, width, height, delay, encoder)
            os.replace(tmp, final)
        finally:
            if os.path.exists(tmp):
                os.remove(tmp)
        return final

    def invalidate(self, path: str) -> bool:
        """Delete a damaged entry; True when ``path`` belonged to this cache."""
        path = os.path.abspath(path)
        if os.path.dirname(path) != os.path.abspath(self.cache_dir):
            return False
        if os.path.exists(path):
            os.remove(path)
            self.logger.warning(f"Deleted corrupt cache entry: {path}")
        return True


def discard_corrupt(error: CorruptSource, cache: ConversionCache, store) -> None:
    """Delete whichever cache or store entry a CorruptSource points at."""
    if cache.invalidate(error.path):
        return
    store.discard_path(error.path)
