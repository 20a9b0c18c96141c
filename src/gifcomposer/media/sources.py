"""Source lookup: map an animated layer's locator hints to a media file."""

import json
import logging
import os
import re
from typing import Dict, Iterator, List, Optional, Tuple
from pydantic import BaseModel

from ..core.config import ComposerConfig
from ..core.errors import SourceUnresolved
from .models import AnimatedLayer

MEDIA_EXTENSIONS = (".gif", ".mov", ".mp4")
META_SUFFIX = ".meta.json"

_TRAILING_COUNTER = re.compile(r"_\d+$")
_RECORDING_STAMP = re.compile(r"\d{1,2}-\d{1,2}-\d{4}\s+\d{1,2}-\d{1,2}-\d{1,2}")
_NON_ALNUM = re.compile(r"[^a-zA-Z0-9]")

SINGLE_LAYER_HINT = (
    "Single animation: put the video/GIF into the sync folder. If it is the "
    "only video/GIF there, it does not need to be renamed."
)
MULTI_LAYER_HINT = (
    "Several animations: every animated layer needs a source file named "
    "after the layer."
)


class ResolvedSource(BaseModel):
    """The concrete media file an animated layer maps to."""

    path: str
    size: int
    mtime: float
    strategy: str

    @staticmethod
    def from_path(path: str, strategy: str) -> "ResolvedSource":
        st = os.stat(path)
        return ResolvedSource(
            path=os.path.abspath(path),
            size=st.st_size,
            mtime=st.st_mtime,
            strategy=strategy,
        )

    @property
    def ext(self) -> str:
        return os.path.splitext(self.path)[1].lower()


def is_media_file(name: str) -> bool:
    return os.path.splitext(name)[1].lower() in MEDIA_EXTENSIONS


def is_export_artifact(name: str, prefix: str = "ExportedGIF") -> bool:
    """Hidden files and our own exports are never treated as sources."""
    lower = name.lower()
    return (
        name.startswith(".")
        or "_exported" in lower
        or "exportedgif" in lower
        or lower.startswith(prefix.lower())
    )


class SourceStore:
    """
    Keyed store of synced media.

    The store directory holds ``<cacheId><ext>`` files next to a
    ``<cacheId>.meta.json`` sidecar written by the sync service::

        {"cacheId": "...", "originalFilename": "...", "driveFileId": "...",
         "ext": ".gif", "size": 12345, "timestamp": 1700000000000}
    """

    def __init__(self, config: ComposerConfig, logger: Optional[logging.Logger] = None):
        self.config = config
        self.root = config.store_dir
        self.logger = logger or logging.getLogger("gifcomposer.sources")

    def _meta_files(self) -> Iterator[Tuple[str, Dict]]:
        if not os.path.isdir(self.root):
            return
        for name in sorted(os.listdir(self.root)):
            if not name.endswith(META_SUFFIX):
                continue
            meta_path = os.path.join(self.root, name)
            try:
                with open(meta_path, "r", encoding="utf-8") as f:
                    yield name[: -len(META_SUFFIX)], json.load(f)
            except (OSError, ValueError) as e:
                self.logger.warning(f"Skipping unreadable cache metadata {name}: {e}")

    def _media_for(self, cache_id: str, meta: Optional[Dict] = None) -> Optional[str]:
        """Media path stored under ``cache_id`` (meta ext first, then any media ext)."""
        exts = []
        if meta and meta.get("ext"):
            exts.append(meta["ext"] if meta["ext"].startswith(".") else "." + meta["ext"])
        exts.extend(e for e in MEDIA_EXTENSIONS if e not in exts)
        for ext in exts:
            candidate = os.path.join(self.root, cache_id + ext)
            if os.path.isfile(candidate):
                return candidate
        return None

    def _usable(self, path: Optional[str], cache_id: str) -> Optional[str]:
        """Reject zero-byte entries, which are left behind by interrupted syncs."""
        if path is None:
            return None
        if os.path.getsize(path) == 0:
            self.logger.warning(f"Discarding empty cache entry: {path}")
            self.discard(cache_id)
            return None
        return path

    def find_by_cache_id(self, cache_id: str) -> Optional[str]:
        meta_path = os.path.join(self.root, cache_id + META_SUFFIX)
        meta = None
        if os.path.isfile(meta_path):
            try:
                with open(meta_path, "r", encoding="utf-8") as f:
                    meta = json.load(f)
            except (OSError, ValueError):
                meta = None
        return self._usable(self._media_for(cache_id, meta), cache_id)

    def find_by_filename(self, filename: str) -> Optional[str]:
        """Entry whose original filename equals ``filename`` or shares its stem."""
        stem = os.path.splitext(filename)[0]
        same_stem = None
        for cache_id, meta in self._meta_files():
            original = meta.get("originalFilename") or ""
            if original == filename:
                found = self._usable(self._media_for(cache_id, meta), cache_id)
                if found:
                    return found
            elif same_stem is None and original and os.path.splitext(original)[0] == stem:
                same_stem = (cache_id, meta)
        if same_stem:
            return self._usable(self._media_for(*same_stem), same_stem[0])
        return None

    def find_by_foreign_id(self, foreign_id: str) -> Optional[str]:
        for cache_id, meta in self._meta_files():
            if foreign_id in (meta.get("driveFileId"), meta.get("ossFileId")):
                found = self._usable(self._media_for(cache_id, meta), cache_id)
                if found:
                    return found
        return None

    def discard(self, cache_id: str) -> None:
        """Remove an entry's media and metadata."""
        for ext in MEDIA_EXTENSIONS + (META_SUFFIX,):
            path = os.path.join(self.root, cache_id + ext)
            if os.path.exists(path):
                try:
                    os.remove(path)
                except OSError as e:
                    self.logger.warning(f"Could not remove {path}: {e}")

    def discard_path(self, path: str) -> bool:
        """Remove the entry owning ``path`` if it lives in the store."""
        path = os.path.abspath(path)
        if os.path.dirname(path) != os.path.abspath(self.root):
            return False
        self.discard(os.path.splitext(os.path.basename(path))[0])
        return True


def _clean_stem(name: str) -> str:
    stem = os.path.splitext(name)[0]
    return _TRAILING_COUNTER.sub("", stem)


def fuzzy_match(target: str, candidate: str) -> bool:
    """
    Whether a file in a drop folder plausibly is the requested source.

    Args:
        target: Declared filename of the layer
        candidate: Name of a file in a drop folder

    Returns:
        True on exact name, same cleaned stem, containment, loose alphanumeric
        containment or matching screen-recording timestamp
    """
    if candidate == target:
        return True
    target_ext = os.path.splitext(target)[1].lower()
    if target_ext and target_ext not in MEDIA_EXTENSIONS:
        return False

    want = _clean_stem(target)
    have = _clean_stem(candidate)
    if not want or not have:
        return False
    if want == have or want in have or have in want:
        return True

    want_simple = _NON_ALNUM.sub("", want).lower()
    have_simple = _NON_ALNUM.sub("", have).lower()
    if len(want_simple) > 5 and len(have_simple) > 5:
        if want_simple in have_simple or have_simple in want_simple:
            return True

    want_stamp = _RECORDING_STAMP.search(want)
    have_stamp = _RECORDING_STAMP.search(have)
    return bool(want_stamp and have_stamp and want_stamp.group(0) == have_stamp.group(0))


class SourceResolver:
    """Resolves layers through an ordered chain of lookup strategies."""

    def __init__(
        self,
        store: SourceStore,
        config: Optional[ComposerConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.store = store
        self.config = config or store.config
        self.logger = logger or logging.getLogger("gifcomposer.sources")

    def _drop_candidates(self) -> Iterator[str]:
        """Media files in the drop folders, skipping hidden files and exports."""
        seen = set()
        for folder in self.config.drop_dirs:
            if not os.path.isdir(folder):
                continue
            for name in sorted(os.listdir(folder)):
                path = os.path.join(folder, name)
                if path in seen or not os.path.isfile(path):
                    continue
                if is_export_artifact(name, self.config.output_prefix):
                    continue
                if is_media_file(name):
                    seen.add(path)
                    yield path

    def _probe_foreign(self, foreign_id: str) -> Optional[str]:
        found = self.store.find_by_foreign_id(foreign_id)
        if found:
            return found
        for folder in self.config.probe_dirs:
            direct = os.path.join(folder, foreign_id)
            if os.path.isfile(direct):
                return direct
            for ext in MEDIA_EXTENSIONS:
                if os.path.isfile(direct + ext):
                    return direct + ext
        return None

    def _fuzzy(self, filename: str) -> Optional[str]:
        for path in self._drop_candidates():
            if fuzzy_match(filename, os.path.basename(path)):
                if os.path.basename(path) != filename:
                    self.logger.info(
                        f"Matched '{filename}' to '{os.path.basename(path)}'"
                    )
                return path
        return None

    def resolve(self, layer: AnimatedLayer, single_layer: bool = False) -> ResolvedSource:
        """
        Find the media file for ``layer``.

        Args:
            layer: Animated layer descriptor
            single_layer: The request has exactly one animated layer, which
                enables the "only candidate" heuristic

        Returns:
            ResolvedSource

        Raises:
            SourceUnresolved: Every strategy failed
        """
        attempted: List[str] = []

        if layer.cache_id:
            attempted.append(f"cache id ({layer.cache_id})")
            path = self.store.find_by_cache_id(layer.cache_id)
            if path:
                return ResolvedSource.from_path(path, "cache_id")

        if layer.filename:
            attempted.append(f"filename ({layer.filename})")
            path = self.store.find_by_filename(layer.filename)
            if path:
                return ResolvedSource.from_path(path, "filename")

        for foreign_id in layer.foreign_ids:
            attempted.append(f"foreign id ({foreign_id})")
            path = self._probe_foreign(foreign_id)
            if path:
                return ResolvedSource.from_path(path, "foreign_id")

        if layer.filename:
            attempted.append("fuzzy filename search")
            path = self._fuzzy(layer.filename)
            if path:
                return ResolvedSource.from_path(path, "fuzzy")

        if single_layer:
            attempted.append("single candidate in sync folder")
            candidates = list(self._drop_candidates())
            if len(candidates) == 1:
                return ResolvedSource.from_path(candidates[0], "single_candidate")

        locations = [self.store.root] + list(self.config.probe_dirs)
        locations += [d for d in self.config.drop_dirs if d not in locations]
        raise SourceUnresolved(
            layer.label,
            attempted,
            locations,
            SINGLE_LAYER_HINT if single_layer else MULTI_LAYER_HINT,
        )
