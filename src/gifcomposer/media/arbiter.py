"""Output naming: collision-free sequential filenames and repeat detection."""

import hashlib
import json
import logging
import os
import re
import shutil
import threading
import uuid
from typing import Any, Dict, Iterable, Optional, Set, Tuple
from pydantic import BaseModel

from .models import CompositionRequest, CompositionResult

INDEX_FILE = ".gifcomposer-index.json"


class Reservation(BaseModel):
    """A sequence slot held by one in-flight request."""

    directory: str
    number: int
    filename: str

    @property
    def path(self) -> str:
        return os.path.join(self.directory, self.filename)


class ReservationArena:
    """
    Engine-wide set of reserved output slots.

    A slot is the first sequence number that is neither taken on disk nor
    reserved by another running request. All access goes through a lock.
    """

    def __init__(self, prefix: str = "ExportedGIF", ext: str = "gif"):
        self.prefix = prefix
        self.ext = ext
        self._pattern = re.compile(
            rf"^{re.escape(prefix)}_(\d+)\.{re.escape(ext)}$", re.IGNORECASE
        )
        self._lock = threading.Lock()
        self._reserved: Set[Tuple[str, int]] = set()

    def filename(self, number: int) -> str:
        return f"{self.prefix}_{number:03d}.{self.ext}"

    def _used_on_disk(self, directory: str) -> Set[int]:
        if not os.path.isdir(directory):
            return set()
        used = set()
        for name in os.listdir(directory):
            match = self._pattern.match(name)
            if match:
                used.add(int(match.group(1)))
        return used

    def reserve(self, directory: str) -> Reservation:
        directory = os.path.abspath(directory)
        with self._lock:
            used = self._used_on_disk(directory)
            number = 1
            while number in used or (directory, number) in self._reserved:
                number += 1
            self._reserved.add((directory, number))
        return Reservation(directory=directory, number=number, filename=self.filename(number))

    def release(self, reservation: Reservation) -> None:
        with self._lock:
            self._reserved.discard((reservation.directory, reservation.number))

    def exists(self, reservation: Reservation) -> bool:
        return os.path.exists(reservation.path)

    def reserved(self) -> Set[Tuple[str, int]]:
        with self._lock:
            return set(self._reserved)


def _digestable(value: Any) -> Any:
    """Replace raw bytes with their digest so a payload can be hashed as JSON."""
    if isinstance(value, (bytes, bytearray)):
        return "md5:" + hashlib.md5(value).hexdigest()
    if isinstance(value, dict):
        return {str(k): _digestable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_digestable(v) for v in value]
    return value


def request_fingerprint(
    request: CompositionRequest, sources: Iterable[Any], profile_tag: str
) -> str:
    """
    Hash everything that determines the output of a request.

    Args:
        request: The composition request
        sources: Resolved sources, in animated-layer order
        profile_tag: Encoder cache tag

    Returns:
        Hex digest
    """
    payload = {
        "request": _digestable(request.model_dump(exclude={"frame_name"})),
        "sources": [[s.path, s.size, int(s.mtime * 1000)] for s in sources],
        "profile": profile_tag,
    }
    raw = json.dumps(payload, sort_keys=True, default=str)
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


class OutputArbiter:
    """Reserves output slots, recognises repeats and moves results into place."""

    def __init__(
        self,
        output_dir: str,
        arena: Optional[ReservationArena] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.output_dir = os.path.abspath(output_dir)
        self.arena = arena or ReservationArena()
        self.logger = logger or logging.getLogger("gifcomposer.arbiter")
        self._index_lock = threading.Lock()

    @property
    def index_path(self) -> str:
        return os.path.join(self.output_dir, INDEX_FILE)

    def reserve(self) -> Reservation:
        os.makedirs(self.output_dir, exist_ok=True)
        reservation = self.arena.reserve(self.output_dir)
        self.logger.debug(f"Reserved {reservation.filename}")
        return reservation

    def release(self, reservation: Reservation) -> None:
        self.arena.release(reservation)

    def _read_index(self) -> Dict[str, Dict[str, Any]]:
        try:
            with open(self.index_path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            return {}
        except (OSError, ValueError) as e:
            self.logger.warning(f"Ignoring unreadable output index: {e}")
            return {}
        if not isinstance(data, dict):
            return {}
        return {k: v for k, v in data.items() if isinstance(v, dict) and v.get("filename")}

    def _record(self, fingerprint: str, filename: str) -> None:
        stat = os.stat(os.path.join(self.output_dir, filename))
        with self._index_lock:
            # A filename belongs to exactly one fingerprint
            index = {
                k: v for k, v in self._read_index().items() if v["filename"] != filename
            }
            index[fingerprint] = {
                "filename": filename,
                "size": stat.st_size,
                "mtime_ns": stat.st_mtime_ns,
            }
            tmp = f"{self.index_path}.{uuid.uuid4().hex}.tmp"
            with open(tmp, "w", encoding="utf-8") as f:
                json.dump(index, f, indent=2, sort_keys=True)
            os.replace(tmp, self.index_path)

    def lookup(self, fingerprint: str) -> Optional[CompositionResult]:
        """
        A previously produced output for an identical request.

        The recorded size and modification time must still match the file on
        disk; a slot that was deleted and reused by another request is not a
        repeat.

        Args:
            fingerprint: Request fingerprint

        Returns:
            Skipped CompositionResult when the earlier output is still on disk
        """
        entry = self._read_index().get(fingerprint)
        if not entry:
            return None
        filename = entry["filename"]
        path = os.path.join(self.output_dir, filename)
        try:
            stat = os.stat(path)
        except OSError:
            return None
        if stat.st_size != entry.get("size") or stat.st_mtime_ns != entry.get("mtime_ns"):
            self.logger.debug(f"{filename} changed since it was recorded, not a repeat")
            return None
        return CompositionResult(path=path, filename=filename, size=stat.st_size, skipped=True)

    def _skipped(self, reservation: Reservation) -> CompositionResult:
        self.logger.info(f"{reservation.filename} already exists, skipping write")
        return CompositionResult(
            path=reservation.path,
            filename=reservation.filename,
            size=os.path.getsize(reservation.path),
            skipped=True,
        )

    def finalize(
        self, reservation: Reservation, produced: str, fingerprint: Optional[str] = None
    ) -> CompositionResult:
        """
        Move a produced file into its reserved slot.

        The copy lands under a hidden name first and is hard-linked into place,
        so the target is either absent or complete and an existing file is
        never overwritten.

        Args:
            reservation: Slot reserved for this request
            produced: Path of the finished output in the working directory
            fingerprint: Request fingerprint to record for repeat detection

        Returns:
            CompositionResult (skipped when the target appeared meanwhile)
        """
        if self.arena.exists(reservation):
            return self._skipped(reservation)

        target = reservation.path
        staging = os.path.join(reservation.directory, f".{reservation.filename}.{uuid.uuid4().hex}")
        try:
            shutil.copyfile(produced, staging)
            try:
                os.link(staging, target)
            except FileExistsError:
                return self._skipped(reservation)
        finally:
            if os.path.exists(staging):
                os.remove(staging)

        if fingerprint:
            self._record(fingerprint, reservation.filename)
        return CompositionResult(
            path=target,
            filename=reservation.filename,
            size=os.path.getsize(target),
            skipped=False,
        )
