from __future__ import annotations

import json
import os
import re
import shutil
import socket
import threading
import zlib
from collections import OrderedDict
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, Iterator, Optional, Tuple

from common.errors import CacheBudgetViolation, RenderFailure
from common.logging_setup import get_logger
from common.types import CacheStats, CanvasArtifact, CanvasId, RenderRequest
from canvas_cache.renderer import CanvasRenderer


log = get_logger(__name__)

RequestFactory = Callable[[CanvasId], RenderRequest]

_SAFE = re.compile(r"[^A-Za-z0-9._-]+")
_EXT = {"png": ".png", "jpg": ".jpg", "tif": ".tif"}


@dataclass
class _Flight:
    """An in-progress render that concurrent callers for the same id wait on."""
    done: threading.Event = field(default_factory=threading.Event)
    artifact: Optional[CanvasArtifact] = None
    error: Optional[BaseException] = None


class CanvasArtifactCache:
    """
    Worker-local, byte-budgeted cache of rendered canvases.

        root/
          └─ {groupId}/
              ├─ {id}_{crc}.png    (raster)
              └─ {id}_{crc}.json   (render metadata)

    Entries are rendered lazily on first request and evicted least-recently-used
    first whenever an insertion pushes resident bytes over `max_bytes`. Entries
    pinned via `pinned()` are never evicted. Concurrent misses for the same id
    share a single render.
    """

    def __init__(
        self,
        root: Path,
        max_bytes: int,
        renderer: CanvasRenderer,
        request_factory: RequestFactory,
    ):
        if max_bytes <= 0:
            raise ValueError("max_bytes must be > 0")
        self.root = Path(root)
        self.max_bytes = int(max_bytes)
        self._renderer = renderer
        self._request_factory = request_factory

        self._lock = threading.Lock()
        self._entries: "OrderedDict[CanvasId, CanvasArtifact]" = OrderedDict()
        self._pins: Dict[CanvasId, int] = {}
        self._inflight: Dict[CanvasId, _Flight] = {}
        self._resident = 0
        self._hits = 0
        self._misses = 0
        self._evictions = 0
        self._closed = False

    # -------- public API --------

    def get(self, canvas_id: CanvasId) -> CanvasArtifact:
        """Return the cached artifact for `canvas_id`, rendering it on a miss."""
        with self._lock:
            self._check_open()
            art = self._entries.get(canvas_id)
            if art is not None:
                self._entries.move_to_end(canvas_id)
                self._hits += 1
                return art
            flight = self._inflight.get(canvas_id)
            leader = flight is None
            if leader:
                flight = _Flight()
                self._inflight[canvas_id] = flight
                self._misses += 1
            else:
                # coalesced onto someone else's render
                self._hits += 1

        if not leader:
            flight.done.wait()
            if flight.error is not None:
                raise flight.error
            return flight.artifact  # type: ignore[return-value]

        try:
            art = self._render(canvas_id)
            with self._lock:
                self._insert(art)
        except BaseException as e:
            with self._lock:
                self._inflight.pop(canvas_id, None)
            flight.error = e
            flight.done.set()
            raise
        with self._lock:
            self._inflight.pop(canvas_id, None)
        flight.artifact = art
        flight.done.set()
        return art

    @contextmanager
    def pinned(self, canvas_id: CanvasId) -> Iterator[CanvasArtifact]:
        """Yield the artifact for `canvas_id`; it cannot be evicted until the block exits."""
        while True:
            art = self.get(canvas_id)
            with self._lock:
                if self._entries.get(canvas_id) is art:
                    self._pins[canvas_id] = self._pins.get(canvas_id, 0) + 1
                    break
            # evicted between render and pin: fetch again
        try:
            yield art
        finally:
            with self._lock:
                left = self._pins.get(canvas_id, 1) - 1
                if left <= 0:
                    self._pins.pop(canvas_id, None)
                else:
                    self._pins[canvas_id] = left

    def contains(self, canvas_id: CanvasId) -> bool:
        with self._lock:
            return canvas_id in self._entries

    def stats(self) -> CacheStats:
        with self._lock:
            return CacheStats(
                hits=self._hits,
                misses=self._misses,
                evictions=self._evictions,
                bytes_resident=self._resident,
                entries=len(self._entries),
                max_bytes=self.max_bytes,
            )

    def close(self) -> None:
        """Delete every artifact and the storage root. Safe to call repeatedly."""
        with self._lock:
            self._entries.clear()
            self._pins.clear()
            self._resident = 0
            self._closed = True
        remove_tree(self.root)

    @property
    def closed(self) -> bool:
        return self._closed

    # -------- internals --------

    def _check_open(self) -> None:
        if self._closed:
            raise RuntimeError(f"cache at {self.root} is closed")

    def _paths_for(self, canvas_id: CanvasId, image_format: str) -> Tuple[Path, Path]:
        ext = _EXT.get(image_format, f".{image_format}")
        crc = zlib.crc32(f"{canvas_id.group_id}/{canvas_id.id}".encode("utf-8"))
        stem = f"{_SAFE.sub('_', canvas_id.id)}_{crc:08x}"
        d = self.root / _SAFE.sub("_", canvas_id.group_id or "_")
        return d / f"{stem}{ext}", d / f"{stem}.json"

    def _render(self, canvas_id: CanvasId) -> CanvasArtifact:
        request = self._request_factory(canvas_id)
        path, meta_path = self._paths_for(canvas_id, request.image_format)
        try:
            meta = self._renderer.render(request, path)
            meta_path.parent.mkdir(parents=True, exist_ok=True)
            meta_path.write_text(json.dumps(meta, default=str))
            size = path.stat().st_size + meta_path.stat().st_size
        except RenderFailure:
            _unlink(path, meta_path)
            raise
        except (OSError, ValueError) as e:
            _unlink(path, meta_path)
            raise RenderFailure(str(canvas_id), f"{type(e).__name__}: {e}") from e

        log.debug(
            "cache miss rendered",
            extra={"extra": {"canvas": str(canvas_id), "bytes": size, "path": str(path)}},
        )
        return CanvasArtifact(
            canvas_id=canvas_id,
            path=path,
            meta_path=meta_path,
            request=request,
            meta=meta,
            size_bytes=size,
        )

    def _insert(self, art: CanvasArtifact) -> None:
        # caller holds self._lock
        if self._closed:
            _unlink(art.path, art.meta_path)
            raise RuntimeError(f"cache at {self.root} was closed during render")
        self._entries[art.canvas_id] = art
        self._resident += art.size_bytes
        self._evict_to_budget(keep=art.canvas_id)
        if self._resident > self.max_bytes:
            self._drop(art.canvas_id)
            raise CacheBudgetViolation(
                self._resident + art.size_bytes,
                self.max_bytes,
                f"{art.canvas_id} ({art.size_bytes} bytes) does not fit beside "
                f"{len(self._pins)} pinned entries",
            )

    def _evict_to_budget(self, keep: CanvasId) -> None:
        if self._resident <= self.max_bytes:
            return
        for cid in list(self._entries.keys()):
            if self._resident <= self.max_bytes:
                break
            if cid == keep or self._pins.get(cid, 0) > 0:
                continue
            self._drop(cid)
            self._evictions += 1

    def _drop(self, canvas_id: CanvasId) -> None:
        art = self._entries.pop(canvas_id)
        self._resident -= art.size_bytes
        _unlink(art.path, art.meta_path)


def _unlink(*paths: Path) -> None:
    for p in paths:
        p.unlink(missing_ok=True)


def remove_tree(path: Path) -> None:
    """rmtree that tolerates the tree (or parts of it) vanishing concurrently."""
    for _ in range(3):
        try:
            shutil.rmtree(path)
        except FileNotFoundError:
            pass
        if not path.exists():
            return
    raise OSError(f"could not remove {path}")


# -------------------------
# Process-local shared caches
# -------------------------
_SHARED: Dict[Tuple[str, int], CanvasArtifactCache] = {}
_SHARED_LOCK = threading.Lock()


def worker_storage_root(run_root: Path) -> Path:
    """Per-process subtree of the run's storage root on this host."""
    return Path(run_root) / f"{socket.gethostname()}-{os.getpid()}"


def get_shared_cache(
    run_root: Path,
    max_bytes: int,
    renderer_factory: Callable[[], CanvasRenderer],
    request_factory: RequestFactory,
) -> CanvasArtifactCache:
    """
    Return this process's cache for the run, creating it on first use.
    Every partition handled by the process shares the returned instance.
    """
    key = (str(Path(run_root)), os.getpid())
    with _SHARED_LOCK:
        cache = _SHARED.get(key)
        if cache is None or cache.closed:
            cache = CanvasArtifactCache(
                root=worker_storage_root(run_root),
                max_bytes=max_bytes,
                renderer=renderer_factory(),
                request_factory=request_factory,
            )
            _SHARED[key] = cache
            log.info(
                "created shared canvas cache",
                extra={"extra": {"root": str(cache.root), "max_bytes": max_bytes}},
            )
        return cache


def release_shared_cache(run_root: Path) -> bool:
    """
    Close this process's cache for the run (if any) and delete the run's whole
    storage tree on this host. Returns True if a live cache was closed.
    Calling it again, or on a process that never cached anything, is a no-op.
    """
    key = (str(Path(run_root)), os.getpid())
    with _SHARED_LOCK:
        cache = _SHARED.pop(key, None)
    closed = False
    if cache is not None and not cache.closed:
        log.info("closing shared canvas cache", extra={"extra": {"root": str(cache.root), **cache.stats().to_dict()}})
        cache.close()
        closed = True
    remove_tree(Path(run_root))
    return closed
