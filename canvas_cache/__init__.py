"""
Canvas cache: worker-local store of rendered canvases

- Renders canvases on demand through a CanvasRenderer (default: render web service over HTTP)
- Keeps resident bytes under a hard budget (LRU eviction, pinned entries exempt)
- Coalesces concurrent misses for the same canvas into one render
- One shared instance per worker process per run; removed during cleanup
"""
from .artifact_cache import (
    CanvasArtifactCache,
    get_shared_cache,
    release_shared_cache,
    worker_storage_root,
)
from .renderer import CanvasRenderer, HttpCanvasRenderer, build_render_request

__all__ = [
    "CanvasArtifactCache",
    "CanvasRenderer",
    "HttpCanvasRenderer",
    "build_render_request",
    "get_shared_cache",
    "release_shared_cache",
    "worker_storage_root",
]
