from __future__ import annotations

"""
Renderer collaborator: turns a RenderRequest into a raster file on disk.

The render web service does the actual rendering; this adapter fetches the
render parameters (metadata) and the rendered image, re-encodes the image in the
configured cache format, and optionally fills empty pixels with noise so feature
detectors do not latch onto mask borders.
"""

import zlib
from pathlib import Path
from typing import Any, Dict, Optional, Protocol
from urllib.parse import urlsplit, urlunsplit

import cv2
import numpy as np
import requests

from common.errors import RenderFailure
from common.logging_setup import get_logger
from common.types import CanvasId, RenderRequest


log = get_logger(__name__)

IMAGE_FORMATS = {"png": "png", "jpg": "jpeg", "tif": "tiff"}


class CanvasRenderer(Protocol):
    def render(self, request: RenderRequest, target: Path) -> Dict[str, Any]:
        """Write the canvas raster to `target` and return its render metadata."""
        ...


def build_render_request(
    template: str,
    canvas_id: CanvasId,
    *,
    scale: float,
    image_format: str = "png",
    fill_with_noise: bool = False,
) -> RenderRequest:
    """
    Substitute the canvas identity into the run's render-parameters URL template.
    Templates use literal {groupId} and {id} tokens.
    """
    url = template.replace("{groupId}", canvas_id.group_id).replace("{id}", canvas_id.id)
    return RenderRequest(
        canvas_id=canvas_id,
        url=url,
        scale=float(scale),
        image_format=image_format,
        fill_with_noise=bool(fill_with_noise),
    )


def image_url_for(render_parameters_url: str, image_format: str) -> str:
    """
    .../tile/{id}/render-parameters?scale=0.4  ->  .../tile/{id}/png-image?scale=0.4
    """
    kind = IMAGE_FORMATS.get(image_format)
    if kind is None:
        raise ValueError(f"Unsupported image format: {image_format}")
    parts = urlsplit(render_parameters_url)
    path = parts.path
    suffix = "/render-parameters"
    if path.endswith(suffix):
        path = path[: -len(suffix)] + f"/{kind}-image"
    else:
        path = path.rstrip("/") + f"/{kind}-image"
    return urlunsplit((parts.scheme, parts.netloc, path, parts.query, parts.fragment))


def fill_empty_with_noise(img: np.ndarray, seed: int) -> np.ndarray:
    """Replace all-zero pixels with uniform uint8 noise (deterministic per seed)."""
    out = img.copy()
    mask = (out == 0) if out.ndim == 2 else np.all(out == 0, axis=2)
    n = int(mask.sum())
    if n == 0:
        return out
    rng = np.random.default_rng(seed)
    shape = (n,) if out.ndim == 2 else (n, out.shape[2])
    out[mask] = rng.integers(0, 256, size=shape, dtype=np.uint16).astype(out.dtype)
    return out


class HttpCanvasRenderer:
    def __init__(self, session: Optional[requests.Session] = None, timeout: float = 120.0):
        """
        Params:
            session: optional requests.Session for connection reuse
            timeout: per-request timeout in seconds
        """
        self.session = session or requests.Session()
        self.timeout = float(timeout)

    def render(self, request: RenderRequest, target: Path) -> Dict[str, Any]:
        cid = str(request.canvas_id)
        try:
            params = self._get(request, request.url).json()
        except ValueError as e:
            raise RenderFailure(cid, f"render parameters are not JSON: {e}") from e
        r = self._get(request, image_url_for(request.url, request.image_format))

        if not r.content:
            raise RenderFailure(cid, "render service returned an empty image")
        arr = np.frombuffer(r.content, dtype=np.uint8)
        try:
            img = cv2.imdecode(arr, cv2.IMREAD_UNCHANGED)
        except cv2.error as e:
            raise RenderFailure(cid, f"failed to decode rendered image: {e}") from e
        if img is None:
            raise RenderFailure(cid, "failed to decode rendered image")

        if request.fill_with_noise:
            img = fill_empty_with_noise(img, seed=zlib.crc32(cid.encode("utf-8")))

        target.parent.mkdir(parents=True, exist_ok=True)
        try:
            written = cv2.imwrite(str(target), img)
        except cv2.error as e:
            raise RenderFailure(cid, f"failed to encode {target}: {e}") from e
        if not written:
            raise RenderFailure(cid, f"failed to write {target}")

        h, w = img.shape[:2]
        log.debug("rendered canvas", extra={"extra": {"canvas": cid, "w": w, "h": h, "path": str(target)}})
        return {
            "width": int(w),
            "height": int(h),
            "channels": 1 if img.ndim == 2 else int(img.shape[2]),
            "scale": request.scale,
            "format": request.image_format,
            "renderParameters": params,
        }

    def _get(self, request: RenderRequest, url: str) -> requests.Response:
        try:
            r = self.session.get(url, timeout=self.timeout)
        except requests.RequestException as e:
            raise RenderFailure(str(request.canvas_id), f"request to {url} failed: {e}") from e
        if r.status_code != 200:
            raise RenderFailure(str(request.canvas_id), f"HTTP {r.status_code} from {url}: {r.text[:200]}")
        return r
