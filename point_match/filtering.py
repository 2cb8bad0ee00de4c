from __future__ import annotations
"""
Geometric-consistency filtering and coordinate rescaling.

- rescale_points / rescale_match_set: rendered (scaled) pixels -> full-scale pixels
- MatchFilter: RANSAC inlier selection against an affine, similarity or
  homography model, in full-scale coordinates
"""

from dataclasses import dataclass
from typing import Optional, Tuple

import cv2
import numpy as np

from common.logging_setup import get_logger
from common.types import MatchSet


log = get_logger(__name__)

MODELS = ("affine", "similarity", "homography")
_MIN_POINTS = {"affine": 3, "similarity": 2, "homography": 4}


def rescale_points(points: np.ndarray, render_scale: float) -> np.ndarray:
    """Divide every coordinate by `render_scale`. Identity (copy) when scale is 1.0."""
    if render_scale <= 0:
        raise ValueError("render_scale must be > 0")
    pts = np.asarray(points, dtype=float)
    if render_scale == 1.0:
        return pts.copy()
    return pts / render_scale


def rescale_match_set(matches: MatchSet, render_scale: float) -> MatchSet:
    """Rescale both point arrays; weights are left untouched."""
    return MatchSet(
        p=rescale_points(matches.p, render_scale),
        q=rescale_points(matches.q, render_scale),
        w=matches.w.copy(),
    )


@dataclass(frozen=True)
class FilterConfig:
    enabled: bool = False
    model: str = "affine"
    iterations: int = 1000
    max_epsilon: float = 20.0
    min_inlier_ratio: float = 0.0
    min_num_inliers: int = 10
    max_num_inliers: int = 0
    confidence: float = 0.99

    def __post_init__(self) -> None:
        if self.model not in MODELS:
            raise ValueError(f"Unknown model: {self.model}. Must be one of {MODELS}")
        if self.max_epsilon <= 0:
            raise ValueError("max_epsilon must be > 0")
        if not (0.0 <= self.min_inlier_ratio <= 1.0):
            raise ValueError("min_inlier_ratio must be in [0, 1]")
        if self.min_num_inliers < 0 or self.max_num_inliers < 0:
            raise ValueError("inlier bounds must be >= 0")


class MatchFilter:
    """Select geometrically consistent correspondences with RANSAC."""

    def __init__(self, config: FilterConfig):
        self.config = config

    def filter(self, raw: MatchSet, render_scale: float) -> MatchSet:
        """
        Args:
            raw: correspondences in rendered (scaled) pixel coordinates
            render_scale: scale the canvases were rendered at

        Returns:
            Inliers in full-scale coordinates; empty if the model could not be
            estimated or the inlier bounds are not met.
        """
        cfg = self.config
        full = rescale_match_set(raw, render_scale)
        n = len(full)
        if n < max(_MIN_POINTS[cfg.model], cfg.min_num_inliers, 1):
            log.debug("too few matches to filter", extra={"extra": {"n": n, "model": cfg.model}})
            return MatchSet.empty()

        M, mask = self._estimate(full)
        if M is None or mask is None:
            return MatchSet.empty()

        inliers = mask.ravel().astype(bool)
        k = int(inliers.sum())
        if k == 0 or k < cfg.min_num_inliers or (k / n) < cfg.min_inlier_ratio:
            log.debug("rejected by inlier bounds", extra={"extra": {"n": n, "inliers": k}})
            return MatchSet.empty()

        idx = np.flatnonzero(inliers)
        if cfg.max_num_inliers and k > cfg.max_num_inliers:
            res = model_residuals(M, full.p[:, idx], full.q[:, idx])
            idx = np.sort(idx[np.argsort(res, kind="stable")[: cfg.max_num_inliers]])
        return full.subset(idx)

    def _estimate(self, full: MatchSet) -> Tuple[Optional[np.ndarray], Optional[np.ndarray]]:
        cfg = self.config
        src = np.ascontiguousarray(full.p.T, dtype=np.float32).reshape(-1, 1, 2)
        dst = np.ascontiguousarray(full.q.T, dtype=np.float32).reshape(-1, 1, 2)
        if cfg.model == "affine":
            return cv2.estimateAffine2D(
                src,
                dst,
                method=cv2.RANSAC,
                ransacReprojThreshold=cfg.max_epsilon,
                maxIters=cfg.iterations,
                confidence=cfg.confidence,
            )
        if cfg.model == "similarity":
            return cv2.estimateAffinePartial2D(
                src,
                dst,
                method=cv2.RANSAC,
                ransacReprojThreshold=cfg.max_epsilon,
                maxIters=cfg.iterations,
                confidence=cfg.confidence,
            )
        return cv2.findHomography(
            src,
            dst,
            cv2.RANSAC,
            ransacReprojThreshold=cfg.max_epsilon,
            maxIters=cfg.iterations,
            confidence=cfg.confidence,
        )


def model_residuals(M: np.ndarray, p: np.ndarray, q: np.ndarray) -> np.ndarray:
    """Euclidean distance between M(p) and q for (2, N) point arrays; M is 2x3 or 3x3."""
    M = np.asarray(M, dtype=float)
    ph = np.vstack([p, np.ones((1, p.shape[1]))])
    if M.shape == (2, 3):
        proj = M @ ph
    else:
        h = M @ ph
        proj = h[:2] / h[2:3]
    return np.linalg.norm(proj - q, axis=0)
