"""
Unit tests for coordinate rescaling and RANSAC match filtering
"""

import os
import sys

import numpy as np
import pytest

# Add project root to path
project_root = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.append(project_root)

from common.types import MatchSet
from point_match.filtering import (
    FilterConfig,
    MatchFilter,
    model_residuals,
    rescale_match_set,
    rescale_points,
)


def affine_matches(n_inliers=40, n_outliers=10, seed=0, scale=1.0):
    """Correspondences under a known affine map, in rendered (scaled) pixels."""
    rng = np.random.default_rng(seed)
    A = np.array([[0.98, -0.05, 12.0], [0.04, 1.01, -7.0]])
    p = rng.uniform(0, 2000, size=(2, n_inliers + n_outliers))
    q = A[:, :2] @ p + A[:, 2:3]
    q[:, n_inliers:] += rng.uniform(200, 400, size=(2, n_outliers))
    w = np.ones(p.shape[1])
    return MatchSet(p=p * scale, q=q * scale, w=w), A


class TestRescale:
    """Test rendered -> full-scale coordinate mapping"""

    def test_identity_at_full_scale(self):
        pts = np.array([[1.0, 2.0], [3.0, 4.0]])
        out = rescale_points(pts, 1.0)
        assert np.array_equal(out, pts)
        assert out is not pts

    def test_inverse_of_render_scale(self):
        pts = np.array([[10.0, 20.0, 30.0], [5.0, 15.0, 25.0]])
        for s in (0.1, 0.25, 0.4, 0.5, 0.75):
            full = rescale_points(pts, s)
            assert np.allclose(full * s, pts)

    def test_scale_half_doubles(self):
        out = rescale_points(np.array([[100.0], [50.0]]), 0.5)
        assert out.tolist() == [[200.0], [100.0]]

    def test_invalid_scale(self):
        with pytest.raises(ValueError):
            rescale_points(np.zeros((2, 1)), 0.0)

    def test_weights_untouched(self):
        ms = MatchSet(p=[[1.0, 2.0], [3.0, 4.0]], q=[[5.0, 6.0], [7.0, 8.0]], w=[0.3, 0.9])
        out = rescale_match_set(ms, 0.5)
        assert out.w.tolist() == [0.3, 0.9]
        assert out.p.tolist() == [[2.0, 4.0], [6.0, 8.0]]
        assert out.q.tolist() == [[10.0, 12.0], [14.0, 16.0]]
        # input left intact
        assert ms.p.tolist() == [[1.0, 2.0], [3.0, 4.0]]


class TestFilterConfig:
    def test_unknown_model(self):
        with pytest.raises(ValueError):
            FilterConfig(enabled=True, model="rigid3d")

    def test_bad_ratio(self):
        with pytest.raises(ValueError):
            FilterConfig(enabled=True, min_inlier_ratio=1.5)

    def test_bad_epsilon(self):
        with pytest.raises(ValueError):
            FilterConfig(enabled=True, max_epsilon=0)


class TestMatchFilter:
    """Test RANSAC inlier selection"""

    def test_affine_rejects_outliers(self):
        raw, A = affine_matches()
        f = MatchFilter(FilterConfig(enabled=True, model="affine", max_epsilon=5.0, min_num_inliers=10))
        kept = f.filter(raw, 1.0)
        assert len(kept) == 40
        assert np.all(model_residuals(A, kept.p, kept.q) < 1e-6)

    def test_returns_full_scale_coordinates(self):
        raw, A = affine_matches(scale=0.5)
        f = MatchFilter(FilterConfig(enabled=True, model="affine", max_epsilon=5.0, min_num_inliers=10))
        kept = f.filter(raw, 0.5)
        assert len(kept) == 40
        # inliers satisfy the full-scale map, so coordinates were rescaled
        assert np.all(model_residuals(A, kept.p, kept.q) < 1e-6)
        assert kept.p.max() > raw.p.max()

    def test_similarity_and_homography(self):
        # a small rotation+translation fits both models
        for model in ("similarity", "homography"):
            rng = np.random.default_rng(2)
            p = rng.uniform(0, 1000, size=(2, 30))
            theta = 0.02
            R = np.array([[np.cos(theta), -np.sin(theta)], [np.sin(theta), np.cos(theta)]])
            q = R @ p + np.array([[5.0], [-3.0]])
            ms = MatchSet(p=p, q=q, w=np.ones(30))
            kept = MatchFilter(FilterConfig(enabled=True, model=model, max_epsilon=2.0, min_num_inliers=10)).filter(ms, 1.0)
            assert len(kept) == 30

    def test_too_few_matches(self):
        raw, _ = affine_matches(n_inliers=5, n_outliers=0)
        f = MatchFilter(FilterConfig(enabled=True, min_num_inliers=10))
        assert len(f.filter(raw, 1.0)) == 0

    def test_min_inlier_ratio(self):
        raw, _ = affine_matches(n_inliers=20, n_outliers=30)
        f = MatchFilter(FilterConfig(enabled=True, max_epsilon=5.0, min_num_inliers=5, min_inlier_ratio=0.9))
        assert len(f.filter(raw, 1.0)) == 0

    def test_max_num_inliers_caps_result(self):
        raw, A = affine_matches(n_inliers=40, n_outliers=0)
        f = MatchFilter(FilterConfig(enabled=True, max_epsilon=5.0, min_num_inliers=10, max_num_inliers=15))
        kept = f.filter(raw, 1.0)
        assert len(kept) == 15

    def test_weights_follow_inliers(self):
        raw, _ = affine_matches()
        raw = MatchSet(p=raw.p, q=raw.q, w=np.arange(len(raw), dtype=float))
        kept = MatchFilter(FilterConfig(enabled=True, max_epsilon=5.0)).filter(raw, 1.0)
        assert kept.w.tolist() == list(range(40))


class TestModelResiduals:
    def test_affine_residuals(self):
        M = np.array([[1.0, 0.0, 1.0], [0.0, 1.0, 0.0]])
        p = np.array([[0.0, 1.0], [0.0, 1.0]])
        q = np.array([[1.0, 2.0], [0.0, 4.0]])
        assert np.allclose(model_residuals(M, p, q), [0.0, 3.0])

    def test_homography_residuals(self):
        H = np.eye(3)
        p = np.array([[2.0], [3.0]])
        assert np.allclose(model_residuals(H, p, p), [0.0])
