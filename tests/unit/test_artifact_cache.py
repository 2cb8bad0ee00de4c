"""
Unit tests for the worker canvas cache
"""

import os
import random
import sys
import threading
import time

import pytest

# Add project root to path
project_root = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.append(project_root)

from canvas_cache.artifact_cache import (
    CanvasArtifactCache,
    get_shared_cache,
    release_shared_cache,
    worker_storage_root,
)
from common.errors import CacheBudgetViolation, RenderFailure
from common.types import CanvasId
from tests.fakes import FakeRenderer, request_factory


def make_cache(tmp_path, max_bytes=10_000, renderer=None):
    renderer = renderer or FakeRenderer(size=1000)
    return CanvasArtifactCache(tmp_path / "cache", max_bytes, renderer, request_factory()), renderer


def cid(i):
    return CanvasId("1.0", f"tile_{i}")


class TestCacheBasics:
    """Test hit/miss behaviour and on-disk layout"""

    def test_miss_then_hit(self, tmp_path):
        cache, renderer = make_cache(tmp_path)
        a1 = cache.get(cid(1))
        a2 = cache.get(cid(1))
        assert a1 is a2
        assert renderer.calls[cid(1)] == 1
        s = cache.stats()
        assert (s.hits, s.misses, s.entries) == (1, 1, 1)

    def test_artifact_files_exist(self, tmp_path):
        cache, _ = make_cache(tmp_path)
        art = cache.get(cid(1))
        assert art.path.exists()
        assert art.meta_path.exists()
        assert art.path.suffix == ".png"
        # size covers raster plus metadata sidecar
        assert art.size_bytes == art.path.stat().st_size + art.meta_path.stat().st_size
        assert cache.stats().bytes_resident == art.size_bytes

    def test_same_id_in_different_groups(self, tmp_path):
        cache, _ = make_cache(tmp_path)
        a = cache.get(CanvasId("1.0", "t"))
        b = cache.get(CanvasId("2.0", "t"))
        assert a.path != b.path

    def test_invalid_budget(self, tmp_path):
        with pytest.raises(ValueError):
            CanvasArtifactCache(tmp_path, 0, FakeRenderer(), request_factory())

    def test_render_failure_leaves_no_entry(self, tmp_path):
        cache, _ = make_cache(tmp_path, renderer=FakeRenderer(fail_ids={"tile_1"}))
        with pytest.raises(RenderFailure):
            cache.get(cid(1))
        assert not cache.contains(cid(1))
        assert cache.stats().bytes_resident == 0


class TestBudget:
    """Test that resident bytes never exceed the budget"""

    def test_lru_eviction(self, tmp_path):
        cache, renderer = make_cache(tmp_path, max_bytes=3500)
        per = cache.get(cid(0)).size_bytes
        assert 3 * per <= 3500 < 4 * per
        cache.get(cid(1))
        cache.get(cid(2))
        cache.get(cid(0))  # touch 0: 1 is now least recently used
        cache.get(cid(3))
        assert cache.contains(cid(0))
        assert not cache.contains(cid(1))
        assert cache.contains(cid(2)) and cache.contains(cid(3))
        assert cache.stats().evictions == 1

    def test_evicted_files_removed(self, tmp_path):
        cache, _ = make_cache(tmp_path, max_bytes=1500)
        first = cache.get(cid(0))
        cache.get(cid(1))
        assert not first.path.exists()
        assert not first.meta_path.exists()

    def test_budget_holds_under_random_access(self, tmp_path):
        cache, renderer = make_cache(tmp_path, max_bytes=5500)
        rng = random.Random(7)
        for _ in range(200):
            cache.get(cid(rng.randrange(20)))
            assert cache.stats().bytes_resident <= 5500
        on_disk = sum(p.stat().st_size for p in (tmp_path / "cache").rglob("*") if p.is_file())
        assert on_disk == cache.stats().bytes_resident

    def test_oversized_artifact_violates_budget(self, tmp_path):
        cache, _ = make_cache(tmp_path, max_bytes=500)
        with pytest.raises(CacheBudgetViolation):
            cache.get(cid(0))
        assert cache.stats().bytes_resident == 0
        assert not cache.contains(cid(0))


class TestPinning:
    """Test that pinned entries are never evicted"""

    def test_pinned_entry_survives_pressure(self, tmp_path):
        cache, _ = make_cache(tmp_path, max_bytes=2500)
        with cache.pinned(cid(0)) as art:
            for i in range(1, 6):
                cache.get(cid(i))
            assert cache.contains(cid(0))
            assert art.path.exists()
        # unpinned now: can be evicted again
        cache.get(cid(6))
        cache.get(cid(7))
        assert not cache.contains(cid(0))

    def test_budget_violation_when_pins_fill_budget(self, tmp_path):
        cache, _ = make_cache(tmp_path, max_bytes=2500)
        with cache.pinned(cid(0)), cache.pinned(cid(1)):
            with pytest.raises(CacheBudgetViolation):
                cache.get(cid(2))
            assert cache.stats().bytes_resident <= 2500

    def test_nested_pins(self, tmp_path):
        cache, _ = make_cache(tmp_path, max_bytes=2500)
        with cache.pinned(cid(0)):
            with cache.pinned(cid(0)):
                pass
            # still pinned by the outer block
            cache.get(cid(1))
            cache.get(cid(2))
            assert cache.contains(cid(0))


class TestSingleFlight:
    """Concurrent misses for one canvas render it once"""

    def test_concurrent_gets_render_once(self, tmp_path):
        renderer = FakeRenderer(size=1000, delay_s=0.2)
        cache, _ = make_cache(tmp_path, renderer=renderer)
        barrier = threading.Barrier(8)
        results = []

        def worker():
            barrier.wait()
            results.append(cache.get(cid(1)))

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert renderer.calls[cid(1)] == 1
        assert len(results) == 8
        assert all(r is results[0] for r in results)

    def test_waiters_see_leader_failure(self, tmp_path):
        renderer = FakeRenderer(size=1000, delay_s=0.2, fail_ids={"tile_1"})
        cache, _ = make_cache(tmp_path, renderer=renderer)
        errors = []

        def worker():
            try:
                cache.get(cid(1))
            except RenderFailure as e:
                errors.append(e)

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for t in threads:
            t.start()
            time.sleep(0.01)
        for t in threads:
            t.join()
        assert len(errors) == 4
        assert renderer.calls[cid(1)] == 1


class TestClose:
    def test_close_removes_everything_and_is_idempotent(self, tmp_path):
        cache, _ = make_cache(tmp_path)
        cache.get(cid(1))
        cache.close()
        assert cache.closed
        assert not (tmp_path / "cache").exists()
        cache.close()
        with pytest.raises(RuntimeError):
            cache.get(cid(1))


class TestSharedCache:
    """Test the process-local shared cache registry"""

    def test_one_instance_per_run(self, tmp_path):
        run_root = tmp_path / "canvas_cache_r1"
        factory = lambda: FakeRenderer()
        c1 = get_shared_cache(run_root, 10_000, factory, request_factory())
        c2 = get_shared_cache(run_root, 10_000, factory, request_factory())
        try:
            assert c1 is c2
            assert c1.root == worker_storage_root(run_root)
            assert c1.root.parent == run_root
        finally:
            release_shared_cache(run_root)

    def test_release_removes_run_tree(self, tmp_path):
        run_root = tmp_path / "canvas_cache_r2"
        cache = get_shared_cache(run_root, 10_000, lambda: FakeRenderer(), request_factory())
        cache.get(cid(1))
        assert release_shared_cache(run_root) is True
        assert cache.closed
        assert not run_root.exists()
        # second release is a no-op
        assert release_shared_cache(run_root) is False

    def test_release_without_cache(self, tmp_path):
        run_root = tmp_path / "never_used"
        assert release_shared_cache(run_root) is False
        assert not run_root.exists()

    def test_new_cache_after_release(self, tmp_path):
        run_root = tmp_path / "canvas_cache_r3"
        c1 = get_shared_cache(run_root, 10_000, lambda: FakeRenderer(), request_factory())
        release_shared_cache(run_root)
        c2 = get_shared_cache(run_root, 10_000, lambda: FakeRenderer(), request_factory())
        try:
            assert c2 is not c1
            assert not c2.closed
        finally:
            release_shared_cache(run_root)
