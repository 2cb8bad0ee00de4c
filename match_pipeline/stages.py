from __future__ import annotations

"""
Stage tasks run on workers, one call per partition:

    match_partition    pairs            -> PartitionMatches
    persist_partition  [CanvasMatches]  -> saved count
    cleanup_partition  placeholder      -> partition index
"""

import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from functools import partial
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from canvas_cache.artifact_cache import get_shared_cache, release_shared_cache
from common.logging_setup import get_logger
from common.types import CanvasMatches, CanvasPair
from point_match.computer import MatchComputer
from point_match.filtering import MatchFilter

from match_pipeline.broadcast import BroadcastConfig


log = get_logger(__name__)


@dataclass
class PartitionMatches:
    index: int
    pair_count: int
    matches: List[CanvasMatches] = field(default_factory=list)
    cache: Dict[str, Any] = field(default_factory=dict)
    computer: Dict[str, Any] = field(default_factory=dict)
    elapsed_ms: int = 0


def match_partition(index: int, pairs: Sequence[CanvasPair], cfg: BroadcastConfig) -> PartitionMatches:
    t0 = time.perf_counter()
    cache = get_shared_cache(
        Path(cfg.cache_root),
        cfg.cache_max_bytes,
        partial(cfg.collaborators.renderer_factory, cfg),
        cfg.request_for,
    )
    tool = cfg.collaborators.tool_factory(cfg, cache.root / "tool")
    match_filter: Optional[MatchFilter] = MatchFilter(cfg.filter) if cfg.filter.enabled else None
    computer = MatchComputer(cache, tool, cfg.render_scale, match_filter)

    if cfg.pair_threads > 1 and len(pairs) > 1:
        with ThreadPoolExecutor(max_workers=cfg.pair_threads, thread_name_prefix=f"partition-{index}") as pool:
            futures = [pool.submit(computer.compute, pair) for pair in pairs]
            try:
                results = [f.result() for f in futures]
            except BaseException:
                for f in futures:
                    f.cancel()
                raise
    else:
        results = [computer.compute(pair) for pair in pairs]

    matches = [m for m in results if m is not None]
    out = PartitionMatches(
        index=index,
        pair_count=len(pairs),
        matches=matches,
        cache=cache.stats().to_dict(),
        computer=computer.stats(),
        elapsed_ms=int(1000.0 * (time.perf_counter() - t0)),
    )
    log.info(
        "derived matches for %d out of %d pairs",
        len(matches),
        len(pairs),
        extra={"extra": {"partition": index, "cache": out.cache, "tool_ms": out.computer.get("tool_ms")}},
    )
    return out


def persist_partition(index: int, matches: Sequence[CanvasMatches], cfg: BroadcastConfig) -> int:
    store = cfg.collaborators.store_factory(cfg)
    saved = store.save(list(matches))
    log.info("persisted partition", extra={"extra": {"partition": index, "saved": saved}})
    return saved


def cleanup_partition(index: int, _unit: Any, cfg: BroadcastConfig) -> int:
    closed = release_shared_cache(Path(cfg.cache_root))
    log.info("cleaned up partition", extra={"extra": {"partition": index, "closed_cache": closed}})
    return index
