from __future__ import annotations

import threading
import time
from typing import Any, Dict, Optional

from canvas_cache.artifact_cache import CanvasArtifactCache
from common.logging_setup import get_logger
from common.types import CanvasMatches, CanvasPair
from common.utils import RunningStats
from point_match.filtering import MatchFilter, rescale_match_set
from point_match.tool import CorrespondenceTool


log = get_logger(__name__)


class MatchComputer:
    """
    Produce zero or one CanvasMatches for a pair:

      cache (p, q) -> tool -> [RANSAC filter | rescale] -> CanvasMatches or None

    Tool and render failures propagate; an empty result at any step is a
    normal suppression and returns None.
    """

    def __init__(
        self,
        cache: CanvasArtifactCache,
        tool: CorrespondenceTool,
        render_scale: float,
        match_filter: Optional[MatchFilter] = None,
    ):
        if not (0.0 < render_scale <= 1.0):
            raise ValueError("render_scale must be in (0, 1]")
        self.cache = cache
        self.tool = tool
        self.render_scale = float(render_scale)
        self.match_filter = match_filter

        self._lock = threading.Lock()
        self._tool_ms = RunningStats()
        self._pairs = 0
        self._empty_raw = 0
        self._empty_filtered = 0
        self._derived = 0

    def compute(self, pair: CanvasPair) -> Optional[CanvasMatches]:
        with self.cache.pinned(pair.p) as p_art, self.cache.pinned(pair.q) as q_art:
            t0 = time.perf_counter()
            raw = self.tool.run(p_art, q_art)
            dt_ms = 1000.0 * (time.perf_counter() - t0)

        with self._lock:
            self._pairs += 1
            self._tool_ms.add(dt_ms)

        if len(raw) == 0:
            with self._lock:
                self._empty_raw += 1
            return None

        if self.match_filter is not None:
            matches = self.match_filter.filter(raw, self.render_scale)
        else:
            # stored matches must be in full scale coordinates
            matches = rescale_match_set(raw, self.render_scale)

        if len(matches) == 0:
            with self._lock:
                self._empty_filtered += 1
            return None

        log.debug(
            "derived matches",
            extra={"extra": {"pair": str(pair), "raw": len(raw), "kept": len(matches)}},
        )
        with self._lock:
            self._derived += 1
        return CanvasMatches.for_pair(pair, matches)

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "pairs": self._pairs,
                "derived": self._derived,
                "empty_raw": self._empty_raw,
                "empty_filtered": self._empty_filtered,
                "tool_ms": self._tool_ms.to_dict(),
            }

