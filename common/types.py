from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Tuple, Any, Dict
import numpy as np


@dataclass(frozen=True, slots=True)
class CanvasId:
    """
    Identity of one renderable canvas (tile).

    Attributes:
        group_id: section / layer the canvas belongs to.
        id: canvas (tile) id, unique within the group.
        relative_position: optional neighbor hint from the pair list
            (LEFT/RIGHT/TOP/BOTTOM); not part of identity.
    """
    group_id: str
    id: str
    relative_position: Optional[str] = field(default=None, compare=False, hash=False)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "CanvasId":
        return cls(
            group_id=str(d["groupId"]),
            id=str(d["id"]),
            relative_position=d.get("relativePosition"),
        )

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {"groupId": self.group_id, "id": self.id}
        if self.relative_position:
            d["relativePosition"] = self.relative_position
        return d

    def __str__(self) -> str:
        return f"{self.group_id}::{self.id}"


@dataclass(frozen=True, slots=True)
class CanvasPair:
    """Ordered pair; (p, q) != (q, p)."""
    p: CanvasId
    q: CanvasId

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "CanvasPair":
        return cls(p=CanvasId.from_dict(d["p"]), q=CanvasId.from_dict(d["q"]))

    def to_dict(self) -> Dict[str, Any]:
        return {"p": self.p.to_dict(), "q": self.q.to_dict()}

    def __str__(self) -> str:
        return f"({self.p}, {self.q})"


@dataclass(frozen=True, slots=True)
class RenderRequest:
    """
    Fully resolved description needed to render one canvas.

    Attributes:
        canvas_id: canvas to render.
        url: render-parameters URL with group/id substituted.
        scale: render scale in (0, 1].
        image_format: png | jpg | tif.
        fill_with_noise: replace empty pixels with uniform noise.
    """
    canvas_id: CanvasId
    url: str
    scale: float
    image_format: str = "png"
    fill_with_noise: bool = False


@dataclass(frozen=True, slots=True)
class CanvasArtifact:
    """Rendered raster on disk plus its render metadata; owned by one cache entry."""
    canvas_id: CanvasId
    path: Path
    meta_path: Path
    request: RenderRequest
    meta: Dict[str, Any] = field(default_factory=dict, compare=False, hash=False)
    size_bytes: int = 0


@dataclass(frozen=True, slots=True)
class MatchSet:
    """
    Parallel correspondence arrays.

    Attributes:
        p: (2, N) float64 array, row 0 = x, row 1 = y, in p-space.
        q: (2, N) float64 array in q-space.
        w: (N,) float64 weights.
    """
    p: np.ndarray
    q: np.ndarray
    w: np.ndarray

    def __post_init__(self) -> None:
        p = _as_points(self.p, "p")
        q = _as_points(self.q, "q")
        w = np.array(self.w, dtype=float).reshape(-1)
        n = w.shape[0]
        if p.shape[1] != n or q.shape[1] != n:
            raise ValueError(
                f"match arrays differ in length: p={p.shape[1]} q={q.shape[1]} w={n}"
            )
        # private read-only copies; the caller's arrays are left alone
        for name, a in (("p", p), ("q", q), ("w", w)):
            a.setflags(write=False)
            object.__setattr__(self, name, a)

    @classmethod
    def empty(cls) -> "MatchSet":
        return cls(p=np.zeros((2, 0)), q=np.zeros((2, 0)), w=np.zeros(0))

    def __len__(self) -> int:
        return int(self.w.shape[0])

    def subset(self, idx: np.ndarray) -> "MatchSet":
        return MatchSet(p=self.p[:, idx], q=self.q[:, idx], w=self.w[idx])

    def to_dict(self) -> Dict[str, Any]:
        return {"p": self.p.tolist(), "q": self.q.tolist(), "w": self.w.tolist()}


def _as_points(x: Any, name: str) -> np.ndarray:
    a = np.array(x, dtype=float)
    if a.size == 0:
        return np.zeros((2, 0))
    if a.ndim != 2 or a.shape[0] != 2:
        raise ValueError(f"{name} must have shape (2, N), got {a.shape}")
    return a


@dataclass(frozen=True, slots=True)
class CanvasMatches:
    """Persisted record for one pair. Never built for an empty match set."""
    p_group_id: str
    p_id: str
    q_group_id: str
    q_id: str
    matches: MatchSet = field(compare=False)

    def __post_init__(self) -> None:
        if len(self.matches) == 0:
            raise ValueError("CanvasMatches requires at least one match")

    @classmethod
    def for_pair(cls, pair: CanvasPair, matches: MatchSet) -> "CanvasMatches":
        return cls(
            p_group_id=pair.p.group_id,
            p_id=pair.p.id,
            q_group_id=pair.q.group_id,
            q_id=pair.q.id,
            matches=matches,
        )

    @property
    def key(self) -> Tuple[str, str, str, str]:
        return (self.p_group_id, self.p_id, self.q_group_id, self.q_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pGroupId": self.p_group_id,
            "pId": self.p_id,
            "qGroupId": self.q_group_id,
            "qId": self.q_id,
            "matches": self.matches.to_dict(),
        }


@dataclass(frozen=True, slots=True)
class CacheStats:
    """Point-in-time counters for one worker cache (observability only)."""
    hits: int = 0
    misses: int = 0
    evictions: int = 0
    bytes_resident: int = 0
    entries: int = 0
    max_bytes: int = 0

    @property
    def hit_ratio(self) -> float:
        total = self.hits + self.misses
        return 0.0 if total == 0 else self.hits / total

    def to_dict(self) -> Dict[str, Any]:
        return {
            "hits": self.hits,
            "misses": self.misses,
            "evictions": self.evictions,
            "bytes_resident": self.bytes_resident,
            "entries": self.entries,
            "max_bytes": self.max_bytes,
            "hit_ratio": round(self.hit_ratio, 4),
        }
