from __future__ import annotations

from typing import Dict
from dataclasses import dataclass
from datetime import datetime, timezone
import math


def iso_now_ms() -> str:
    """UTC ISO-8601 timestamp with millisecond precision."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_iso8601(ts: str) -> datetime:
    """Parse a strict ISO-8601 timestamp with optional 'Z'."""
    if ts.endswith("Z"):
        ts = ts[:-1] + "+00:00"
    return datetime.fromisoformat(ts)


@dataclass(slots=True)
class RunningStats:
    """
    Online mean/std using Welford's algorithm, plus min/max.
    """
    n: int = 0
    mean: float = 0.0
    m2: float = 0.0
    lo: float = math.inf
    hi: float = -math.inf

    def add(self, x: float) -> None:
        self.n += 1
        d = x - self.mean
        self.mean += d / self.n
        d2 = x - self.mean
        self.m2 += d * d2
        self.lo = min(self.lo, x)
        self.hi = max(self.hi, x)

    @property
    def variance(self) -> float:
        return self.m2 / (self.n - 1) if self.n > 1 else 0.0

    @property
    def std(self) -> float:
        return self.variance ** 0.5

    def to_dict(self) -> Dict[str, float]:
        if self.n == 0:
            return {"n": 0}
        return {
            "n": self.n,
            "mean": round(self.mean, 3),
            "std": round(self.std, 3),
            "min": round(self.lo, 3),
            "max": round(self.hi, 3),
        }
