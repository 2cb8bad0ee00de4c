from __future__ import annotations

"""
Error taxonomy for the point-match pipeline.

Every exception keeps all of its constructor arguments in ``args`` so it can be
pickled across worker process boundaries and re-raised by the driver unchanged.
"""

from typing import Optional, Sequence


class PointMatchError(Exception):
    """Base class for all pipeline errors."""


class RenderFailure(PointMatchError):
    """A canvas artifact could not be produced."""

    def __init__(self, canvas_id: str, detail: str):
        super().__init__(canvas_id, detail)
        self.canvas_id = canvas_id
        self.detail = detail

    def __str__(self) -> str:
        return f"failed to render canvas {self.canvas_id}: {self.detail}"


class ToolInvocationFailure(PointMatchError):
    """The external correspondence tool errored, timed out, or wrote unusable output."""

    def __init__(self, pair: str, detail: str, output: Optional[str] = None):
        super().__init__(pair, detail, output)
        self.pair = pair
        self.detail = detail
        self.output = output

    def __str__(self) -> str:
        return f"match tool failed for pair {self.pair}: {self.detail}"


class HeterogeneousRenderConfig(PointMatchError):
    """Pair list requires more than one render-parameters template."""

    def __init__(self, templates: Sequence[str]):
        super().__init__(list(templates))
        self.templates = list(templates)

    def __str__(self) -> str:
        return (
            f"pair list uses {len(self.templates)} distinct render parameters templates, "
            f"exactly one is required: {self.templates}"
        )


class PersistenceFailure(PointMatchError):
    """Backing match store rejected or could not accept a write."""

    def __init__(self, detail: str, status_code: Optional[int] = None):
        super().__init__(detail, status_code)
        self.detail = detail
        self.status_code = status_code

    def __str__(self) -> str:
        if self.status_code is None:
            return f"failed to store matches: {self.detail}"
        return f"failed to store matches (HTTP {self.status_code}): {self.detail}"


class CacheBudgetViolation(PointMatchError):
    """Resident bytes exceed the cache budget after eviction. Programming defect, never retried."""

    def __init__(self, resident_bytes: int, max_bytes: int, detail: str = ""):
        super().__init__(resident_bytes, max_bytes, detail)
        self.resident_bytes = resident_bytes
        self.max_bytes = max_bytes
        self.detail = detail

    def __str__(self) -> str:
        msg = f"cache holds {self.resident_bytes} bytes, budget is {self.max_bytes}"
        return f"{msg} ({self.detail})" if self.detail else msg
