from __future__ import annotations

"""
Run configuration.

Loaded from YAML (config/params.yaml) into frozen dataclasses; command-line
flags override individual values. Invalid values raise ValueError.
"""

from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml

from point_match.filtering import FilterConfig
from point_match.tool import ToolConfig


RENDER_FORMATS = ("png", "jpg", "tif")
EXECUTORS = ("process", "serial")
BYTES_PER_GB = 1_000_000_000


@dataclass(frozen=True)
class RenderSettings:
    base_data_url: str
    scale: float = 1.0
    format: str = "png"
    full_scale_width: Optional[int] = None
    full_scale_height: Optional[int] = None
    with_filter: bool = False
    without_mask: bool = False
    fill_with_noise: bool = False
    timeout_s: float = 120.0

    def __post_init__(self) -> None:
        if not self.base_data_url:
            raise ValueError("render.base_data_url is required")
        if not (0.0 < float(self.scale) <= 1.0):
            raise ValueError(f"render.scale must be in (0, 1], got {self.scale}")
        if self.format not in RENDER_FORMATS:
            raise ValueError(f"render.format must be one of {RENDER_FORMATS}, got {self.format!r}")


@dataclass(frozen=True)
class CacheSettings:
    parent_dir: str = "/dev/shm"
    max_gb: float = 20.0

    def __post_init__(self) -> None:
        if float(self.max_gb) <= 0:
            raise ValueError("cache.max_gb must be > 0")

    @property
    def max_bytes(self) -> int:
        return int(float(self.max_gb) * BYTES_PER_GB)


@dataclass(frozen=True)
class StoreSettings:
    base_url: str
    owner: str
    collection: str
    timeout_s: float = 300.0

    def __post_init__(self) -> None:
        for k in ("base_url", "owner", "collection"):
            if not getattr(self, k):
                raise ValueError(f"match_store.{k} is required")


@dataclass(frozen=True)
class ExecutionSettings:
    partitions: int = 16
    workers: int = 4
    max_retries: int = 1
    executor: str = "process"
    pair_threads: int = 1

    def __post_init__(self) -> None:
        if self.partitions < 1:
            raise ValueError("pipeline.partitions must be >= 1")
        if self.workers < 1:
            raise ValueError("pipeline.workers must be >= 1")
        if self.max_retries < 0:
            raise ValueError("pipeline.max_retries must be >= 0")
        if self.pair_threads < 1:
            raise ValueError("pipeline.pair_threads must be >= 1")
        if self.executor not in EXECUTORS:
            raise ValueError(f"pipeline.executor must be one of {EXECUTORS}, got {self.executor!r}")


@dataclass(frozen=True)
class LoggingSettings:
    level: str = "INFO"
    metrics_file: Optional[str] = "logs/metrics.jsonl"


@dataclass(frozen=True)
class PipelineSettings:
    pair_sources: Tuple[str, ...]
    render: RenderSettings
    tool: ToolConfig
    match: FilterConfig
    cache: CacheSettings
    store: StoreSettings
    execution: ExecutionSettings = field(default_factory=ExecutionSettings)
    logging: LoggingSettings = field(default_factory=LoggingSettings)

    def __post_init__(self) -> None:
        if not self.pair_sources:
            raise ValueError("pairs.sources must list at least one pair file")
        if not self.tool.command:
            raise ValueError("tool.command is required")


def _load_yaml(path: str) -> Dict:
    with open(path, "r") as f:
        return yaml.safe_load(f) or {}


def _as_list(v: Any) -> List[str]:
    if v is None:
        return []
    if isinstance(v, str):
        return [s.strip() for s in v.split(",") if s.strip()]
    return [str(s) for s in v]


def settings_from_dict(P: Dict) -> PipelineSettings:
    """Build settings from a params.yaml-shaped dict, applying defaults."""
    pairs = P.get("pairs", {}) or {}
    r = P.get("render", {}) or {}
    t = P.get("tool", {}) or {}
    m = P.get("match", {}) or {}
    c = P.get("cache", {}) or {}
    s = P.get("match_store", {}) or {}
    e = P.get("pipeline", {}) or {}
    lg = P.get("logging", {}) or {}

    render = RenderSettings(
        base_data_url=str(r.get("base_data_url", "")),
        scale=float(r.get("scale", 1.0)),
        format=str(r.get("format", "png")).lower(),
        full_scale_width=_opt_int(r.get("full_scale_width")),
        full_scale_height=_opt_int(r.get("full_scale_height")),
        with_filter=bool(r.get("with_filter", False)),
        without_mask=bool(r.get("without_mask", False)),
        fill_with_noise=bool(r.get("fill_with_noise", False)),
        timeout_s=float(r.get("timeout_s", 120.0)),
    )
    tool = ToolConfig(
        command=str(t.get("command", "")),
        params_file=str(t.get("params_file", "")),
        log_tool_output=bool(t.get("log_tool_output", False)),
        timeout_s=_opt_float(t.get("timeout_s", 600.0)),
        extra_args=tuple(str(a) for a in (t.get("extra_args") or ())),
    )
    match = FilterConfig(
        enabled=bool(m.get("filter_matches", False)),
        model=str(m.get("model", "affine")).lower(),
        iterations=int(m.get("iterations", 1000)),
        max_epsilon=float(m.get("max_epsilon", 20.0)),
        min_inlier_ratio=float(m.get("min_inlier_ratio", 0.0)),
        min_num_inliers=int(m.get("min_num_inliers", 10)),
        max_num_inliers=int(m.get("max_num_inliers", 0) or 0),
        confidence=float(m.get("confidence", 0.99)),
    )
    cache = CacheSettings(
        parent_dir=str(c.get("parent_dir", "/dev/shm")),
        max_gb=float(c.get("max_gb", 20.0)),
    )
    store = StoreSettings(
        base_url=str(s.get("base_url") or render.base_data_url),
        owner=str(s.get("owner", "")),
        collection=str(s.get("collection", "")),
        timeout_s=float(s.get("timeout_s", 300.0)),
    )
    execution = ExecutionSettings(
        partitions=int(e.get("partitions", 16)),
        workers=int(e.get("workers", 4)),
        max_retries=int(e.get("max_retries", 1)),
        executor=str(e.get("executor", "process")).lower(),
        pair_threads=int(e.get("pair_threads", 1)),
    )
    log_cfg = LoggingSettings(
        level=str(lg.get("level", "INFO")),
        metrics_file=lg.get("metrics_file", "logs/metrics.jsonl") or None,
    )
    return PipelineSettings(
        pair_sources=tuple(_as_list(pairs.get("sources"))),
        render=render,
        tool=tool,
        match=match,
        cache=cache,
        store=store,
        execution=execution,
        logging=log_cfg,
    )


def load_settings(path: str, overrides: Optional[Dict[str, Any]] = None) -> PipelineSettings:
    """
    Load YAML config and apply dotted-key overrides, e.g.
        {"render.scale": 0.5, "pipeline.partitions": 4}
    Overrides whose value is None are ignored.
    """
    P = _load_yaml(path) if path and Path(path).exists() else {}
    for key, value in (overrides or {}).items():
        if value is None:
            continue
        section, _, name = key.partition(".")
        P.setdefault(section, {})
        if P[section] is None:
            P[section] = {}
        P[section][name] = value
    return settings_from_dict(P)


def with_execution(settings: PipelineSettings, **changes: Any) -> PipelineSettings:
    """Copy of `settings` with execution options replaced."""
    return replace(settings, execution=replace(settings.execution, **changes))


def _opt_int(v: Any) -> Optional[int]:
    return None if v in (None, "", 0) else int(v)


def _opt_float(v: Any) -> Optional[float]:
    return None if v in (None, "", 0) else float(v)
