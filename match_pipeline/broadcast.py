from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

from canvas_cache.renderer import CanvasRenderer, HttpCanvasRenderer, build_render_request
from common.types import CanvasId, RenderRequest
from point_match.filtering import FilterConfig
from point_match.tool import CorrespondenceTool, ExternalMatchTool, ToolConfig

from match_pipeline.config import PipelineSettings
from match_pipeline.store import MatchStore, MatchStoreClient, MatchStoreTarget


def default_renderer(cfg: "BroadcastConfig") -> CanvasRenderer:
    return HttpCanvasRenderer(timeout=cfg.render_timeout_s)


def default_tool(cfg: "BroadcastConfig", work_dir: Path) -> CorrespondenceTool:
    return ExternalMatchTool(cfg.tool, work_dir)


def default_store(cfg: "BroadcastConfig") -> MatchStore:
    return MatchStoreClient(cfg.store)


@dataclass(frozen=True)
class Collaborators:
    """
    Factories for the worker-side collaborators. They are pickled with the
    broadcast config, so they must be module-level callables.
    """
    renderer_factory: Callable[["BroadcastConfig"], CanvasRenderer] = default_renderer
    tool_factory: Callable[["BroadcastConfig", Path], CorrespondenceTool] = default_tool
    store_factory: Callable[["BroadcastConfig"], MatchStore] = default_store


@dataclass(frozen=True)
class BroadcastConfig:
    """
    Immutable values every worker sees for the whole run. Each worker receives
    its own pickled copy; nothing here is ever mutated after dispatch.
    """
    run_id: str
    render_template: str
    render_scale: float
    image_format: str
    fill_with_noise: bool
    render_timeout_s: float
    cache_root: str
    cache_max_bytes: int
    tool: ToolConfig
    filter: FilterConfig
    store: MatchStoreTarget
    pair_threads: int = 1
    collaborators: Collaborators = field(default_factory=Collaborators)

    @classmethod
    def from_settings(
        cls,
        settings: PipelineSettings,
        *,
        run_id: str,
        render_template: str,
        collaborators: Collaborators | None = None,
    ) -> "BroadcastConfig":
        return cls(
            run_id=run_id,
            render_template=render_template,
            render_scale=float(settings.render.scale),
            image_format=settings.render.format,
            fill_with_noise=settings.render.fill_with_noise,
            render_timeout_s=settings.render.timeout_s,
            cache_root=str(run_storage_root(settings.cache.parent_dir, run_id)),
            cache_max_bytes=settings.cache.max_bytes,
            tool=settings.tool,
            filter=settings.match,
            store=MatchStoreTarget(
                base_url=settings.store.base_url,
                owner=settings.store.owner,
                collection=settings.store.collection,
                timeout_s=settings.store.timeout_s,
            ),
            pair_threads=settings.execution.pair_threads,
            collaborators=collaborators or Collaborators(),
        )

    def request_for(self, canvas_id: CanvasId) -> RenderRequest:
        return build_render_request(
            self.render_template,
            canvas_id,
            scale=self.render_scale,
            image_format=self.image_format,
            fill_with_noise=self.fill_with_noise,
        )


def run_storage_root(parent_dir: str, run_id: str) -> Path:
    return Path(parent_dir) / f"canvas_cache_{run_id}"
