from __future__ import annotations

"""
Pair list loading and run-wide render template resolution.

Pair documents use the render web service's renderable-pairs schema:

    {
      "renderParametersUrlTemplate": "{baseDataUrl}/owner/o/project/p/stack/s/tile/{id}/render-parameters",
      "neighborPairs": [
        {"p": {"groupId": "1.0", "id": "tile_a", "relativePosition": "LEFT"},
         "q": {"groupId": "1.0", "id": "tile_b", "relativePosition": "RIGHT"}},
        ...
      ]
    }

A file may hold one document or a JSON array of documents, and may be plain
(.json), gzipped (.gz) or zipped (.zip, every *.json member is read).
"""

import gzip
import json
import zipfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable, List, Optional, Sequence
from urllib.parse import urlencode

from common.errors import HeterogeneousRenderConfig
from common.logging_setup import get_logger
from common.types import CanvasPair

from match_pipeline.config import RenderSettings


log = get_logger(__name__)


@dataclass(frozen=True)
class RenderablePairs:
    template: Optional[str]
    pairs: List[CanvasPair]
    source: str = ""

    @classmethod
    def from_dict(cls, d: Any, source: str = "") -> "RenderablePairs":
        if not isinstance(d, dict):
            raise ValueError(f"{source}: pair document must be a JSON object, got {type(d).__name__}")
        pairs = [CanvasPair.from_dict(p) for p in d.get("neighborPairs", [])]
        return cls(template=d.get("renderParametersUrlTemplate"), pairs=pairs, source=source)


def _read_json_documents(path: Path) -> List[Any]:
    name = path.name.lower()
    if name.endswith(".zip"):
        docs: List[Any] = []
        with zipfile.ZipFile(path) as zf:
            for member in sorted(zf.namelist()):
                if member.lower().endswith(".json"):
                    docs.append(json.loads(zf.read(member).decode("utf-8")))
        return docs
    if name.endswith(".gz"):
        with gzip.open(path, "rt", encoding="utf-8") as f:
            return [json.load(f)]
    return [json.loads(path.read_text(encoding="utf-8"))]


def load_pair_documents(sources: Iterable[str]) -> List[RenderablePairs]:
    """Read every source and flatten top-level arrays into a list of documents."""
    out: List[RenderablePairs] = []
    for src in sources:
        path = Path(src)
        for raw in _read_json_documents(path):
            items = raw if isinstance(raw, list) else [raw]
            for item in items:
                out.append(RenderablePairs.from_dict(item, source=str(path)))
    log.info(
        "loaded pair documents",
        extra={"extra": {"sources": list(map(str, sources)), "documents": len(out), "pairs": sum(len(d.pairs) for d in out)}},
    )
    return out


class FilePairSource:
    """Pair-list collaborator backed by local files."""

    def __init__(self, sources: Sequence[str]):
        self.sources = list(sources)

    def load(self) -> List[RenderablePairs]:
        return load_pair_documents(self.sources)


def common_template(documents: Sequence[RenderablePairs]) -> str:
    """The single render-parameters template shared by all documents."""
    templates = sorted({d.template for d in documents if d.template})
    if len(templates) > 1:
        raise HeterogeneousRenderConfig(templates)
    if not templates:
        raise ValueError("pair list does not define a renderParametersUrlTemplate")
    return templates[0]


def render_parameters_url_template_for_run(
    documents: Sequence[RenderablePairs],
    render: RenderSettings,
) -> str:
    """
    Resolve the run's template: substitute {baseDataUrl} and append render
    query options. {groupId} / {id} are left for per-canvas substitution.
    """
    url = common_template(documents).replace("{baseDataUrl}", render.base_data_url.rstrip("/"))
    query = []
    if render.full_scale_width:
        query.append(("width", int(render.full_scale_width)))
    if render.full_scale_height:
        query.append(("height", int(render.full_scale_height)))
    if render.scale != 1.0:
        query.append(("scale", float(render.scale)))
    if render.with_filter:
        query.append(("filter", "true"))
    if render.without_mask:
        query.append(("excludeMask", "true"))
    if not query:
        return url
    sep = "&" if "?" in url else "?"
    return url + sep + urlencode(query)


def flatten_pairs(documents: Sequence[RenderablePairs]) -> List[CanvasPair]:
    return [pair for d in documents for pair in d.pairs]
