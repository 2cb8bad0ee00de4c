"""
Unit tests for pair list loading and render template resolution
"""

import gzip
import json
import os
import sys
import zipfile

import pytest

# Add project root to path
project_root = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.append(project_root)

from common.errors import HeterogeneousRenderConfig
from common.types import CanvasId
from match_pipeline.config import RenderSettings
from match_pipeline.pairs import (
    FilePairSource,
    RenderablePairs,
    common_template,
    flatten_pairs,
    load_pair_documents,
    render_parameters_url_template_for_run,
)
from tests.fakes import TEMPLATE


def pair_doc(ids, template=TEMPLATE, group="1.0"):
    return {
        "renderParametersUrlTemplate": template,
        "neighborPairs": [
            {"p": {"groupId": group, "id": a}, "q": {"groupId": group, "id": b, "relativePosition": "RIGHT"}}
            for a, b in ids
        ],
    }


class TestLoadPairDocuments:
    """Test reading plain, gzipped and zipped pair files"""

    def test_plain_json(self, tmp_path):
        path = tmp_path / "pairs.json"
        path.write_text(json.dumps(pair_doc([("a", "b"), ("b", "c")])))
        docs = load_pair_documents([str(path)])
        assert len(docs) == 1
        assert docs[0].template == TEMPLATE
        assert [p.p.id for p in docs[0].pairs] == ["a", "b"]
        assert docs[0].pairs[0].q.relative_position == "RIGHT"

    def test_gzip(self, tmp_path):
        path = tmp_path / "pairs.json.gz"
        with gzip.open(path, "wt", encoding="utf-8") as f:
            json.dump(pair_doc([("a", "b")]), f)
        docs = load_pair_documents([str(path)])
        assert len(flatten_pairs(docs)) == 1

    def test_zip_reads_every_json_member(self, tmp_path):
        path = tmp_path / "pairs.zip"
        with zipfile.ZipFile(path, "w") as zf:
            zf.writestr("one.json", json.dumps(pair_doc([("a", "b")])))
            zf.writestr("two.json", json.dumps(pair_doc([("c", "d"), ("d", "e")])))
            zf.writestr("README.txt", "ignored")
        docs = load_pair_documents([str(path)])
        assert len(docs) == 2
        assert len(flatten_pairs(docs)) == 3

    def test_array_of_documents_and_multiple_sources(self, tmp_path):
        a = tmp_path / "a.json"
        a.write_text(json.dumps([pair_doc([("a", "b")]), pair_doc([("b", "c")])]))
        b = tmp_path / "b.json"
        b.write_text(json.dumps(pair_doc([("x", "y")])))
        pairs = flatten_pairs(FilePairSource([str(a), str(b)]).load())
        assert [p.p.id for p in pairs] == ["a", "b", "x"]

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_pair_documents([str(tmp_path / "missing.json")])

    def test_not_an_object(self):
        with pytest.raises(ValueError):
            RenderablePairs.from_dict("nope", source="x")


class TestTemplate:
    """Test run-wide render template resolution"""

    def test_single_template(self):
        docs = [RenderablePairs.from_dict(pair_doc([("a", "b")])), RenderablePairs.from_dict(pair_doc([("c", "d")]))]
        assert common_template(docs) == TEMPLATE

    def test_heterogeneous_templates(self):
        docs = [
            RenderablePairs.from_dict(pair_doc([("a", "b")])),
            RenderablePairs.from_dict(pair_doc([("c", "d")], template=TEMPLATE.replace("stack/s", "stack/other"))),
        ]
        with pytest.raises(HeterogeneousRenderConfig) as exc:
            common_template(docs)
        assert len(exc.value.templates) == 2

    def test_no_template(self):
        doc = pair_doc([("a", "b")])
        del doc["renderParametersUrlTemplate"]
        with pytest.raises(ValueError):
            common_template([RenderablePairs.from_dict(doc)])

    def test_base_url_and_query(self):
        docs = [RenderablePairs.from_dict(pair_doc([("a", "b")]))]
        render = RenderSettings(
            base_data_url="http://render:8080/render-ws/v1/",
            scale=0.4,
            full_scale_width=2560,
            full_scale_height=2160,
            with_filter=True,
            without_mask=True,
        )
        url = render_parameters_url_template_for_run(docs, render)
        assert url.startswith("http://render:8080/render-ws/v1/owner/o/project/p/stack/s/tile/{id}/render-parameters?")
        assert "width=2560" in url
        assert "height=2160" in url
        assert "scale=0.4" in url
        assert "filter=true" in url
        assert "excludeMask=true" in url

    def test_no_query_at_full_scale(self):
        docs = [RenderablePairs.from_dict(pair_doc([("a", "b")]))]
        url = render_parameters_url_template_for_run(docs, RenderSettings(base_data_url="http://r"))
        assert url == "http://r/owner/o/project/p/stack/s/tile/{id}/render-parameters"

    def test_pairs_keep_order_and_duplicates(self):
        doc = pair_doc([("a", "b"), ("b", "a"), ("a", "b")])
        pairs = flatten_pairs([RenderablePairs.from_dict(doc)])
        assert len(pairs) == 3
        assert pairs[0].p == CanvasId("1.0", "a")
        assert pairs[1].p == CanvasId("1.0", "b")
