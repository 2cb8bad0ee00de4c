"""
Unit tests for run configuration loading
"""

import os
import sys

import pytest
import yaml

# Add project root to path
project_root = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.append(project_root)

from match_pipeline.config import load_settings, settings_from_dict, with_execution


BASE = {
    "pairs": {"sources": ["pairs.json"]},
    "render": {"base_data_url": "http://render/v1", "scale": 0.4},
    "tool": {"command": "/opt/tool.sh", "params_file": "/opt/params.txt"},
    "match_store": {"owner": "o", "collection": "c"},
}


def write_config(tmp_path, data):
    path = tmp_path / "params.yaml"
    path.write_text(yaml.safe_dump(data))
    return str(path)


class TestSettings:
    """Test defaults and validation"""

    def test_defaults(self):
        s = settings_from_dict(BASE)
        assert s.pair_sources == ("pairs.json",)
        assert s.render.format == "png"
        assert s.cache.parent_dir == "/dev/shm"
        assert s.cache.max_bytes == 20_000_000_000
        assert s.store.base_url == "http://render/v1"
        assert s.match.enabled is False
        assert s.execution.max_retries == 1
        assert s.tool.log_tool_output is False

    def test_repo_params_yaml_loads(self):
        s = load_settings(os.path.join(project_root, "config", "params.yaml"))
        assert 0 < s.render.scale <= 1
        assert s.execution.partitions >= 1

    @pytest.mark.parametrize(
        "section,key,value",
        [
            ("render", "scale", 0.0),
            ("render", "scale", 1.5),
            ("render", "format", "bmp"),
            ("render", "base_data_url", ""),
            ("cache", "max_gb", 0),
            ("pipeline", "partitions", 0),
            ("pipeline", "max_retries", -1),
            ("pipeline", "executor", "threads"),
            ("match", "model", "rigid"),
            ("tool", "command", ""),
            ("match_store", "owner", ""),
        ],
    )
    def test_invalid_values(self, section, key, value):
        data = {k: dict(v) for k, v in BASE.items()}
        data.setdefault(section, {})[key] = value
        with pytest.raises(ValueError):
            settings_from_dict(data)

    def test_no_pair_sources(self):
        data = dict(BASE, pairs={"sources": []})
        with pytest.raises(ValueError):
            settings_from_dict(data)

    def test_comma_separated_sources(self):
        data = dict(BASE, pairs={"sources": "a.json, b.json.gz"})
        assert settings_from_dict(data).pair_sources == ("a.json", "b.json.gz")


class TestLoadSettings:
    """Test YAML loading with command-line overrides"""

    def test_overrides_win(self, tmp_path):
        path = write_config(tmp_path, BASE)
        s = load_settings(
            path,
            {
                "render.scale": 0.5,
                "pipeline.partitions": 3,
                "cache.max_gb": 2,
                "match.filter_matches": True,
                "render.format": None,
            },
        )
        assert s.render.scale == 0.5
        assert s.execution.partitions == 3
        assert s.cache.max_bytes == 2_000_000_000
        assert s.match.enabled is True
        assert s.render.format == "png"

    def test_missing_file_uses_overrides(self, tmp_path):
        s = load_settings(
            str(tmp_path / "missing.yaml"),
            {
                "pairs.sources": ["x.json"],
                "render.base_data_url": "http://r",
                "tool.command": "t",
                "match_store.owner": "o",
                "match_store.collection": "c",
            },
        )
        assert s.pair_sources == ("x.json",)

    def test_with_execution(self):
        s = settings_from_dict(BASE)
        s2 = with_execution(s, partitions=7, executor="serial")
        assert s2.execution.partitions == 7
        assert s2.execution.executor == "serial"
        assert s.execution.partitions == 16
