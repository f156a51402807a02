"""Tests for config loader functionality."""

import os

import pytest
import yaml

from autograde.libs.config_loader import (CONFIG_DIR_ENV, config_files, get_config, load_all_configs,
                                          load_configs, merge_configs)


@pytest.fixture
def write_yaml(tmp_path):
    def _write(name, data):
        path = tmp_path / name
        path.write_text(yaml.dump(data) if not isinstance(data, str) else data)
        return str(path)
    return _write


def test_merge_is_recursive(write_yaml):
    base = write_yaml("a.yaml", {"grading": {"batch": {"batch_size": 10, "max_concurrency": 3}}})
    local = write_yaml("b.yaml", {"grading": {"batch": {"batch_size": 4}, "ai": {"cost_per_1k_tokens": 0.01}}})

    result = load_configs(base, local)
    assert result == {
        "grading": {
            "batch": {"batch_size": 4, "max_concurrency": 3},
            "ai": {"cost_per_1k_tokens": 0.01},
        }
    }


def test_later_scalar_replaces_dict(write_yaml):
    base = write_yaml("a.yaml", {"openai": {"pydantic_ai_settings": {"temperature": 0}}})
    local = write_yaml("b.yaml", {"openai": {"pydantic_ai_settings": None}})
    assert load_configs(base, local)["openai"]["pydantic_ai_settings"] is None


def test_missing_file_skipped(write_yaml):
    path = write_yaml("a.yaml", {"openai": {"model": "gpt-4o-mini"}})
    assert load_configs(path, "does-not-exist.yaml") == {"openai": {"model": "gpt-4o-mini"}}


def test_no_configs_loaded():
    with pytest.raises(ValueError, match="No configs loaded"):
        load_configs("nonexistent1.yaml", "nonexistent2.yaml")


def test_merge_does_not_mutate_inputs():
    base = {"grading": {"batch": {"batch_size": 10}}}
    override = {"grading": {"batch": {"max_concurrency": 2}}}
    merged = merge_configs(base, override)
    assert merged == {"grading": {"batch": {"batch_size": 10, "max_concurrency": 2}}}
    assert base == {"grading": {"batch": {"batch_size": 10}}}


def test_config_files_order(tmp_path):
    for name in ["local.yaml", "b.yml", "default.yaml", "a.yaml", "notes.txt"]:
        (tmp_path / name).write_text("x: 1\n")
    names = [os.path.basename(p) for p in config_files(str(tmp_path))]
    assert names == ["default.yaml", "a.yaml", "b.yml", "local.yaml"]


def test_local_overrides_default(tmp_path, monkeypatch):
    (tmp_path / "default.yaml").write_text(yaml.dump({"grading": {"batch": {"batch_size": 10}}}))
    (tmp_path / "local.yaml").write_text(yaml.dump({"grading": {"batch": {"batch_size": 2}}}))
    (tmp_path / "z_team.yaml").write_text(yaml.dump({"grading": {"batch": {"batch_size": 7}}}))
    monkeypatch.setenv(CONFIG_DIR_ENV, str(tmp_path))

    assert get_config("grading.batch.batch_size") == 2


def test_missing_config_dir(tmp_path):
    with pytest.raises(ValueError, match="not found"):
        load_all_configs(str(tmp_path / "nope"))


def test_non_dict_yaml(write_yaml):
    path = write_yaml("bad.yaml", "- just\n- a list\n")
    with pytest.raises(TypeError, match="must be a dict"):
        load_configs(path)


class TestGetConfig:

    @pytest.fixture
    def config(self):
        return {"grading": {"batch": {"batch_size": 10, "show_progress": False}}, "openai": {"model": "m"}}

    def test_dot_path(self, config):
        assert get_config("grading.batch.batch_size", config) == 10
        assert get_config("grading.batch.show_progress", config) is False

    def test_missing_raises(self, config):
        with pytest.raises(KeyError):
            get_config("grading.ai.cost_per_1k_tokens", config)
        with pytest.raises(KeyError):
            get_config("openai.model.name", config)

    def test_default(self, config):
        assert get_config("grading.ai.cost_per_1k_tokens", config, default=0.0) == 0.0
        assert get_config("openai.model.name", config, default="x") == "x"
        assert get_config("grading.batch.show_progress", config, default=True) is False

    def test_explicit_none_default(self, config):
        assert get_config("grading.nothing", config, default=None) is None


def test_shipped_defaults(monkeypatch):
    monkeypatch.delenv(CONFIG_DIR_ENV, raising=False)
    project_root = os.path.dirname(os.path.dirname(__file__))
    if not os.path.exists(os.path.join(project_root, "config", "default.yaml")):
        pytest.skip("config/default.yaml not present")

    config = load_all_configs()
    assert get_config("grading.batch.batch_size", config) == 10
    assert get_config("grading.batch.max_concurrency", config) == 3
    assert get_config("grading.ai.retry.max_attempts", config) == 3
