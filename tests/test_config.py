"""Tests for YAML config loading and environment overrides."""

import pytest

from search_accel.core.config import DEFAULT_CONFIG_PATH, AccelConfig

ENV_VARS = (
    "UPSTASH_REDIS_URL", "REDIS_URL", "REDIS_HOST", "REDIS_PORT",
    "REDIS_DB", "ORIGIN_BASE_URL", "ACCEL_SKIP_REDIS",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


def test_shipped_yaml_matches_defaults():
    assert DEFAULT_CONFIG_PATH.exists()
    loaded = AccelConfig.from_yaml()
    defaults = AccelConfig()
    assert loaded.search_default_ttl == defaults.search_default_ttl
    assert loaded.content_ttls == defaults.content_ttls
    assert loaded.tab_type_ttls == defaults.tab_type_ttls
    assert loaded.tab_rules == defaults.tab_rules
    assert loaded.popular_tabs == defaults.popular_tabs


def test_missing_file_gives_defaults(tmp_path):
    config = AccelConfig.from_yaml(tmp_path / "nope.yaml")
    assert config.search_default_ttl == 12 * 3600
    assert config.default_collection == "seattleu~sp-search"


def test_partial_yaml_merges_tables(tmp_path):
    path = tmp_path / "accel.yaml"
    path.write_text(
        "ttl:\n"
        "  search_default: 600\n"
        "  content:\n"
        "    news: 30\n"
        "tabs:\n"
        "  rules:\n"
        "    default_tab: All\n"
    )
    config = AccelConfig.from_yaml(path)
    assert config.search_default_ttl == 600
    assert config.content_ttls["news"] == 30
    assert config.content_ttls["staff"] == 4 * 3600
    assert config.tab_rules["default_tab"] == "All"
    assert config.tab_rules["facet_prefix"] == "f.Tabs|"


def test_empty_yaml(tmp_path):
    path = tmp_path / "empty.yaml"
    path.write_text("")
    assert AccelConfig.from_yaml(path).pre_render_ttl == 2 * 3600


def test_env_overrides(tmp_path, monkeypatch):
    monkeypatch.setenv("REDIS_URL", "redis://cache:6379/2")
    monkeypatch.setenv("ORIGIN_BASE_URL", "http://origin.internal/s")
    monkeypatch.setenv("ACCEL_SKIP_REDIS", "1")
    config = AccelConfig.from_yaml(tmp_path / "nope.yaml")
    assert config.redis_url == "redis://cache:6379/2"
    assert config.origin_base_url == "http://origin.internal/s"
    assert config.skip_redis is True


def test_upstash_url_wins(monkeypatch):
    monkeypatch.setenv("REDIS_URL", "redis://plain:6379")
    monkeypatch.setenv("UPSTASH_REDIS_URL", "rediss://upstash:6379")
    assert AccelConfig().apply_env().redis_url == "rediss://upstash:6379"
