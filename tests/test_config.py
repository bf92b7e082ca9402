"""
Tests for target site configuration.

CONFIG_PATH is redirected into tmp_path so the real ~/.credcapture is never touched.

Run:
    python -m pytest tests/test_config.py -v
"""

import json

import pytest

from credcapture import config as config_module
from credcapture.config import (
    BUILTIN_SITES,
    DEFAULT_CONFIG,
    available_sites,
    load_config,
    resolve_site,
    save_config,
)


@pytest.fixture(autouse=True)
def config_path(tmp_path, monkeypatch):
    path = tmp_path / "credcapture" / "config.json"
    monkeypatch.setattr(config_module, "CONFIG_PATH", path)
    return path


class TestLoadSave:
    def test_missing_file_gives_defaults(self):
        assert load_config() == DEFAULT_CONFIG

    def test_defaults_are_a_copy(self):
        load_config()["sites"]["x"] = {}
        assert DEFAULT_CONFIG["sites"] == {}

    def test_round_trip_creates_directory(self, config_path):
        config = load_config()
        config["sites"]["shop"] = {"login_url": "https://shop.example/login", "domain": "shop.example"}
        save_config(config)
        assert config_path.exists()
        assert load_config()["sites"]["shop"]["domain"] == "shop.example"

    @pytest.mark.parametrize("content", ["{not json", "[1, 2, 3]", '"text"'])
    def test_corrupt_file_gives_defaults(self, config_path, content):
        config_path.parent.mkdir(parents=True)
        config_path.write_text(content, encoding="utf-8")
        assert load_config() == DEFAULT_CONFIG

    def test_partial_file_filled_in(self, config_path):
        config_path.parent.mkdir(parents=True)
        config_path.write_text(json.dumps({"default_site": "shop"}), encoding="utf-8")
        config = load_config()
        assert config["default_site"] == "shop"
        assert config["sites"] == {}


class TestSites:
    def test_builtin_depop(self):
        site = resolve_site("depop")
        assert site.domain == "depop.com"
        assert site.login_url == BUILTIN_SITES["depop"]["login_url"]
        assert site.tag_prefix == "DEPOP_USER:"

    def test_default_site(self):
        assert resolve_site().name == "depop"

    def test_no_default(self):
        assert resolve_site(config={"default_site": None, "sites": {}}) is None

    def test_unknown_site(self):
        assert resolve_site("nope") is None

    def test_user_site_with_defaults(self):
        config = {"default_site": "shop", "sites": {
            "shop": {"login_url": "https://shop.example/login", "domain": "shop.example"},
        }}
        site = resolve_site(config=config)
        assert site.name == "shop"
        assert site.tag_prefix == "SITE_ID:"
        assert site.reserved_paths

    def test_user_entry_overrides_builtin(self):
        config = {"default_site": "depop", "sites": {"depop": {"tag_prefix": "D:"}}}
        site = resolve_site("depop", config=config)
        assert site.tag_prefix == "D:"
        assert site.domain == "depop.com"

    def test_incomplete_entry(self):
        config = {"default_site": None, "sites": {"broken": {"domain": "broken.example"}}}
        assert resolve_site("broken", config=config) is None

    def test_available_sites_merges(self):
        config = {"default_site": None, "sites": {"shop": {"login_url": "u", "domain": "d"}}}
        assert set(available_sites(config)) == {"depop", "shop"}
