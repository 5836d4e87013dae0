"""Tests for sync_config.yaml loading and validation."""

from __future__ import annotations

import textwrap
from pathlib import Path

import pytest
import yaml

from src.activity_sync.config_loader import (
    ConfigValidationError,
    SyncConfig,
    _validate_and_build,
    load_sync_config,
)


class TestConfigLoading:
    """Tests for loading the bundled sync_config.yaml."""

    def test_load_default_config(self) -> None:
        """The bundled sync_config.yaml loads without errors."""
        config = load_sync_config()
        assert isinstance(config, SyncConfig)
        assert config.version == "1.0"
        assert config.sync.window_days == 30
        assert config.feeds.ttl_seconds == 900

    def test_catalog_entries_complete(self) -> None:
        config = load_sync_config()
        assert config.feeds.catalog
        for feed in config.feeds.catalog:
            assert feed.id and feed.label and feed.url.startswith("https://")

    def test_source_lookup(self) -> None:
        config = load_sync_config()
        assert config.feeds.source("techcrunch").label == "TechCrunch"
        assert config.feeds.source("nope") is None

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(FileNotFoundError):
            load_sync_config(tmp_path / "absent.yaml")

    def test_custom_file(self, tmp_path: Path) -> None:
        path = tmp_path / "sync.yaml"
        path.write_text(textwrap.dedent("""
            version: "2.0"
            sync:
              window_days: 7
              persist_unmatched: true
        """))
        config = load_sync_config(path)
        assert config.version == "2.0"
        assert config.sync.window_days == 7
        assert config.sync.persist_unmatched is True
        assert config.retry.max_attempts == 3

    def test_malformed_yaml(self, tmp_path: Path) -> None:
        path = tmp_path / "bad.yaml"
        path.write_text("sync: [unclosed")
        with pytest.raises(ConfigValidationError):
            load_sync_config(path)


class TestConfigValidation:
    def test_empty_mapping_uses_defaults(self) -> None:
        config = _validate_and_build({})
        assert config.sync.slice_days == 7
        assert config.matching.min_first_name_length == 2
        assert config.feeds.catalog == []

    def test_all_errors_reported_together(self) -> None:
        raw = {
            "sync": {"window_days": 0, "page_size": "lots"},
            "retry": {"backoff": 0.5},
        }
        with pytest.raises(ConfigValidationError) as exc_info:
            _validate_and_build(raw)
        message = str(exc_info.value)
        assert "3 validation error(s)" in message
        assert "sync.window_days" in message
        assert "sync.page_size" in message
        assert "retry.backoff" in message

    def test_page_size_capped(self) -> None:
        with pytest.raises(ConfigValidationError, match="page_size"):
            _validate_and_build({"sync": {"page_size": 1000}})

    def test_duplicate_feed_ids_rejected(self) -> None:
        entry = {"id": "tc", "label": "TechCrunch", "url": "https://techcrunch.com/feed/"}
        with pytest.raises(ConfigValidationError, match="duplicates id 'tc'"):
            _validate_and_build({"feeds": {"catalog": [entry, dict(entry)]}})

    def test_incomplete_feed_entry_rejected(self) -> None:
        with pytest.raises(ConfigValidationError, match="missing url"):
            _validate_and_build({"feeds": {"catalog": [{"id": "x", "label": "X"}]}})

    def test_quoted_boolean_rejected(self) -> None:
        with pytest.raises(ConfigValidationError, match="sync.persist_unmatched must be true or false"):
            _validate_and_build({"sync": {"persist_unmatched": "false"}})

    def test_yaml_boolean_accepted(self) -> None:
        config = _validate_and_build(yaml.safe_load("sync:\n  persist_unmatched: yes\n"))
        assert config.sync.persist_unmatched is True

    def test_section_must_be_mapping(self) -> None:
        with pytest.raises(ConfigValidationError, match="'retry' must be a mapping"):
            _validate_and_build({"retry": [1, 2]})
