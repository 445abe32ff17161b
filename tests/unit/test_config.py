"""Tests for configuration lookups."""

from pathlib import Path

import pytest

from permaroam import config


def test_gateways_default(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("PERMAROAM_GATEWAYS", raising=False)
    assert config.resolve_gateways() == config.DEFAULT_GATEWAYS
    assert config.resolve_gateways() is not config.DEFAULT_GATEWAYS


def test_graphql_gateways_from_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("PERMAROAM_GRAPHQL_GATEWAYS", " https://a.test/ ,,https://b.test")
    assert config.resolve_graphql_gateways() == ["https://a.test", "https://b.test"]


def test_data_directory_from_environment(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("PERMAROAM_DATA_DIR", str(tmp_path))
    assert config.resolve_data_directory() == tmp_path


def test_data_directory_prefers_existing_candidate(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.delenv("PERMAROAM_DATA_DIR", raising=False)
    missing, existing = tmp_path / "missing", tmp_path / "existing"
    existing.mkdir()
    monkeypatch.setattr(config, "DATA_DIRECTORIES", [missing, existing])
    assert config.resolve_data_directory() == existing

    existing.rmdir()
    assert config.resolve_data_directory() == missing
