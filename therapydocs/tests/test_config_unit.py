import dataclasses
from pathlib import Path

import pytest

from therapydocs.internal_core.config import ConfigurationError, load_config, validate_config


def test_load_config_defaults(monkeypatch) -> None:
    for name in (
        "THERAPYDOCS_USE_MOCK_API",
        "THERAPYDOCS_DEBUG_MODE",
        "THERAPYDOCS_EDIT_POLICY",
        "THERAPYDOCS_NARRATIVE_BACKEND",
        "THERAPYDOCS_AUTOSAVE_DELAY_SECONDS",
        "THERAPYDOCS_DRAFT_DIR",
    ):
        monkeypatch.delenv(name, raising=False)

    config = validate_config(load_config())
    assert config.THERAPYDOCS_USE_MOCK_API is True
    assert config.THERAPYDOCS_EDIT_POLICY == "direct-edit"
    assert config.THERAPYDOCS_NARRATIVE_BACKEND == "mock"
    assert config.THERAPYDOCS_AUTOSAVE_DELAY_SECONDS == 2.0
    assert config.draft_dir_path(Path("/repo")) is None


def test_real_api_defaults_to_http_narrative_backend(monkeypatch) -> None:
    monkeypatch.setenv("THERAPYDOCS_USE_MOCK_API", "false")
    monkeypatch.delenv("THERAPYDOCS_NARRATIVE_BACKEND", raising=False)
    monkeypatch.delenv("THERAPYDOCS_DEBUG_MODE", raising=False)
    assert load_config().THERAPYDOCS_NARRATIVE_BACKEND == "http"


def test_debug_mode_against_real_api_refuses_to_start(monkeypatch) -> None:
    monkeypatch.setenv("THERAPYDOCS_USE_MOCK_API", "false")
    monkeypatch.setenv("THERAPYDOCS_DEBUG_MODE", "true")
    with pytest.raises(ConfigurationError) as exc_info:
        validate_config(load_config())
    assert str(exc_info.value).startswith("FATAL:")


def test_validate_config_rejects_unknown_values(monkeypatch) -> None:
    monkeypatch.delenv("THERAPYDOCS_DEBUG_MODE", raising=False)
    monkeypatch.setenv("THERAPYDOCS_USE_MOCK_API", "true")
    base = load_config()

    with pytest.raises(ConfigurationError):
        validate_config(dataclasses.replace(base, THERAPYDOCS_EDIT_POLICY="sometimes"))
    with pytest.raises(ConfigurationError):
        validate_config(dataclasses.replace(base, THERAPYDOCS_NARRATIVE_BACKEND="openai"))
    with pytest.raises(ConfigurationError):
        validate_config(dataclasses.replace(base, THERAPYDOCS_AUTOSAVE_DELAY_SECONDS=-1.0))


def test_draft_dir_resolves_against_repo_root(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("THERAPYDOCS_DRAFT_DIR", "drafts")
    assert load_config().draft_dir_path(tmp_path) == (tmp_path / "drafts").resolve()
