"""Configuration loading tests for the task escrow service."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from task_escrow_service.config import (
    REDACTION_MARKER,
    Settings,
    clear_settings_cache,
    get_safe_config,
    get_settings,
)

VALID_CONFIG = """\
service:
  name: "task-escrow"
  version: "0.1.0"
server:
  host: "0.0.0.0"
  port: 8010
  log_level: "info"
logging:
  level: "INFO"
  directory: "data/logs"
database:
  path: "data/task-escrow.db"
identity:
  base_url: "http://localhost:8001"
  verify_jws_path: "/agents/verify-jws"
  timeout_seconds: 10
platform:
  agent_id: "a-platform"
  arbiter_ids:
    - "a-arbiter"
escrow:
  insurance_premium_pct: 5
  insurance_compensation_pct: 20
limits:
  max_title_length: 200
  max_description_length: 10000
  max_proposal_length: 5000
  max_reason_length: 10000
  max_tags: 20
request:
  max_body_size: 1048576
"""


def _load(tmp_path, monkeypatch, content: str) -> Settings:
    config_path = tmp_path / "config.yaml"
    config_path.write_text(content)
    monkeypatch.setenv("CONFIG_PATH", str(config_path))
    clear_settings_cache()
    return get_settings()


@pytest.mark.unit
def test_config_loads_from_yaml(tmp_path, monkeypatch):
    """Valid config loads without error."""
    settings = _load(tmp_path, monkeypatch, VALID_CONFIG)

    assert isinstance(settings, Settings)
    assert settings.service.name == "task-escrow"
    assert settings.server.port == 8010
    assert settings.database.path == "data/task-escrow.db"
    assert settings.platform.arbiter_ids == ["a-arbiter"]
    assert settings.escrow.insurance_premium_pct == 5
    assert settings.escrow.insurance_compensation_pct == 20
    assert settings.limits.max_tags == 20


@pytest.mark.unit
def test_config_is_cached(tmp_path, monkeypatch):
    """get_settings returns the same object until the cache is cleared."""
    first = _load(tmp_path, monkeypatch, VALID_CONFIG)
    assert get_settings() is first
    clear_settings_cache()
    assert get_settings() is not first


@pytest.mark.unit
def test_config_rejects_extra_fields(tmp_path, monkeypatch):
    """Extra keys raise ValidationError (extra='forbid')."""
    content = VALID_CONFIG.replace('  version: "0.1.0"\n', '  version: "0.1.0"\n  unknown: 1\n')
    with pytest.raises(ValidationError):
        _load(tmp_path, monkeypatch, content)


@pytest.mark.unit
def test_config_rejects_missing_section(tmp_path, monkeypatch):
    """Every section is required."""
    content = VALID_CONFIG.split("escrow:")[0]
    with pytest.raises(ValidationError):
        _load(tmp_path, monkeypatch, content)


@pytest.mark.unit
@pytest.mark.parametrize("pct", ["-1", "101"])
def test_config_rejects_out_of_range_percentage(tmp_path, monkeypatch, pct):
    """Insurance percentages stay within 0..100."""
    content = VALID_CONFIG.replace("insurance_premium_pct: 5", f"insurance_premium_pct: {pct}")
    with pytest.raises(ValidationError):
        _load(tmp_path, monkeypatch, content)


@pytest.mark.unit
def test_config_rejects_empty_arbiter_list(tmp_path, monkeypatch):
    """At least one arbiter must be configured."""
    content = VALID_CONFIG.replace('  arbiter_ids:\n    - "a-arbiter"\n', "  arbiter_ids: []\n")
    with pytest.raises(ValidationError):
        _load(tmp_path, monkeypatch, content)


@pytest.mark.unit
def test_config_rejects_empty_platform_agent(tmp_path, monkeypatch):
    """Blank platform agent_id fails at startup."""
    content = VALID_CONFIG.replace('agent_id: "a-platform"', 'agent_id: "  "')
    with pytest.raises(ValidationError):
        _load(tmp_path, monkeypatch, content)


@pytest.mark.unit
def test_config_missing_file(tmp_path, monkeypatch):
    """A missing config file raises FileNotFoundError."""
    monkeypatch.setenv("CONFIG_PATH", str(tmp_path / "absent.yaml"))
    clear_settings_cache()
    with pytest.raises(FileNotFoundError):
        get_settings()


@pytest.mark.unit
def test_config_non_mapping(tmp_path, monkeypatch):
    """A YAML document that is not a mapping is rejected."""
    with pytest.raises(ValueError):
        _load(tmp_path, monkeypatch, "- just\n- a list\n")


@pytest.mark.unit
def test_safe_config_redacts_sensitive_keys(tmp_path, monkeypatch):
    """Keys that look like secrets are masked; everything else passes through."""
    _load(tmp_path, monkeypatch, VALID_CONFIG)
    safe = get_safe_config()

    assert safe["service"]["name"] == "task-escrow"
    assert safe["platform"]["arbiter_ids"] == ["a-arbiter"]
    assert REDACTION_MARKER not in str(safe)
