from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from stream_gateway.config.defaults import load_default_config_dict
from stream_gateway.config.loader import GatewayConfig, load_config, load_config_dicts


def test_embedded_defaults_validate() -> None:
    cfg = load_config_dicts([load_default_config_dict()])
    assert cfg.config_version == 1
    assert cfg.llm.retry.max_retries == 2
    assert cfg.gateway.local_proxy_url == "http://127.0.0.1:1337/v1"
    assert cfg.gateway.stream_repair_providers == ["gemini", "google"]
    assert cfg.tools.discovery_timeout_sec == 10.0
    assert cfg.providers == []


def test_config_loader_deep_merge(tmp_path: Path) -> None:
    p1 = tmp_path / "a.yaml"
    p2 = tmp_path / "b.yaml"
    p1.write_text(
        """
config_version: 1
llm:
  timeout_sec: 30
  retry:
    max_retries: 5
gateway:
  max_tool_rounds: 3
""".lstrip(),
        encoding="utf-8",
    )
    p2.write_text(
        """
llm:
  retry:
    base_delay_sec: 0.1
gateway:
  stream_repair_providers: [Gemini, Vertex]
providers:
  - name: openai
    api_key: sk-x
    models:
      - id: gpt-4o
        capabilities: [tools]
""".lstrip(),
        encoding="utf-8",
    )

    cfg = load_config([p1, p2])
    assert cfg.llm.timeout_sec == 30
    assert cfg.llm.retry.max_retries == 5
    assert cfg.llm.retry.base_delay_sec == 0.1
    assert cfg.gateway.max_tool_rounds == 3
    assert cfg.gateway.stream_repair_providers == ["gemini", "vertex"]
    provider = cfg.get_provider("OpenAI")
    assert provider is not None
    assert provider.supports_tools("gpt-4o") is True
    assert provider.supports_tools("gpt-3.5") is False
    assert cfg.get_provider("missing") is None


def test_config_rejects_unknown_fields() -> None:
    with pytest.raises(ValidationError):
        GatewayConfig.model_validate({"gateway": {"max_tool_round": 3}})
    with pytest.raises(ValidationError):
        GatewayConfig.model_validate({"providers": [{"name": "x", "apikey": "typo"}]})


def test_config_root_must_be_mapping(tmp_path: Path) -> None:
    p = tmp_path / "bad.yaml"
    p.write_text("- a\n- b\n", encoding="utf-8")
    with pytest.raises(ValueError):
        load_config([p])


def test_missing_config_file_fails_fast(tmp_path: Path) -> None:
    with pytest.raises(ValueError):
        load_config([tmp_path / "nope.yaml"])
