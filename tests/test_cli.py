from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Dict, List, Tuple

import yaml

from stream_gateway.cli.main import main


def _write_yaml(path: Path, obj: Dict[str, Any]) -> Path:
    """写入 YAML overlay（根节点必须为 mapping）。"""

    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(yaml.safe_dump(obj, sort_keys=False, allow_unicode=True), encoding="utf-8")
    return path


def _clear_bootstrap_env(monkeypatch) -> None:  # type: ignore[no-untyped-def]
    """清理 bootstrap 相关 env，避免本机环境变量影响测试。"""

    for k in list(os.environ):
        if k.startswith("STREAM_GATEWAY_"):
            monkeypatch.delenv(k, raising=False)


def _run_cli(args: List[str], capsys) -> Tuple[int, str]:  # type: ignore[no-untyped-def]
    code = main(args)
    out = capsys.readouterr().out
    return code, out


def test_cli_config_show_redacts_api_keys(tmp_path: Path, capsys, monkeypatch) -> None:  # type: ignore[no-untyped-def]
    _clear_bootstrap_env(monkeypatch)
    _write_yaml(tmp_path / "config" / "gateway.yaml", {"providers": [{"name": "openai", "api_key": "sk-secret"}]})

    code, out = _run_cli(["config", "show", "--workspace-root", str(tmp_path)], capsys)
    assert code == 0
    assert "sk-secret" not in out
    data = json.loads(out)
    assert data["config"]["providers"][0]["api_key"] == "***"
    assert data["overlay_paths"] == [str((tmp_path / "config" / "gateway.yaml").resolve())]


def test_cli_config_show_reports_schema_errors(tmp_path: Path, capsys, monkeypatch) -> None:  # type: ignore[no-untyped-def]
    _clear_bootstrap_env(monkeypatch)
    overlay = _write_yaml(tmp_path / "bad.yaml", {"gateway": {"max_tool_round": 1}})

    code, out = _run_cli(["config", "show", "--workspace-root", str(tmp_path), "--config", str(overlay)], capsys)
    assert code == 2
    assert json.loads(out)["issues"][0]["code"] == "CLI_CONFIG_INVALID"


def test_cli_tools_list_without_providers(tmp_path: Path, capsys, monkeypatch) -> None:  # type: ignore[no-untyped-def]
    _clear_bootstrap_env(monkeypatch)
    code, out = _run_cli(["tools", "list", "--workspace-root", str(tmp_path)], capsys)
    assert code == 0
    assert json.loads(out) == {"tools": [], "disabled": [], "failed_providers": []}


def test_cli_chat_unknown_provider(tmp_path: Path, capsys, monkeypatch) -> None:  # type: ignore[no-untyped-def]
    _clear_bootstrap_env(monkeypatch)
    code, out = _run_cli(
        ["chat", "--workspace-root", str(tmp_path), "--provider", "nope", "--model", "m", "--message", "hi"],
        capsys,
    )
    assert code == 2
    issue = json.loads(out)["issues"][0]
    assert issue["code"] == "CLI_PROVIDER_NOT_FOUND"
    assert issue["details"]["provider"] == "nope"


def test_cli_chat_missing_key_prints_error_event(tmp_path: Path, capsys, monkeypatch) -> None:  # type: ignore[no-untyped-def]
    _clear_bootstrap_env(monkeypatch)
    _write_yaml(tmp_path / "config" / "gateway.yaml", {"providers": [{"name": "openai"}]})

    code, out = _run_cli(
        ["chat", "--workspace-root", str(tmp_path), "--provider", "openai", "--model", "gpt-4o", "--message", "hi"],
        capsys,
    )
    assert code == 1
    lines = [json.loads(line) for line in out.splitlines() if line.strip()]
    assert [ev["type"] for ev in lines] == ["error"]
    assert lines[0]["payload"]["error_kind"] == "configuration_error"


def test_cli_invalid_arguments_exit_2(capsys) -> None:  # type: ignore[no-untyped-def]
    assert main(["chat"]) == 2
    capsys.readouterr()
