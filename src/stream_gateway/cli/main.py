"""
stream-gateway CLI（chat / tools / config）。

约束：
- 使用 argparse（不引入第三方 CLI 依赖）
- stdout 输出机器可读 JSON：`chat` 每个事件一行（JSON lines），其余命令输出单个 JSON 对象
- 失败时也尽量输出 JSON（`issues` 列表）
"""

from __future__ import annotations

import argparse
import asyncio
import json
import uuid
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

from pydantic import ValidationError

from stream_gateway import bootstrap
from stream_gateway.core.contracts import ChatMessage, InferenceParameters, InlineFile, TurnRequest
from stream_gateway.core.errors import GatewayIssue


def _dump_json_to_stdout(obj: Dict[str, Any], *, pretty: bool = False) -> None:
    """
    将 dict 输出为 JSON 到 stdout（末尾包含换行）。

    参数：
    - obj：待输出对象（必须可 JSON dumps）
    - pretty：是否启用 pretty-print（indent=2）
    """

    if pretty:
        text = json.dumps(obj, ensure_ascii=False, indent=2)
    else:
        text = json.dumps(obj, ensure_ascii=False, separators=(",", ":"))
    print(text, flush=True)


def _issue_payload(issue: GatewayIssue) -> Dict[str, Any]:
    """把问题对象转换为 JSON dict。"""

    return {"code": issue.code, "message": issue.message, "details": dict(issue.details)}


def _fail(code: str, message: str, *, details: Optional[Dict[str, Any]] = None, pretty: bool = False) -> int:
    """输出单条 issue 并返回 exit code 2。"""

    _dump_json_to_stdout({"issues": [_issue_payload(GatewayIssue(code=code, message=message, details=details or {}))]}, pretty=pretty)
    return 2


def _build_parser() -> argparse.ArgumentParser:
    """构建 CLI argparse parser。"""

    parser = argparse.ArgumentParser(
        prog="stream-gateway",
        description="Streaming inference gateway CLI（chat/tools/config）。",
    )
    root_sub = parser.add_subparsers(dest="command", required=True)

    def _add_common_flags(p: argparse.ArgumentParser) -> None:
        """为子命令添加公共 flags。"""

        p.add_argument("--workspace-root", default=".", help="Workspace root directory (default: .)")
        p.add_argument("--config", action="append", default=[], help="Overlay config YAML path (repeatable).")
        p.add_argument("--pretty", action="store_true", help="Pretty-print JSON output (non-streaming commands).")

    chat = root_sub.add_parser("chat", help="Send one message and stream canonical events as JSON lines")
    _add_common_flags(chat)
    chat.add_argument("--provider", required=True, help="Provider name (must exist in `providers`).")
    chat.add_argument("--model", required=True, help="Model id.")
    chat.add_argument("--message", required=True, help="User message text.")
    chat.add_argument("--system", default=None, help="Optional system prompt.")
    chat.add_argument("--conversation-id", default=None, help="Conversation id (default: random).")
    chat.add_argument("--project-id", default=None, help="Optional project id forwarded to tool providers.")
    chat.add_argument("--attach", action="append", default=[], help="Attach a text file inline (repeatable).")
    chat.add_argument("--temperature", type=float, default=None)
    chat.add_argument("--top-p", type=float, default=None)
    chat.add_argument("--top-k", type=int, default=None)
    chat.add_argument("--max-output-tokens", type=int, default=None)
    chat.add_argument("--stop", action="append", default=None, help="Stop sequence (repeatable).")

    tools = root_sub.add_parser("tools", help="Tool discovery commands")
    tools_sub = tools.add_subparsers(dest="tools_cmd", required=True)
    tools_list = tools_sub.add_parser("list", help="Discover tools from configured providers")
    _add_common_flags(tools_list)
    tools_list.add_argument("--conversation-id", default="cli", help="Conversation id used for the disabled set.")

    config = root_sub.add_parser("config", help="Configuration commands")
    config_sub = config.add_subparsers(dest="config_cmd", required=True)
    show = config_sub.add_parser("show", help="Print the effective configuration (secrets redacted)")
    _add_common_flags(show)

    return parser


def _resolve_workspace_and_overlays(args: argparse.Namespace) -> Tuple[Path, Optional[List[Path]]]:
    """解析 workspace_root 与显式 overlay 路径（相对路径相对 workspace_root）。"""

    ws = Path(args.workspace_root).expanduser().resolve()
    if not args.config:
        return ws, None
    overlays: List[Path] = []
    for raw in args.config:
        p = Path(raw).expanduser()
        overlays.append(p.resolve() if p.is_absolute() else (ws / p).resolve())
    return ws, overlays


def _read_attachments(paths: Sequence[str], workspace_root: Path) -> List[InlineFile]:
    """读取 `--attach` 指定的文本文件为内联附件。"""

    out: List[InlineFile] = []
    for raw in paths:
        p = Path(raw).expanduser()
        if not p.is_absolute():
            p = (workspace_root / p).resolve()
        out.append(InlineFile(name=p.name, content=p.read_text(encoding="utf-8")))
    return out


async def _run_chat(args: argparse.Namespace) -> int:
    """执行 `chat`：逐行输出事件；finish 返回 0，error 返回 1。"""

    ws, overlays = _resolve_workspace_and_overlays(args)
    gateway, resolved = bootstrap.build_gateway(workspace_root=ws, config_paths=overlays)
    provider = resolved.config.get_provider(args.provider)
    if provider is None:
        return _fail(
            "CLI_PROVIDER_NOT_FOUND",
            "Provider is not configured.",
            details={"provider": args.provider, "known": [p.name for p in resolved.config.providers]},
        )

    message = ChatMessage.text("user", args.message)
    if args.attach:
        message = message.model_copy(update={"inline_files": _read_attachments(args.attach, ws)})
    request = TurnRequest(
        conversation_id=args.conversation_id or uuid.uuid4().hex,
        messages=[message],
        model_id=args.model,
        provider=provider,
        system_prompt=args.system,
        project_id=args.project_id,
        parameters=InferenceParameters(
            temperature=args.temperature,
            top_p=args.top_p,
            top_k=args.top_k,
            max_output_tokens=args.max_output_tokens,
            stop_sequences=args.stop,
        ),
    )

    exit_code = 0
    async for ev in gateway.send(request):
        print(ev.to_json(), flush=True)
        if ev.type == "error":
            exit_code = 1
    return exit_code


async def _run_tools_list(args: argparse.Namespace) -> int:
    """执行 `tools list`：输出启用工具、全部发现工具与失败 provider。"""

    ws, overlays = _resolve_workspace_and_overlays(args)
    resolved = bootstrap.resolve_effective_config(workspace_root=ws, config_paths=overlays)
    orchestrator = bootstrap.build_orchestrator(resolved.config)
    snap = await orchestrator.refresh(args.conversation_id)
    blocked = orchestrator.disabled_store.disabled_for(args.conversation_id)
    _dump_json_to_stdout(
        {
            "tools": [s.model_dump() for s in snap.enabled],
            "disabled": sorted(s.key for s in snap.discovered if s.key in blocked),
            "failed_providers": list(snap.failed_providers),
        },
        pretty=args.pretty,
    )
    return 0


def _run_config_show(args: argparse.Namespace) -> int:
    """执行 `config show`：输出有效配置（api_key 以 `***` 代替）与来源。"""

    ws, overlays = _resolve_workspace_and_overlays(args)
    resolved = bootstrap.resolve_effective_config(workspace_root=ws, config_paths=overlays)
    data = resolved.config.model_dump()
    for p in data.get("providers") or []:
        if p.get("api_key"):
            p["api_key"] = "***"
    _dump_json_to_stdout(
        {
            "config": data,
            "overlay_paths": resolved.overlay_paths,
            "env_file": resolved.env_file,
            "sources": resolved.sources,
        },
        pretty=args.pretty,
    )
    return 0


def main(argv: Optional[Sequence[str]] = None) -> int:
    """
    CLI 入口函数（用于 console_scripts 与测试）。

    参数：
    - argv：命令行参数列表（不含程序名）；为 None 时读取 sys.argv[1:]。

    返回：
    - int：exit code（不会直接 sys.exit，便于测试）。
    """

    parser = _build_parser()
    try:
        args = parser.parse_args(list(argv) if argv is not None else None)
    except SystemExit as exc:
        # argparse 的约定：`--help` 为 0，参数错误为 2
        code = getattr(exc, "code", 2)
        return 2 if code is None else int(code)

    pretty = bool(getattr(args, "pretty", False))
    try:
        if args.command == "chat":
            return asyncio.run(_run_chat(args))
        if args.command == "tools" and args.tools_cmd == "list":
            return asyncio.run(_run_tools_list(args))
        if args.command == "config" and args.config_cmd == "show":
            return _run_config_show(args)
    except ValidationError as exc:
        return _fail("CLI_CONFIG_INVALID", "Configuration failed schema validation.", details={"errors": exc.errors(include_url=False, include_context=False)}, pretty=pretty)
    except (OSError, ValueError) as exc:
        return _fail("CLI_CONFIG_LOAD_FAILED", "Configuration or input could not be loaded.", details={"reason": str(exc)}, pretty=pretty)

    return _fail("CLI_COMMAND_INVALID", "Unknown command.", details={"command": args.command}, pretty=pretty)


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
