"""
Bootstrap Layer（应用层启动/配置发现/来源追踪）。

设计目标：
- 保持 gateway 核心无隐式 I/O：StreamingGateway 不会自动读取 `.env` / 自动发现 overlays；
- 提供可选 bootstrap 入口：CLI/上层应用复用，一次性生成配置快照并组装 gateway。
"""

from __future__ import annotations

import os
import re
from copy import deepcopy
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

import httpx

from stream_gateway.config.defaults import load_default_config_dict
from stream_gateway.config.loader import GatewayConfig, load_config_dicts, read_overlay_file
from stream_gateway.gateway.session import StreamingGateway
from stream_gateway.llm.openai_chat import OpenAIChatCompletionsBackend
from stream_gateway.llm.protocol import ChatBackend
from stream_gateway.tools.disabled import DisabledToolStore
from stream_gateway.tools.orchestrator import ToolOrchestrator
from stream_gateway.tools.providers import HttpToolProvider

ENV_FILE_VAR = "STREAM_GATEWAY_ENV_FILE"
CONFIG_PATHS_VAR = "STREAM_GATEWAY_CONFIG_PATHS"
LOCAL_PROXY_URL_VAR = "STREAM_GATEWAY_LOCAL_PROXY_URL"
API_KEY_VAR_PREFIX = "STREAM_GATEWAY_API_KEY_"


_ENV_LINE = re.compile(r"^(?:export\s+)?(?P<key>[A-Za-z_][A-Za-z0-9_.]*)\s*=\s*(?P<value>.*)$")


def _env_value(key: str, env: Optional[Mapping[str, str]] = None) -> Optional[str]:
    """取 env 值；未设置或仅含空白时返回 None。"""

    raw = (os.environ if env is None else env).get(key)
    cleaned = str(raw).strip() if raw is not None else ""
    return cleaned or None


def _anchor(raw: str, root: Path) -> Path:
    """展开 `~`，相对路径挂到 root 下，返回 canonical 路径。"""

    candidate = Path(raw).expanduser()
    return (candidate if candidate.is_absolute() else root / candidate).resolve()


def _read_env_file(path: Path) -> Dict[str, str]:
    """
    读取 `.env` 文件。

    行格式为 `[export ]KEY=VALUE`；空行、`#` 开头的行与无法识别的行跳过。
    VALUE 若被成对的单引号或双引号包住，去掉这一层引号。
    """

    pairs: Dict[str, str] = {}
    for line in path.read_text(encoding="utf-8").splitlines():
        stripped = line.strip()
        if stripped.startswith("#"):
            continue
        m = _ENV_LINE.match(stripped)
        if m is None:
            continue
        value = m.group("value").strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in ("'", '"'):
            value = value[1:-1]
        pairs[m.group("key")] = value
    return pairs


def load_dotenv_if_present(*, workspace_root: Path, override: bool = False) -> Tuple[Optional[Path], Dict[str, str]]:
    """
    定位并读取 `.env`，返回 `(路径或 None, 待注入的变量)`。

    查找顺序：`STREAM_GATEWAY_ENV_FILE` 指定的文件（必须存在，否则 ValueError）；其次 `<workspace_root>/.env`。
    进程 env 已有的键默认不覆盖（`override=True` 时覆盖）。`os.environ` 本身不被修改。
    """

    root = Path(workspace_root).resolve()
    explicit = _env_value(ENV_FILE_VAR)
    target = _anchor(explicit, root) if explicit else (root / ".env").resolve()
    if not target.exists():
        if explicit:
            raise ValueError(f"env file not found: {target}")
        return None, {}

    pairs = _read_env_file(target)
    if override:
        return target, pairs
    return target, {k: v for k, v in pairs.items() if k not in os.environ}


def discover_overlay_paths(*, workspace_root: Path, env: Optional[Mapping[str, str]] = None) -> List[Path]:
    """
    列出参与合并的 overlay 文件，先后顺序即合并顺序：

    - `<workspace_root>/config/gateway.yaml`（存在才计入）
    - `STREAM_GATEWAY_CONFIG_PATHS` 中的各项（`,` 或 `;` 分隔，相对路径挂到 workspace_root）

    同一路径只保留第一次出现。
    """

    root = Path(workspace_root).resolve()
    candidates: List[Path] = []
    conventional = root / "config" / "gateway.yaml"
    if conventional.exists():
        candidates.append(conventional.resolve())

    listed = _env_value(CONFIG_PATHS_VAR, env) or ""
    for item in re.split(r"[,;]", listed):
        if item.strip():
            candidates.append(_anchor(item.strip(), root))

    return list(dict.fromkeys(candidates))


def _env_overlay(merged: Dict[str, Any], env: Mapping[str, str], sources: Dict[str, str]) -> Dict[str, Any]:
    """
    根据环境变量生成最后一层 overlay。

    规则：
    - `STREAM_GATEWAY_LOCAL_PROXY_URL` 覆盖 `gateway.local_proxy_url`
    - `STREAM_GATEWAY_API_KEY_<NAME>` 为未配置 api_key 的同名 provider 提供凭证（NAME 为大写 provider 名）
    """

    overlay: Dict[str, Any] = {}
    proxy = _env_value(LOCAL_PROXY_URL_VAR, env)
    if proxy is not None:
        overlay["gateway"] = {"local_proxy_url": proxy}
        sources["gateway.local_proxy_url"] = f"env:{LOCAL_PROXY_URL_VAR}"

    providers = merged.get("providers")
    if isinstance(providers, list):
        patched: List[Any] = []
        changed = False
        for item in providers:
            if not isinstance(item, dict) or item.get("api_key"):
                patched.append(item)
                continue
            name = str(item.get("name") or "")
            var = API_KEY_VAR_PREFIX + name.upper().replace("-", "_")
            key = _env_value(var, env)
            if key is None:
                patched.append(item)
                continue
            copy = deepcopy(item)
            copy["api_key"] = key
            patched.append(copy)
            sources[f"providers.{name}.api_key"] = f"env:{var}"
            changed = True
        if changed:
            overlay["providers"] = patched
    return overlay


@dataclass(frozen=True)
class ResolvedGatewayConfig:
    """bootstrap 解析后的配置快照（含来源追踪）。

    字段：
    - config：校验后的 GatewayConfig
    - overlay_paths：参与合并的 overlay 文件路径（字符串化）
    - env_file：实际加载的 .env 路径（若无则为 None）
    - sources：经 env 覆盖的字段来源（值永不记录）
    """

    config: GatewayConfig
    overlay_paths: List[str]
    env_file: Optional[str]
    sources: Dict[str, str]


def resolve_effective_config(
    *, workspace_root: Path, config_paths: Optional[List[Path]] = None
) -> ResolvedGatewayConfig:
    """
    解析有效配置：embedded default < overlays（按顺序）< env。

    参数：
    - workspace_root：工作区根目录（相对路径锚点）
    - config_paths：显式 overlay 列表；缺省时按 `discover_overlay_paths` 发现
    """

    ws = Path(workspace_root).resolve()
    env_file, dotenv_env = load_dotenv_if_present(workspace_root=ws)
    effective_env: Dict[str, str] = dict(os.environ)
    effective_env.update(dotenv_env)

    if config_paths is None:
        overlay_paths = discover_overlay_paths(workspace_root=ws, env=effective_env)
    else:
        overlay_paths = [Path(p).resolve() for p in config_paths]

    dicts: List[Dict[str, Any]] = [load_default_config_dict()]
    for p in overlay_paths:
        dicts.append(read_overlay_file(p))

    merged_preview: Dict[str, Any] = {}
    for d in dicts:
        merged_preview.update(d)
    sources: Dict[str, str] = {}
    dicts.append(_env_overlay(merged_preview, effective_env, sources))

    return ResolvedGatewayConfig(
        config=load_config_dicts(dicts),
        overlay_paths=[str(p) for p in overlay_paths],
        env_file=str(env_file) if env_file is not None else None,
        sources=sources,
    )


def build_orchestrator(
    config: GatewayConfig,
    *,
    disabled_store: Optional[DisabledToolStore] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> ToolOrchestrator:
    """按 `tools.providers` 组装 HTTP tool provider 与编排器。"""

    providers = [
        HttpToolProvider(
            p.id,
            p.base_url,
            transport=transport,
            timeout_sec=config.tools.dispatch_timeout_sec,
        )
        for p in config.tools.providers
    ]
    return ToolOrchestrator(
        providers,
        disabled_store=disabled_store,
        discovery_timeout_sec=config.tools.discovery_timeout_sec,
        dispatch_timeout_sec=config.tools.dispatch_timeout_sec,
    )


def build_gateway(
    *,
    workspace_root: Path,
    config_paths: Optional[List[Path]] = None,
    backend: Optional[ChatBackend] = None,
    orchestrator: Optional[ToolOrchestrator] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Tuple[StreamingGateway, ResolvedGatewayConfig]:
    """
    构造一个带 bootstrap 语义的 StreamingGateway（适配 CLI 等上层）。

    参数：
    - workspace_root：工作区根目录
    - config_paths：overlay YAML 路径；缺省时按 discover_overlay_paths 发现
    - backend：可选，显式注入 ChatBackend；为 None 时使用 OpenAI-compatible httpx backend
    - orchestrator：可选，显式注入 ToolOrchestrator；为 None 时按 `tools.providers` 组装
    - transport：可选 httpx transport（同时用于上游与 tool provider）

    返回：
    - (gateway, resolved_config)
    """

    resolved = resolve_effective_config(workspace_root=workspace_root, config_paths=config_paths)
    cfg = resolved.config
    chosen_backend = backend or OpenAIChatCompletionsBackend(cfg.llm, transport=transport)
    chosen_orchestrator = orchestrator or build_orchestrator(cfg, transport=transport)
    return StreamingGateway(config=cfg, backend=chosen_backend, orchestrator=chosen_orchestrator), resolved
