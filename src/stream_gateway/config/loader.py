"""
配置 schema 与 YAML overlay 合并。

多份配置按给定顺序逐层深度合并，越靠后优先级越高；合并结果交给 pydantic 模型校验，
未声明的字段直接报错，拼错的 key 不会被悄悄忽略。
组件不自行读取配置：bootstrap 生成一次 `GatewayConfig` 快照，再显式传给各组件。
"""

from __future__ import annotations

from copy import deepcopy
from pathlib import Path
from typing import Any, Dict, List, Mapping, MutableMapping

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator

from stream_gateway.core.contracts import ProviderDescriptor


def _deep_merge(base: MutableMapping[str, Any], overlay: Mapping[str, Any]) -> MutableMapping[str, Any]:
    """把 overlay 就地合入 base：两边都是 mapping 的 key 逐层下钻，其余（含 list）整体替换为 overlay 的副本。"""

    for key, value in overlay.items():
        current = base.get(key)
        if isinstance(current, dict) and isinstance(value, Mapping):
            _deep_merge(current, value)
        else:
            base[key] = deepcopy(value)
    return base


class GatewayLlmConfig(BaseModel):
    """上游调用参数（超时与重试）。"""

    model_config = ConfigDict(extra="forbid")

    class Retry(BaseModel):
        """
        上游重试/退避策略。

        说明：
        - 仅在“尚未输出任何事件”时重试，避免重复输出；
        - base/cap/jitter 只影响“无 Retry-After 头”时的指数退避计算。
        """

        model_config = ConfigDict(extra="forbid")

        max_retries: int = Field(default=2, ge=0)
        base_delay_sec: float = Field(default=0.5, ge=0.0)
        cap_delay_sec: float = Field(default=8.0, ge=0.0)
        jitter_ratio: float = Field(default=0.1, ge=0.0, le=1.0)

    timeout_sec: float = Field(default=60, gt=0)
    retry: Retry = Field(default_factory=Retry)


class GatewaySettings(BaseModel):
    """
    Gateway 行为参数。

    字段：
    - local_proxy_url：self_hosted provider 未配置 base_url 时的回退地址
    - max_tool_rounds：单个 turn 内最多“工具执行 → 再次请求上游”的轮数
    - stream_repair_providers：需要修补 tool_calls[].index 的 provider 名（小写）
    - app_referer/app_title：openrouter 识别 header
    """

    model_config = ConfigDict(extra="forbid")

    local_proxy_url: str = "http://127.0.0.1:1337/v1"
    max_tool_rounds: int = Field(default=8, ge=0)
    stream_repair_providers: List[str] = Field(default_factory=lambda: ["gemini", "google"])
    app_referer: str = ""
    app_title: str = ""

    @field_validator("stream_repair_providers")
    @classmethod
    def _lower_names(cls, value: List[str]) -> List[str]:
        """provider 名统一为小写（与 resolver 的匹配口径一致）。"""

        return [str(v).strip().lower() for v in value if str(v).strip()]


class ToolProviderConfig(BaseModel):
    """HTTP tool provider 条目（retrieval 风格：`GET /tools` + `POST /tools/call`）。"""

    model_config = ConfigDict(extra="forbid")

    id: str
    base_url: str


class GatewayToolsConfig(BaseModel):
    """工具发现/派发的超时与 provider 列表。"""

    model_config = ConfigDict(extra="forbid")

    discovery_timeout_sec: float = Field(default=10.0, gt=0)
    dispatch_timeout_sec: float = Field(default=60.0, gt=0)
    providers: List[ToolProviderConfig] = Field(default_factory=list)


class GatewayConfig(BaseModel):
    """Gateway 根配置（schema 校验入口）。"""

    model_config = ConfigDict(extra="forbid")

    config_version: int = 1
    llm: GatewayLlmConfig = Field(default_factory=GatewayLlmConfig)
    gateway: GatewaySettings = Field(default_factory=GatewaySettings)
    tools: GatewayToolsConfig = Field(default_factory=GatewayToolsConfig)
    providers: List[ProviderDescriptor] = Field(default_factory=list)

    def get_provider(self, name: str) -> ProviderDescriptor | None:
        """按名称查找 provider（大小写不敏感）。"""

        key = (name or "").strip().lower()
        for p in self.providers:
            if p.name.strip().lower() == key:
                return p
        return None


def read_overlay_file(path: Path) -> Dict[str, Any]:
    """
    读取一份 YAML 配置文件；空文件视为 `{}`。

    异常：
    - ValueError：文件不存在，或根节点不是 mapping
    """

    if not path.is_file():
        raise ValueError(f"config file not found: {path}")
    with path.open("r", encoding="utf-8") as fh:
        loaded = yaml.safe_load(fh)
    if loaded is None:
        return {}
    if not isinstance(loaded, dict):
        raise ValueError(f"config root must be a mapping: {path}")
    return loaded


def load_config_dicts(config_dicts: List[Dict[str, Any]]) -> GatewayConfig:
    """按顺序合并若干配置 dict（后者优先）并校验为 `GatewayConfig`。"""

    merged: Dict[str, Any] = {}
    for layer in filter(None, config_dicts):
        _deep_merge(merged, layer)
    return GatewayConfig.model_validate(merged)


def load_config(config_paths: List[Path]) -> GatewayConfig:
    """读取并合并若干 YAML 文件（后者优先），返回校验后的 `GatewayConfig`。"""

    return load_config_dicts([read_overlay_file(Path(p)) for p in config_paths])
