"""
Endpoint 解析（provider/model 选择 → 具体上游请求目标）。

设计：
- 兼容模式是封闭集合，以 `CompatibilityProfile` 表驱动（调用点不做逐 provider 分支）；
- 缺凭证/无法确定 base URL 时抛 `ConfigurationError`，且一定发生在任何网络调用之前；
- 结果 `UpstreamTarget` 携带 header（含 secret），不得写入日志或事件。
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Optional, Tuple

from stream_gateway.config.loader import GatewaySettings
from stream_gateway.core.contracts import ProviderDescriptor
from stream_gateway.core.errors import ConfigurationError

logger = logging.getLogger(__name__)


class CompatibilityMode(str, Enum):
    """上游兼容模式（封闭集合）。"""

    OPENAI = "openai"
    GEMINI = "gemini"
    OPENROUTER = "openrouter"
    SELF_HOSTED = "self_hosted"


@dataclass(frozen=True)
class CompatibilityProfile:
    """
    单个兼容模式的静态描述。

    字段：
    - default_base_url：缺省 base URL（None 表示回退到本地 proxy）
    - requires_credential：是否必须有 API key
    - param_flavor：Parameter Mapper 使用的 flavor
    - patch_tool_call_index：是否需要对响应做 tool_calls[].index 修补
    - include_usage：是否请求 `stream_options.include_usage`
    - identification_headers：是否附加 `HTTP-Referer` / `X-Title`
    - ensure_v1_suffix：base URL 缺少 `/v1` 时是否补齐
    """

    mode: CompatibilityMode
    default_base_url: Optional[str]
    requires_credential: bool
    param_flavor: str
    patch_tool_call_index: bool = False
    include_usage: bool = True
    identification_headers: bool = False
    ensure_v1_suffix: bool = False


COMPATIBILITY_PROFILES: Dict[CompatibilityMode, CompatibilityProfile] = {
    CompatibilityMode.OPENAI: CompatibilityProfile(
        mode=CompatibilityMode.OPENAI,
        default_base_url="https://api.openai.com/v1",
        requires_credential=True,
        param_flavor="openai",
    ),
    CompatibilityMode.GEMINI: CompatibilityProfile(
        mode=CompatibilityMode.GEMINI,
        default_base_url="https://generativelanguage.googleapis.com/v1beta/openai",
        requires_credential=True,
        param_flavor="gemini",
        patch_tool_call_index=True,
    ),
    CompatibilityMode.OPENROUTER: CompatibilityProfile(
        mode=CompatibilityMode.OPENROUTER,
        default_base_url="https://openrouter.ai/api/v1",
        requires_credential=True,
        param_flavor="openai",
        identification_headers=True,
    ),
    CompatibilityMode.SELF_HOSTED: CompatibilityProfile(
        mode=CompatibilityMode.SELF_HOSTED,
        default_base_url=None,
        requires_credential=False,
        param_flavor="self_hosted",
        ensure_v1_suffix=True,
    ),
}

_MODE_BY_PROVIDER_NAME: Dict[str, CompatibilityMode] = {
    "openai": CompatibilityMode.OPENAI,
    "gemini": CompatibilityMode.GEMINI,
    "google": CompatibilityMode.GEMINI,
    "openrouter": CompatibilityMode.OPENROUTER,
    "ollama": CompatibilityMode.SELF_HOSTED,
    "llamacpp": CompatibilityMode.SELF_HOSTED,
    "lmstudio": CompatibilityMode.SELF_HOSTED,
    "local": CompatibilityMode.SELF_HOSTED,
    "self_hosted": CompatibilityMode.SELF_HOSTED,
    "proxy": CompatibilityMode.SELF_HOSTED,
}


@dataclass(frozen=True)
class UpstreamTarget:
    """
    解析后的上游请求目标。

    字段：
    - base_url / url：base 与完整 `/chat/completions` URL
    - headers：完整请求 header（含 Authorization；不得记录）
    - compatibility_mode / param_flavor：来自 profile
    - patch_tool_call_index：响应是否经过 stream repair
    - include_usage：请求体是否携带 `stream_options.include_usage`
    """

    base_url: str
    url: str
    model_id: str
    compatibility_mode: CompatibilityMode
    param_flavor: str
    headers: Dict[str, str] = field(default_factory=dict, repr=False)
    patch_tool_call_index: bool = False
    include_usage: bool = True

    @property
    def has_auth_header(self) -> bool:
        """是否携带 Authorization header。"""

        return "Authorization" in self.headers


def select_mode(provider: ProviderDescriptor) -> CompatibilityMode:
    """
    选择兼容模式。

    优先级：
    1) `provider.compatibility_mode`（显式；非法值抛 ConfigurationError）
    2) provider name 映射表
    3) 默认 openai
    """

    explicit = (provider.compatibility_mode or "").strip().lower()
    if explicit:
        try:
            return CompatibilityMode(explicit)
        except ValueError as exc:
            raise ConfigurationError(
                f"unknown compatibility mode: {explicit!r}",
                details={"provider": provider.name, "known": [m.value for m in CompatibilityMode]},
            ) from exc
    return _MODE_BY_PROVIDER_NAME.get(provider.name.strip().lower(), CompatibilityMode.OPENAI)


def _normalize_base_url(base_url: str, *, ensure_v1: bool) -> str:
    """去掉结尾 `/`；需要时补齐 `/v1` 路径段。"""

    base = base_url.strip().rstrip("/")
    if ensure_v1:
        segments = [s for s in base.split("://", 1)[-1].split("/")[1:] if s]
        if "v1" not in segments:
            base = f"{base}/v1"
    return base


def _build_headers(
    provider: ProviderDescriptor, profile: CompatibilityProfile, settings: GatewaySettings
) -> Tuple[Dict[str, str], bool]:
    """组装请求 header；返回 (headers, has_key)。"""

    headers: Dict[str, str] = {"Content-Type": "application/json"}
    key = (provider.api_key or "").strip()
    if key:
        headers["Authorization"] = f"Bearer {key}"
    if profile.identification_headers:
        if settings.app_referer:
            headers["HTTP-Referer"] = settings.app_referer
        if settings.app_title:
            headers["X-Title"] = settings.app_title
    for h in provider.custom_headers:
        name = h.header.strip()
        if not name or name.lower() == "authorization":
            continue
        headers[name] = h.value
    return headers, bool(key)


def resolve(model_id: str, provider: ProviderDescriptor, *, settings: GatewaySettings | None = None) -> UpstreamTarget:
    """
    把 (model_id, provider) 解析为 `UpstreamTarget`。

    参数：
    - model_id：上游模型 id
    - provider：provider 配置快照（只读）
    - settings：gateway 配置（本地 proxy 地址、repair provider 集合、识别 header）

    异常：
    - ConfigurationError：profile 要求凭证但 provider 没有；或无法确定 base URL
    """

    settings = settings or GatewaySettings()
    mode = select_mode(provider)
    profile = COMPATIBILITY_PROFILES[mode]

    headers, has_key = _build_headers(provider, profile, settings)
    if profile.requires_credential and not has_key:
        raise ConfigurationError(
            f"provider {provider.name!r} requires an API key",
            details={"provider": provider.name, "compatibility_mode": mode.value},
        )

    raw_base = (provider.base_url or "").strip() or profile.default_base_url
    if raw_base is None and mode is CompatibilityMode.SELF_HOSTED:
        raw_base = (settings.local_proxy_url or "").strip() or None
    if not raw_base:
        raise ConfigurationError(
            f"cannot determine base URL for provider {provider.name!r}",
            details={"provider": provider.name, "compatibility_mode": mode.value},
        )

    base = _normalize_base_url(raw_base, ensure_v1=profile.ensure_v1_suffix)
    patch = profile.patch_tool_call_index or provider.name.strip().lower() in settings.stream_repair_providers

    logger.debug("resolved provider=%s mode=%s base=%s patch=%s", provider.name, mode.value, base, patch)
    return UpstreamTarget(
        base_url=base,
        url=f"{base}/chat/completions",
        model_id=model_id,
        compatibility_mode=mode,
        param_flavor=profile.param_flavor,
        headers=headers,
        patch_tool_call_index=patch,
        include_usage=profile.include_usage,
    )
