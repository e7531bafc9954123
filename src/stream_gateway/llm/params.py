"""
推理参数映射（canonical → provider 原生字段）。

口径：
- 只输出目标 flavor 认识的字段，并使用其原生字段名；
- 缺失/None 的字段永不转发；不支持的字段直接丢弃；
- `extra` 只转发 flavor 的 passthrough 白名单内的 key。
"""

from __future__ import annotations

from typing import Any, Dict, FrozenSet, Mapping

from stream_gateway.core.contracts import InferenceParameters
from stream_gateway.core.errors import ConfigurationError

# canonical 字段 → 原生字段；缺席表示该 flavor 丢弃此字段
_FIELD_MAP: Dict[str, Dict[str, str]] = {
    "openai": {
        "temperature": "temperature",
        "top_p": "top_p",
        "presence_penalty": "presence_penalty",
        "frequency_penalty": "frequency_penalty",
        "max_output_tokens": "max_tokens",
        "stop_sequences": "stop",
    },
    "gemini": {
        "temperature": "temperature",
        "top_p": "top_p",
        "max_output_tokens": "max_tokens",
        "stop_sequences": "stop",
    },
    "self_hosted": {
        "temperature": "temperature",
        "top_p": "top_p",
        "presence_penalty": "presence_penalty",
        "frequency_penalty": "frequency_penalty",
        "max_output_tokens": "max_tokens",
        "stop_sequences": "stop",
        "top_k": "top_k",
        "repeat_penalty": "repeat_penalty",
    },
}

_PASSTHROUGH: Dict[str, FrozenSet[str]] = {
    "openai": frozenset({"seed", "response_format", "user", "logit_bias"}),
    "gemini": frozenset({"seed", "response_format", "reasoning_effort"}),
    "self_hosted": frozenset({"seed", "response_format", "min_p", "typical_p", "mirostat"}),
}

PARAM_FLAVORS = tuple(_FIELD_MAP.keys())


def _flavor_tables(flavor: str) -> tuple[Dict[str, str], FrozenSet[str]]:
    """返回 flavor 的字段映射与 passthrough 集合；未知 flavor 抛 ConfigurationError。"""

    fields = _FIELD_MAP.get(flavor)
    if fields is None:
        raise ConfigurationError(
            f"unknown parameter flavor: {flavor!r}",
            details={"flavor": flavor, "known": list(PARAM_FLAVORS)},
        )
    return fields, _PASSTHROUGH[flavor]


def map_parameters(params: InferenceParameters | None, flavor: str) -> Dict[str, Any]:
    """
    把 canonical 推理参数映射为目标 flavor 的请求字段（纯函数）。

    参数：
    - params：稀疏参数记录；None 等价于空集
    - flavor：`openai` / `gemini` / `self_hosted`

    返回：
    - dict：仅包含非 None、且目标 flavor 支持的字段（原生字段名）
    """

    fields, passthrough = _flavor_tables(flavor)
    if params is None:
        return {}

    out: Dict[str, Any] = {}
    for canonical, native in fields.items():
        value = getattr(params, canonical)
        if value is None:
            continue
        if isinstance(value, list):
            value = list(value)
        out[native] = value

    for key, value in params.extra.items():
        if value is None or key not in passthrough:
            continue
        # canonical 字段优先，extra 不得覆盖
        if key in out:
            continue
        out[key] = value
    return out


def parameters_from_wire(wire: Mapping[str, Any], flavor: str) -> InferenceParameters:
    """
    把已映射的原生字段重新解释为 canonical 参数（`map_parameters` 的逆过程）。

    说明：
    - 用于幂等性：`map_parameters(parameters_from_wire(m, f), f) == m`；
    - 原生字段名未知的 key 进入 `extra`（再次映射时仍按 passthrough 过滤）。
    """

    fields, _ = _flavor_tables(flavor)
    native_to_canonical = {native: canonical for canonical, native in fields.items()}

    kwargs: Dict[str, Any] = {}
    extra: Dict[str, Any] = {}
    for key, value in wire.items():
        canonical = native_to_canonical.get(key)
        if canonical is not None:
            kwargs[canonical] = value
        else:
            extra[key] = value
    return InferenceParameters(**kwargs, extra=extra)
