"""
Turn 失败错误类型化（TurnErrorKind / TurnError）。

用途：把 turn 内任意异常映射为稳定的 `error` 事件 payload（机器可消费 + 人类可读）。
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Tuple

import httpx

from stream_gateway.core.errors import (
    CancellationError,
    ConfigurationError,
    GatewayError,
    ToolDispatchError,
    ToolProviderError,
    UpstreamProtocolError,
)

_MAX_MESSAGE_CHARS = 800


class TurnErrorKind(str, Enum):
    """`error` 事件的稳定错误分类。"""

    AUTH_ERROR = "auth_error"
    RATE_LIMITED = "rate_limited"
    SERVER_ERROR = "server_error"
    HTTP_ERROR = "http_error"

    CONFIGURATION_ERROR = "configuration_error"
    UPSTREAM_PROTOCOL_ERROR = "upstream_protocol_error"
    TOOL_ERROR = "tool_error"
    CANCELLED = "cancelled"
    LLM_ERROR = "llm_error"

    UNKNOWN = "unknown"


@dataclass(frozen=True)
class TurnError:
    """
    一次失败 turn 的归类结果。

    `retryable` 表示客户端重发同一轮是否有意义；`retry_after_ms` 仅在上游给出整数秒 `Retry-After` 时存在；
    `details` 只放可 JSON 序列化的上下文，不含凭证。
    """

    error_kind: TurnErrorKind
    message: str
    retryable: bool = False
    retry_after_ms: Optional[int] = None
    details: Dict[str, Any] = field(default_factory=dict)

    def to_payload(self) -> Dict[str, Any]:
        """转换为 `error` 事件的 payload dict（稳定字段名）。"""

        payload: Dict[str, Any] = {"error_kind": self.error_kind.value, "message": self.message or "", "retryable": self.retryable}
        optional = {"retry_after_ms": self.retry_after_ms, "details": dict(self.details) or None}
        payload.update({k: v for k, v in optional.items() if v is not None})
        return payload


_GATEWAY_KINDS: Dict[type, Tuple[TurnErrorKind, bool]] = {
    ConfigurationError: (TurnErrorKind.CONFIGURATION_ERROR, False),
    UpstreamProtocolError: (TurnErrorKind.UPSTREAM_PROTOCOL_ERROR, False),
    ToolProviderError: (TurnErrorKind.TOOL_ERROR, True),
    ToolDispatchError: (TurnErrorKind.TOOL_ERROR, True),
    CancellationError: (TurnErrorKind.CANCELLED, False),
}


def _clip(text: str) -> str:
    """超长消息截断到 `_MAX_MESSAGE_CHARS` 并加标记。"""

    return text if len(text) <= _MAX_MESSAGE_CHARS else text[:_MAX_MESSAGE_CHARS] + "...<truncated>"


def _seconds_header_ms(response: httpx.Response) -> Optional[int]:
    """`Retry-After` 为正整数秒时换算为毫秒；HTTP-date 等其它形式返回 None。"""

    raw = (response.headers.get("Retry-After") or "").strip()
    if not (raw.isascii() and raw.isdigit()) or int(raw) == 0:
        return None
    return int(raw) * 1000


def _upstream_message(response: httpx.Response) -> Optional[str]:
    """取响应体 `{"error": {"message": ...}}` 中的消息；响应体不可读或不是该形状时返回 None。"""

    try:
        body = response.json()
    except (ValueError, UnicodeDecodeError, httpx.ResponseNotRead):
        return None
    err = body.get("error") if isinstance(body, dict) else None
    text = err.get("message") if isinstance(err, dict) else None
    return text.strip() if isinstance(text, str) and text.strip() else None


def _status_kind(code: int) -> Tuple[TurnErrorKind, bool]:
    """HTTP 状态码 → (分类, 是否可重试)。"""

    if code in (401, 403):
        return TurnErrorKind.AUTH_ERROR, False
    if code == 429:
        return TurnErrorKind.RATE_LIMITED, True
    if code >= 500:
        return TurnErrorKind.SERVER_ERROR, True
    return TurnErrorKind.HTTP_ERROR, False


def _from_http_status(exc: httpx.HTTPStatusError) -> TurnError:
    """HTTP 非 2xx → TurnError；429 附带 retry_after_ms。"""

    response = exc.response
    code = int(response.status_code)
    kind, retryable = _status_kind(code)
    upstream = _upstream_message(response)
    return TurnError(
        error_kind=kind,
        message=_clip(f"HTTP {code}: {upstream}" if upstream else f"HTTP {code}"),
        retryable=retryable,
        retry_after_ms=_seconds_header_ms(response) if kind is TurnErrorKind.RATE_LIMITED else None,
        details={"status_code": code},
    )


def classify_turn_exception(exc: BaseException) -> TurnError:
    """
    把 turn 内抛出的异常归类为 TurnError，作为 `error` 事件的 payload 来源。

    message 只取异常自身的文本（GatewayError 的 message 或 `str(exc)`），不拼接请求头或配置值。
    """

    if isinstance(exc, GatewayError):
        kind, retryable = next(
            (mapped for klass, mapped in _GATEWAY_KINDS.items() if isinstance(exc, klass)),
            (TurnErrorKind.UNKNOWN, False),
        )
        details: Dict[str, Any] = {"code": exc.code}
        if kind in (TurnErrorKind.CONFIGURATION_ERROR, TurnErrorKind.UPSTREAM_PROTOCOL_ERROR):
            details.update(exc.details)
        elif kind in (TurnErrorKind.TOOL_ERROR, TurnErrorKind.CANCELLED):
            details = {}
        return TurnError(error_kind=kind, message=exc.message, retryable=retryable, details=details)

    if isinstance(exc, httpx.HTTPStatusError):
        return _from_http_status(exc)
    if isinstance(exc, httpx.TimeoutException):
        return TurnError(TurnErrorKind.LLM_ERROR, str(exc) or "upstream timeout", True, details={"kind": "timeout"})
    if isinstance(exc, httpx.RequestError):
        return TurnError(TurnErrorKind.LLM_ERROR, str(exc) or "upstream request failed", True, details={"kind": "request_error"})

    return TurnError(error_kind=TurnErrorKind.UNKNOWN, message=_clip(str(exc) or type(exc).__name__))
