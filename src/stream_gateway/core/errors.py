"""
Gateway 内部错误分类（异常类型）。

说明：
- 异常用于模块间传递“错误层级”语义；对外（事件流）统一映射为 `error` 事件或 tool-result 内容。
- message 一律使用英文，且不得包含密钥（API key / token）。
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict


@dataclass(frozen=True)
class GatewayIssue:
    """结构化问题对象（可直接写入事件 payload）。"""

    code: str
    message: str
    details: Dict[str, Any]


class GatewayError(Exception):
    """Gateway 结构化错误基类（英文 `code/message/details`）。"""

    default_code = "GATEWAY_ERROR"

    def __init__(self, message: str, *, code: str | None = None, details: Dict[str, Any] | None = None) -> None:
        """创建结构化错误。

        参数：
        - `message`：英文错误消息（面向用户/开发者，可直接展示）
        - `code`：稳定错误码（英文大写下划线）；缺省使用类级别 `default_code`
        - `details`：结构化上下文信息（必须可 JSON 序列化）
        """

        super().__init__(message)
        self.code = code or self.default_code
        self.message = message
        self.details: Dict[str, Any] = details or {}

    def __str__(self) -> str:
        """返回用于日志的字符串表示。"""

        return f"{self.code}: {self.message}"

    def to_issue(self) -> GatewayIssue:
        """把异常转换为可序列化问题对象。"""

        return GatewayIssue(code=self.code, message=self.message, details=dict(self.details))


class ConfigurationError(GatewayError):
    """
    配置错误：缺少凭证、provider 无法解析、未知兼容模式等。

    说明：
    - 对本轮 turn 是致命错误；必须在任何网络调用之前暴露；
    - 不做自动重试。
    """

    default_code = "CONFIGURATION_ERROR"


class UpstreamProtocolError(GatewayError):
    """上游返回的 payload 无法被规范化，或上游在流内显式报告失败。"""

    default_code = "UPSTREAM_PROTOCOL_ERROR"


class ToolProviderError(GatewayError):
    """单个 tool provider 不可达（仅影响该 provider；refresh 时降级为 0 个工具）。"""

    default_code = "TOOL_PROVIDER_ERROR"


class ToolDispatchError(GatewayError):
    """单次 tool 调用失败（被转换为带 error 字段的 ToolResult；turn 继续）。"""

    default_code = "TOOL_DISPATCH_ERROR"


class CancellationError(GatewayError):
    """会话主动取消（不作为失败上报给用户）。"""

    default_code = "CANCELLED"
