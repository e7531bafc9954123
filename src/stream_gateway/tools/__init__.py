"""Tool System（协议 + provider + 编排）。"""

from __future__ import annotations

from stream_gateway.tools.protocol import ToolCall, ToolCallContext, ToolProvider, ToolResult, ToolSpec

__all__ = [
    "ToolCall",
    "ToolCallContext",
    "ToolProvider",
    "ToolResult",
    "ToolSpec",
]
