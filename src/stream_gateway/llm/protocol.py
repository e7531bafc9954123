"""
LLM 协议：ChatRequest / ChatBackend。

设计目标：
- 用单一参数对象承载一次上游调用的全部信息（目标、消息、工具、已映射参数）；
- 允许通过 `extra` 承载调用方选项（例如 `on_retry` 回调），保持协议签名稳定。
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Protocol

from stream_gateway.llm.chat_sse import ParsedEvent
from stream_gateway.llm.resolver import UpstreamTarget
from stream_gateway.tools.protocol import ToolSpec


@dataclass(frozen=True)
class ChatRequest:
    """
    ChatRequest：一次上游 streaming 调用的参数包。

    字段：
    - target：已解析的上游目标（URL/headers/兼容模式）
    - messages：OpenAI-compatible message list（由 `llm.messages` 组装）
    - tools：可选；注入请求的工具（为空时不发送 `tools`/`tool_choice`）
    - parameters：已按 flavor 映射的推理参数（原生字段名）
    - index_base：turn 级 tool-call index 的起点
    - turn_id：可选，用于日志关联
    - extra：调用方选项（例如 `on_retry`）
    """

    target: UpstreamTarget
    messages: List[Dict[str, Any]]
    tools: List[ToolSpec] = field(default_factory=list)
    parameters: Dict[str, Any] = field(default_factory=dict)
    index_base: int = 0
    turn_id: str | None = None
    extra: Dict[str, Any] = field(default_factory=dict)


class ChatBackend(Protocol):
    """LLM backend 抽象（chat.completions streaming）。"""

    async def stream_chat(self, request: ChatRequest) -> AsyncIterator[ParsedEvent]:
        """
        唯一入口：以单一 ChatRequest 参数包承载请求信息。

        约束：
        - 返回的 item 需满足 `stream_gateway.llm.chat_sse.ParsedEvent` 的事件约定。
        """

        ...
