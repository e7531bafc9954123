"""
LLM 上游（OpenAI-compatible chat.completions）。

包含：
- Endpoint 解析（兼容模式表）与推理参数映射
- SSE 修补层与可离线测试的 SSE parser
- httpx streaming backend 与 Fake backend
"""

from __future__ import annotations

from stream_gateway.llm.chat_sse import ChatCompletionsSseParser, ParsedEvent
from stream_gateway.llm.fake import FakeChatBackend, FakeChatCall
from stream_gateway.llm.openai_chat import OpenAIChatCompletionsBackend
from stream_gateway.llm.protocol import ChatBackend, ChatRequest

__all__ = [
    "ChatBackend",
    "ChatCompletionsSseParser",
    "ChatRequest",
    "FakeChatBackend",
    "FakeChatCall",
    "OpenAIChatCompletionsBackend",
    "ParsedEvent",
]
