"""
Streaming Inference Gateway（Python）。

说明：
- 通过统一的 streaming 接口对接多种 LLM 上游（OpenAI / Gemini / OpenRouter / 自托管 OpenAI 兼容服务）。
- 当前包含：
  - 核心契约（TurnRequest / StreamEvent / UsageSnapshot）与错误分类
  - 配置加载器（YAML overlay + pydantic 校验）
  - Endpoint 解析（兼容模式表）与推理参数映射
  - SSE 修补层（tool_calls[].index 补齐）与 SSE 解析器
  - Tool 编排（发现/过滤/派发）
  - 用量与吞吐聚合
  - 会话状态机（send / regenerate / cancel）
"""

from __future__ import annotations

from stream_gateway.core.contracts import (
    ChatMessage,
    InferenceParameters,
    ProviderDescriptor,
    StreamEvent,
    TurnRequest,
    UsageSnapshot,
)
from stream_gateway.gateway.session import SessionState, StreamingGateway

__all__ = [
    "ChatMessage",
    "InferenceParameters",
    "ProviderDescriptor",
    "SessionState",
    "StreamEvent",
    "StreamingGateway",
    "TurnRequest",
    "UsageSnapshot",
    "__version__",
]

__version__ = "0.1.0"
