"""
Fake LLM backend（离线回归夹具）。

用途：
- 在不依赖真实上游/外网的情况下，回归会话状态机的编排逻辑（tool_calls → 派发 → 回注 → 继续、取消、用量）。
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import AsyncIterator, List, Sequence

from stream_gateway.llm.chat_sse import ParsedEvent
from stream_gateway.llm.protocol import ChatRequest


@dataclass(frozen=True)
class FakeChatCall:
    """
    一次 chat 调用的预期输出。

    字段：
    - events：按顺序吐出的 ParsedEvent
    - delay_sec：每个事件之前的等待（模拟慢速上游；取消测试使用）
    """

    events: List[ParsedEvent] = field(default_factory=list)
    delay_sec: float = 0.0


class FakeChatBackend:
    """
    用脚本化事件序列模拟上游 streaming 输出。

    说明：
    - 每次 `stream_chat(...)` 消耗一个 `FakeChatCall`，并把收到的 ChatRequest 记录到 `requests`
    - 事件序列未包含 `completed` 时会在末尾自动补齐
    """

    def __init__(self, calls: Sequence[FakeChatCall]) -> None:
        """
        参数：
        - `calls`：预设的调用序列；每次 `stream_chat` 会消费一个条目。
        """

        self._calls = list(calls)
        self._idx = 0
        self.requests: List[ChatRequest] = []
        self.events_yielded = 0

    async def stream_chat(self, request: ChatRequest) -> AsyncIterator[ParsedEvent]:
        """按预设事件序列产出 streaming 事件。"""

        if self._idx >= len(self._calls):
            raise ValueError("FakeChatBackend calls exhausted")
        call = self._calls[self._idx]
        self._idx += 1
        self.requests.append(request)

        completed_seen = False
        for ev in call.events:
            if call.delay_sec > 0:
                await asyncio.sleep(call.delay_sec)
            if ev.type == "completed":
                completed_seen = True
            self.events_yielded += 1
            yield ev
        if not completed_seen:
            yield ParsedEvent(type="completed", finish_reason="fake_eof")
