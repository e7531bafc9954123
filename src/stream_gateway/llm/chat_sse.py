"""
Chat Completions streaming SSE 解析（data payload → ParsedEvent）。

覆盖范围：
- 终止哨兵 `[DONE]` / `DONE`，以及没有哨兵时的 EOF（`finish()`）
- `choices[].delta.content`：字符串或 `[{"text": ...}]` 形式的文本增量
- `choices[].delta.tool_calls[]`：同一 call 的首个分片产出 `tool_call_start`，参数分片产出 `tool_call_delta`；
  `finish_reason="tool_calls"`、哨兵或 EOF 时汇总为 `ToolCall` 列表
- 顶层 `usage`（`stream_options.include_usage` 时通常单独位于最后一个 chunk）
- 顶层 `error` 对象：抛 `UpstreamProtocolError`

index 口径：
- 上游 index 可能缺失或被重复使用，只用来判断“分片属于哪个 call”（见 `_SlotTable`）；
- 对外的 `index` 按 call 首次出现的顺序在 turn 内单调分配，跨上游调用通过 `index_base` 延续。
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Iterator, List, Optional

from stream_gateway.core.errors import UpstreamProtocolError
from stream_gateway.tools.protocol import ToolCall

_SENTINELS = ("[DONE]", "DONE")


@dataclass(frozen=True)
class ParsedEvent:
    """
    解析器输出的内部事件。

    type 取值：
    - `text_delta`：文本增量（text）
    - `tool_call_start`：某个 call 的首个分片（index/call_id/name）
    - `tool_call_delta`：参数分片（index/arguments_delta）
    - `usage`：上游用量（usage）
    - `tool_calls`：汇总后的调用批次（tool_calls）
    - `completed`：流结束（finish_reason）
    """

    type: str
    text: Optional[str] = None
    index: Optional[int] = None
    call_id: Optional[str] = None
    name: Optional[str] = None
    arguments_delta: Optional[str] = None
    usage: Dict[str, Any] = field(default_factory=dict)
    tool_calls: Optional[List[ToolCall]] = None
    finish_reason: Optional[str] = None


@dataclass
class _PendingCall:
    """正在拼接中的单个 tool call；`arguments` 为 `function.arguments` 分片的原样拼接。"""

    turn_index: int
    call_id: Optional[str] = None
    name: Optional[str] = None
    arguments: str = ""

    def to_tool_call(self) -> ToolCall:
        """转换为 ToolCall；参数不是 JSON object 时按空对象处理。"""

        call_id = self.call_id or f"tool-call-{self.turn_index}"
        try:
            decoded = json.loads(self.arguments) if self.arguments.strip() else {}
        except ValueError:
            decoded = {}
        return ToolCall(
            call_id=call_id,
            name=self.name or "",
            args=decoded if isinstance(decoded, dict) else {},
            raw_arguments=self.arguments,
            index=self.turn_index,
        )


def _str_or_none(value: Any) -> Optional[str]:
    """非空字符串原样返回，其余返回 None。"""

    return value if isinstance(value, str) and value else None


def _int_or_none(value: Any) -> Optional[int]:
    """int（排除 bool）原样返回，其余返回 None。"""

    return value if isinstance(value, int) and not isinstance(value, bool) else None


class _SlotTable:
    """
    一个上游调用批次内“分片 → call 槽位”的归属表。

    归属规则（依次尝试）：
    1) 分片的 `id` 已出现过：沿用其槽位
    2) 分片带整数 `index`：使用该 index 当前指向的槽位；若槽位已被另一个 id 占用（上游复用了 index），
       分配新槽位并让该 index 改指新槽位
    3) 分片带新 `id`：分配新槽位
    4) 都没有：沿用上一个分片的槽位；若该分片携带 `function.name` 而上一个槽位已有 name，则分配新槽位
    """

    def __init__(self) -> None:
        """创建空表。"""

        self.calls: Dict[int, _PendingCall] = {}
        self.order: List[int] = []
        self._by_id: Dict[str, int] = {}
        self._by_index: Dict[int, int] = {}
        self._last: Optional[int] = None
        self._cursor = 0

    def __bool__(self) -> bool:
        """是否存在未汇总的 call。"""

        return bool(self.calls)

    def _fresh_slot(self) -> int:
        """返回下一个未被占用的槽位号。"""

        while self._cursor in self.calls:
            self._cursor += 1
        slot = self._cursor
        self._cursor += 1
        return slot

    def slot_for(self, fragment: Dict[str, Any]) -> int:
        """按归属规则返回分片所属的槽位，并更新 id 映射与“上一个槽位”。"""

        upstream_index = _int_or_none(fragment.get("index"))
        call_id = _str_or_none(fragment.get("id"))

        if call_id is not None and call_id in self._by_id:
            slot: Optional[int] = self._by_id[call_id]
        elif upstream_index is not None:
            slot = self._by_index.get(upstream_index, upstream_index)
            occupant = self.calls.get(slot)
            if call_id is not None and occupant is not None and occupant.call_id and occupant.call_id != call_id:
                slot = self._fresh_slot()
            self._by_index[upstream_index] = slot
        elif call_id is not None:
            slot = self._fresh_slot()
        else:
            slot = self._last
            fn = fragment.get("function")
            starts_new_name = isinstance(fn, dict) and _str_or_none(fn.get("name")) is not None
            previous = self.calls.get(slot) if slot is not None else None
            if starts_new_name and previous is not None and previous.name:
                slot = self._fresh_slot()

        if slot is None:
            slot = self._fresh_slot()
        if call_id is not None and call_id not in self._by_id:
            self._by_id[call_id] = slot
        self._last = slot
        return slot

    def drain(self) -> List[ToolCall]:
        """按首次出现顺序汇总带 name 的 call，并清空表。"""

        out = [self.calls[s].to_tool_call() for s in self.order if self.calls[s].name]
        self.calls.clear()
        self.order.clear()
        self._by_id.clear()
        self._by_index.clear()
        self._last = None
        self._cursor = 0
        return out


class ChatCompletionsSseParser:
    """
    OpenAI-compatible chat.completions SSE 解析器（只处理 `data:` 后的 JSON 文本）。

    用法：每条 data 调用 `feed_data(data)`；底层流结束时调用 `finish()`，保证恰好一次 `completed`。
    """

    def __init__(self, *, index_base: int = 0) -> None:
        """
        参数：
        - index_base：turn 级 index 的起点（同一 turn 的后续上游调用传入上一个解析器的 `next_index`）
        """

        self._slots = _SlotTable()
        self._next_turn_index = int(index_base)
        self._done = False
        self.finish_reason: Optional[str] = None

    @property
    def next_index(self) -> int:
        """下一个将被分配的 turn 级 index。"""

        return self._next_turn_index

    def feed_data(self, data: str) -> List[ParsedEvent]:
        """
        解析一条 data 文本。

        说明：
        - 空串或非 JSON object 的 data 被忽略；
        - 哨兵触发汇总与 `completed`。

        异常：
        - UpstreamProtocolError：payload 顶层带 `error`
        """

        text = (data or "").strip()
        if not text:
            return []
        if text in _SENTINELS:
            return self._complete("done")

        try:
            obj = json.loads(text)
        except ValueError:
            return []
        if not isinstance(obj, dict):
            return []

        err = obj.get("error")
        if err:
            detail = err if isinstance(err, dict) else {"message": str(err)}
            raise UpstreamProtocolError(
                str(detail.get("message") or "upstream reported an error"),
                details={"upstream_error": detail},
            )

        events: List[ParsedEvent] = []
        for choice in obj.get("choices") or []:
            if not isinstance(choice, dict):
                continue
            delta = choice.get("delta")
            if isinstance(delta, dict):
                events.extend(self._text_events(delta.get("content")))
                for fragment in delta.get("tool_calls") or []:
                    if isinstance(fragment, dict):
                        events.extend(self._absorb_fragment(fragment))

            reason = _str_or_none(choice.get("finish_reason"))
            if reason == "tool_calls":
                self.finish_reason = reason
                events.append(ParsedEvent(type="tool_calls", tool_calls=self._slots.drain(), finish_reason=reason))
            elif reason is not None:
                self.finish_reason = self.finish_reason or reason
                events.extend(self._complete(reason))

        usage = obj.get("usage")
        if isinstance(usage, dict) and usage:
            events.append(ParsedEvent(type="usage", usage=dict(usage)))
        return events

    def finish(self) -> List[ParsedEvent]:
        """底层流 EOF 时调用（部分上游从不发送 `[DONE]`）。"""

        return self._complete("eof")

    def _complete(self, reason: str) -> List[ParsedEvent]:
        """汇总残留 call 并输出唯一一次 `completed`。"""

        events: List[ParsedEvent] = []
        if self._slots:
            self.finish_reason = "tool_calls"
            events.append(ParsedEvent(type="tool_calls", tool_calls=self._slots.drain(), finish_reason=reason))
        if not self._done:
            self._done = True
            events.append(ParsedEvent(type="completed", finish_reason=self.finish_reason or reason))
        return events

    @staticmethod
    def _text_events(content: Any) -> List[ParsedEvent]:
        """把 `delta.content`（字符串或 content blocks）转换为文本事件。"""

        if isinstance(content, str):
            return [ParsedEvent(type="text_delta", text=content)] if content else []
        if not isinstance(content, list):
            return []
        out: List[ParsedEvent] = []
        for block in content:
            piece = _str_or_none(block.get("text")) if isinstance(block, dict) else None
            if piece is not None:
                out.append(ParsedEvent(type="text_delta", text=piece))
        return out

    def _absorb_fragment(self, fragment: Dict[str, Any]) -> List[ParsedEvent]:
        """把一个 tool_call 分片并入所属 call，产出 start / delta 事件。"""

        slot = self._slots.slot_for(fragment)
        pending = self._slots.calls.get(slot)
        opened = pending is None
        if pending is None:
            pending = _PendingCall(turn_index=self._next_turn_index)
            self._next_turn_index += 1
            self._slots.calls[slot] = pending
            self._slots.order.append(slot)

        pending.call_id = pending.call_id or _str_or_none(fragment.get("id"))
        fn = fragment.get("function")
        piece: Optional[str] = None
        if isinstance(fn, dict):
            pending.name = pending.name or _str_or_none(fn.get("name"))
            piece = _str_or_none(fn.get("arguments"))
            if piece is not None:
                pending.arguments += piece

        events: List[ParsedEvent] = []
        if opened:
            events.append(
                ParsedEvent(
                    type="tool_call_start",
                    index=pending.turn_index,
                    call_id=pending.call_id or f"tool-call-{pending.turn_index}",
                    name=pending.name,
                )
            )
        if piece is not None:
            events.append(ParsedEvent(type="tool_call_delta", index=pending.turn_index, arguments_delta=piece))
        return events


def iter_chat_completions_stream_events(data_lines: Iterable[str]) -> Iterator[ParsedEvent]:
    """
    便捷函数：把一组 data 文本（不含 `data:` 前缀）解析为事件序列，末尾自动调用 `finish()`。
    """

    parser = ChatCompletionsSseParser()
    for data in data_lines:
        yield from parser.feed_data(data)
    yield from parser.finish()
