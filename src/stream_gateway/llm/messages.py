"""
消息预处理与 wire 转换（ChatMessage → OpenAI-compatible messages[]）。

包含：
- flatten_inline_files：把 user 消息的内联附件拼入文本片段
- to_wire_messages：把规范化消息转换为 chat.completions 的 messages 列表（顺序保持）
- tool 回注：assistant tool_calls + tool 消息
"""

from __future__ import annotations

import json
from typing import Any, Dict, List, Optional, Sequence

from stream_gateway.core.contracts import ChatMessage, MessagePart
from stream_gateway.tools.protocol import ToolCall, ToolResult


def format_inline_files(message: ChatMessage) -> str:
    """把内联附件格式化为 `File: <name>\\n<content>`，多个附件以空行分隔。"""

    blocks = []
    for f in message.inline_files:
        if not f.content:
            continue
        blocks.append(f"File: {f.name or 'attachment'}\n{f.content}")
    return "\n\n".join(blocks)


def flatten_inline_files(message: ChatMessage) -> ChatMessage:
    """
    把 user 消息的内联附件拼到每个文本片段之后（以空行分隔）。

    说明：
    - 非 user 消息、或没有有效附件时原样返回；
    - 只修改 text 片段；若消息没有 text 片段，则追加一个只含附件内容的 text 片段；
    - 返回新对象，不修改入参。
    """

    if message.role != "user":
        return message
    formatted = format_inline_files(message)
    if not formatted:
        return message

    def _inline(base: str) -> str:
        """附件文本追加在原文本之后。"""

        return f"{base}\n\n{formatted}" if base else formatted

    parts: List[MessagePart] = []
    saw_text = False
    for part in message.parts:
        if part.type == "text":
            saw_text = True
            parts.append(part.model_copy(update={"text": _inline(part.text or "")}))
        else:
            parts.append(part)
    if not saw_text:
        parts.append(MessagePart(type="text", text=formatted))
    return message.model_copy(update={"parts": parts, "inline_files": []})


def _text_of(message: ChatMessage) -> str:
    """拼接消息的所有 text 片段。"""

    return "".join(p.text or "" for p in message.parts if p.type == "text")


def _wire_tool_call(part: MessagePart) -> Dict[str, Any]:
    """把 tool-call 片段转换为 wire 的 tool_calls[] item。"""

    return {
        "id": part.call_id or "",
        "type": "function",
        "function": {
            "name": part.name or "",
            "arguments": json.dumps(part.arguments or {}, ensure_ascii=False),
        },
    }


def to_wire_messages(messages: Sequence[ChatMessage], *, system_prompt: Optional[str] = None) -> List[Dict[str, Any]]:
    """
    把规范化消息转换为 OpenAI-compatible `messages[]`。

    参数：
    - messages：有序消息（顺序端到端保持）
    - system_prompt：可选；作为首条 system 消息

    说明：
    - user 消息先做附件扁平化；
    - assistant 的 tool-call 片段进入 `tool_calls`；tool-result 片段展开为 `role=tool` 消息。
    """

    wire: List[Dict[str, Any]] = []
    if system_prompt:
        wire.append({"role": "system", "content": system_prompt})

    for message in messages:
        msg = flatten_inline_files(message)
        if msg.role == "tool":
            for part in msg.parts:
                if part.type == "tool-result":
                    wire.append({"role": "tool", "tool_call_id": part.call_id or "", "content": part.result or ""})
            continue

        item: Dict[str, Any] = {"role": msg.role, "content": _text_of(msg)}
        if msg.role == "assistant":
            calls = [_wire_tool_call(p) for p in msg.parts if p.type == "tool-call"]
            if calls:
                item["tool_calls"] = calls
                if not item["content"]:
                    item["content"] = None
        wire.append(item)

        for part in msg.parts:
            if part.type == "tool-result":
                wire.append({"role": "tool", "tool_call_id": part.call_id or "", "content": part.result or ""})
    return wire


def tool_round_messages(
    calls: Sequence[ToolCall], results: Sequence[ToolResult], *, assistant_text: str = ""
) -> List[Dict[str, Any]]:
    """
    构造一次工具轮次的回注消息（assistant tool_calls + 每个调用一条 tool 消息）。

    参数：
    - calls：本轮上游请求的 tool calls（顺序即上游顺序）
    - results：与 calls 一一对应的结果
    - assistant_text：本轮 assistant 已输出的文本（可为空）
    """

    assistant: Dict[str, Any] = {
        "role": "assistant",
        "content": assistant_text or None,
        "tool_calls": [
            {
                "id": c.call_id,
                "type": "function",
                "function": {
                    "name": c.name,
                    "arguments": c.raw_arguments or json.dumps(c.args, ensure_ascii=False),
                },
            }
            for c in calls
        ],
    }
    out: List[Dict[str, Any]] = [assistant]
    for c, r in zip(calls, results):
        out.append({"role": "tool", "tool_call_id": c.call_id, "content": r.text()})
    return out
