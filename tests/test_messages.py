from __future__ import annotations

from stream_gateway.core.contracts import ChatMessage, InlineFile, MessagePart
from stream_gateway.llm.messages import flatten_inline_files, to_wire_messages, tool_round_messages
from stream_gateway.tools.protocol import ToolCall, ToolResult


def test_flatten_inline_files_appends_formatted_attachment() -> None:
    msg = ChatMessage.text("user", "Summarize this").model_copy(
        update={"inline_files": [InlineFile(name="notes.txt", content="line one")]}
    )
    out = flatten_inline_files(msg)
    assert out.parts[0].text == "Summarize this\n\nFile: notes.txt\nline one"
    assert out.inline_files == []
    # 入参不被修改
    assert msg.parts[0].text == "Summarize this"


def test_flatten_inline_files_adds_text_part_when_missing() -> None:
    msg = ChatMessage(role="user", parts=[], inline_files=[InlineFile(name="a.md", content="A"), InlineFile(name="b.md", content="B")])
    out = flatten_inline_files(msg)
    assert [p.text for p in out.parts] == ["File: a.md\nA\n\nFile: b.md\nB"]


def test_flatten_inline_files_ignores_empty_and_non_user() -> None:
    empty = ChatMessage(role="user", parts=[MessagePart(text="hi")], inline_files=[InlineFile(name="x")])
    assert flatten_inline_files(empty) is empty
    assistant = ChatMessage(role="assistant", parts=[MessagePart(text="hi")], inline_files=[InlineFile(name="x", content="c")])
    assert flatten_inline_files(assistant) is assistant


def test_to_wire_messages_preserves_order_and_system_prompt() -> None:
    history = [
        ChatMessage.text("user", "q1"),
        ChatMessage(
            role="assistant",
            parts=[MessagePart(type="tool-call", call_id="c1", name="search", arguments={"q": "x"})],
        ),
        ChatMessage(role="tool", parts=[MessagePart(type="tool-result", call_id="c1", name="search", result="3 hits")]),
        ChatMessage.text("assistant", "a1"),
        ChatMessage.text("user", "q2"),
    ]
    wire = to_wire_messages(history, system_prompt="be brief")

    assert [m["role"] for m in wire] == ["system", "user", "assistant", "tool", "assistant", "user"]
    assert wire[0]["content"] == "be brief"
    assert wire[2]["content"] is None
    assert wire[2]["tool_calls"][0]["function"] == {"name": "search", "arguments": '{"q": "x"}'}
    assert wire[3] == {"role": "tool", "tool_call_id": "c1", "content": "3 hits"}
    assert wire[-1]["content"] == "q2"


def test_tool_round_messages_reinjects_calls_and_results() -> None:
    calls = [
        ToolCall(call_id="c1", name="search", args={"q": "x"}, raw_arguments='{"q":"x"}', index=0),
        ToolCall(call_id="c2", name="fetch", args={"id": 1}, index=1),
    ]
    results = [ToolResult.from_text("3 hits"), ToolResult.failure("boom", "Tool call failed: boom")]
    msgs = tool_round_messages(calls, results, assistant_text="Let me look.")

    assert msgs[0]["role"] == "assistant"
    assert msgs[0]["content"] == "Let me look."
    assert [tc["function"]["arguments"] for tc in msgs[0]["tool_calls"]] == ['{"q":"x"}', '{"id": 1}']
    assert msgs[1] == {"role": "tool", "tool_call_id": "c1", "content": "3 hits"}
    assert msgs[2] == {"role": "tool", "tool_call_id": "c2", "content": "Tool call failed: boom"}
