from __future__ import annotations

import asyncio
import json
from typing import AsyncIterator, List

from stream_gateway.llm.stream_repair import iter_sse_lines, repair_event_stream, repair_line


async def _chunks(parts: List[bytes]) -> AsyncIterator[bytes]:
    for p in parts:
        yield p


async def _collect(agen: AsyncIterator[bytes]) -> bytes:
    out = b""
    async for chunk in agen:
        out += chunk
    return out


def _tool_call_line(tool_calls: list) -> str:  # type: ignore[type-arg]
    obj = {"choices": [{"index": 0, "delta": {"tool_calls": tool_calls}}]}
    return "data: " + json.dumps(obj)


def test_repair_line_assigns_positions_to_missing_indices() -> None:
    line = _tool_call_line(
        [
            {"id": "a", "function": {"name": "f", "arguments": ""}},
            {"id": "b", "function": {"name": "g", "arguments": ""}},
            {"id": "c", "function": {"name": "h", "arguments": ""}},
        ]
    )
    patched = json.loads(repair_line(line)[len("data:") :])
    indices = [tc["index"] for tc in patched["choices"][0]["delta"]["tool_calls"]]
    assert indices == [0, 1, 2]


def test_repair_line_leaves_indexed_fragments_untouched() -> None:
    line = _tool_call_line([{"index": 3, "id": "a", "function": {"name": "f"}}])
    assert repair_line(line) == line


def test_repair_line_passes_through_unparseable_lines() -> None:
    for line in ["data: [DONE]", ": keep-alive", "event: message", "data: {not json", ""]:
        assert repair_line(line) == line


def test_repair_event_stream_passthrough_for_non_sse_content_type() -> None:
    raw = _tool_call_line([{"id": "a", "function": {"name": "f"}}]).encode("utf-8") + b"\n"

    async def _run() -> bytes:
        return await _collect(repair_event_stream(_chunks([raw]), content_type="application/json"))

    assert asyncio.run(_run()) == raw


def test_repair_event_stream_handles_lines_split_across_chunks() -> None:
    line = _tool_call_line([{"id": "a", "function": {"name": "f", "arguments": "{}"}}]).encode("utf-8")
    body = line + b"\n\ndata: [DONE]\n\n"
    parts = [body[:7], body[7:30], body[30:]]

    async def _run() -> bytes:
        return await _collect(repair_event_stream(_chunks(parts), content_type="text/event-stream; charset=utf-8"))

    out = asyncio.run(_run()).decode("utf-8")
    lines = out.split("\n")
    first = json.loads(lines[0][len("data:") :])
    assert first["choices"][0]["delta"]["tool_calls"][0]["index"] == 0
    assert "data: [DONE]" in lines


def test_repair_event_stream_flushes_unterminated_tail() -> None:
    tail = _tool_call_line([{"id": "a", "function": {"name": "f"}}]).encode("utf-8")

    async def _run() -> bytes:
        return await _collect(repair_event_stream(_chunks([b"data: [DONE]\n", tail]), content_type="text/event-stream"))

    out = asyncio.run(_run()).decode("utf-8")
    assert out.startswith("data: [DONE]\n")
    last = json.loads(out.split("\n")[-1][len("data:") :])
    assert last["choices"][0]["delta"]["tool_calls"][0]["index"] == 0


def test_repair_event_stream_forwards_unmodified_lines_byte_for_byte() -> None:
    body = b"data: {\"bad\": \"\xff\xfe\"}\r\n: keep-alive\r\n\r\ndata: {\"choices\": []}\r\ndata: [DONE]\n"
    parts = [body[:9], body[9:40], body[40:]]

    async def _run() -> bytes:
        return await _collect(repair_event_stream(_chunks(parts), content_type="text/event-stream"))

    assert asyncio.run(_run()) == body


def test_repair_event_stream_patches_line_with_multibyte_split_across_chunks() -> None:
    obj = {"choices": [{"delta": {"tool_calls": [{"id": "a", "function": {"name": "搜索", "arguments": "{}"}}]}}]}
    body = ("data: " + json.dumps(obj, ensure_ascii=False) + "\n").encode("utf-8")
    cut = body.index("搜".encode("utf-8")) + 1
    parts = [body[:cut], body[cut:]]

    async def _run() -> bytes:
        return await _collect(repair_event_stream(_chunks(parts), content_type="text/event-stream"))

    out = asyncio.run(_run()).decode("utf-8")
    patched = json.loads(out.split("\n")[0][len("data:") :])
    fragment = patched["choices"][0]["delta"]["tool_calls"][0]
    assert fragment["index"] == 0
    assert fragment["function"]["name"] == "搜索"


def test_iter_sse_lines_keeps_multibyte_characters_intact() -> None:
    text = "data: 你好\r\ndata: [DONE]"
    raw = text.encode("utf-8")
    # 在多字节字符中间切块
    cut = raw.index("你".encode("utf-8")) + 1
    parts = [raw[:cut], raw[cut:]]

    async def _run() -> list[str]:
        return [line async for line in iter_sse_lines(_chunks(parts))]

    assert asyncio.run(_run()) == ["data: 你好", "data: [DONE]"]
