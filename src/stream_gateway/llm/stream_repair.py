"""
SSE 响应修补层（tool_calls[].index 补齐）。

背景：
- 部分上游（例如 Gemini 的 OpenAI 兼容端点）在 streaming 中省略 `choices[].delta.tool_calls[].index`；
- 严格的下游会因此拒绝分片；这里在字节流层把缺失的 index 补成其在列表中的位置。

约束：
- 只在 `content-type` 含 `text/event-stream` 时生效，否则原样透传；
- 不丢弃、不重排事件；无法解析的行（`[DONE]`、心跳、注释、非法 JSON）按原字节转发；
- 未闭合的行保留在缓冲区，流结束时 flush。
"""

from __future__ import annotations

import codecs
import json
from typing import Any, AsyncIterable, AsyncIterator, Dict, Optional


def _patch_tool_call_indices(obj: Dict[str, Any]) -> bool:
    """给缺少整数 index 的 tool_call 分片补上列表位置；返回是否有修改。"""

    changed = False
    choices = obj.get("choices")
    if not isinstance(choices, list):
        return False
    for choice in choices:
        if not isinstance(choice, dict):
            continue
        delta = choice.get("delta")
        if not isinstance(delta, dict):
            continue
        tool_calls = delta.get("tool_calls")
        if not isinstance(tool_calls, list):
            continue
        for position, tc in enumerate(tool_calls):
            if not isinstance(tc, dict):
                continue
            idx = tc.get("index")
            if isinstance(idx, int) and not isinstance(idx, bool):
                continue
            tc["index"] = position
            changed = True
    return changed


def _repair_raw_line(raw: bytes) -> bytes:
    """修补一行原始字节；不是合法 UTF-8 或无需修改时原样返回同一段字节。"""

    try:
        text = raw.decode("utf-8")
    except UnicodeDecodeError:
        return raw
    fixed = repair_line(text)
    return raw if fixed == text else fixed.encode("utf-8")


def repair_line(line: str) -> str:
    """
    修补单行 SSE 文本（不含结尾换行）。

    返回：
    - 修补后的行；非 `data:` 行、无法解析或无需修改的行原样返回
    """

    if not line.startswith("data:"):
        return line
    body = line[len("data:") :].strip()
    if not body or body in ("[DONE]", "DONE"):
        return line
    try:
        obj = json.loads(body)
    except ValueError:
        return line
    if not isinstance(obj, dict) or not _patch_tool_call_indices(obj):
        return line
    return "data: " + json.dumps(obj, ensure_ascii=False, separators=(",", ":"))


async def repair_event_stream(
    chunks: AsyncIterable[bytes], *, content_type: Optional[str]
) -> AsyncIterator[bytes]:
    """
    修补 SSE 字节流（保持“异步字节块”外形）。

    参数：
    - chunks：已解码（去 gzip 等）的响应字节块
    - content_type：响应的 content-type header

    说明：
    - 按原始字节缓冲并在 `\\n` 处切行（`\\n` 不会出现在多字节字符内部），每行单独解码；
    - 每个输入块最多产出一个输出块（只包含已闭合的行）；
    - 未修改的行（包括非法 UTF-8 与 `\\r`）按原始字节转发。
    """

    if "text/event-stream" not in (content_type or "").lower():
        async for chunk in chunks:
            yield chunk
        return

    buffer = b""
    async for chunk in chunks:
        if not chunk:
            continue
        buffer += chunk
        cut = buffer.rfind(b"\n")
        if cut < 0:
            continue
        head, buffer = buffer[:cut], buffer[cut + 1 :]
        yield b"\n".join(_repair_raw_line(line) for line in head.split(b"\n")) + b"\n"

    if buffer:
        yield _repair_raw_line(buffer)


async def iter_sse_lines(chunks: AsyncIterable[bytes]) -> AsyncIterator[str]:
    """
    把字节流切分为文本行（去掉结尾 `\\r\\n` / `\\n`）。

    说明：
    - 使用增量 UTF-8 解码器，多字节字符跨块时不会被截断；
    - EOF 时输出残留的未闭合行。
    """

    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    buffer = ""
    async for chunk in chunks:
        if not chunk:
            continue
        buffer += decoder.decode(chunk)
        if "\n" not in buffer:
            continue
        head, buffer = buffer.rsplit("\n", 1)
        for line in head.split("\n"):
            yield line.rstrip("\r")
    buffer += decoder.decode(b"", final=True)
    if buffer:
        yield buffer.rstrip("\r")
