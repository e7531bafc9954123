"""
OpenAI-compatible `/chat/completions` streaming backend（httpx）。

数据流：
- `POST <base>/chat/completions`（`stream: true`）
- 响应字节（已解码）→ stream repair（仅对标记的上游）→ 行切分 → SSE 解析器 → `ParsedEvent`

重试：
- 仅在尚未输出任何事件时，对 429/5xx/网络错误做指数退避重试（优先 `Retry-After`）。
"""

from __future__ import annotations

import asyncio
import logging
import random
from typing import Any, AsyncIterator, Callable, Dict, Optional

import httpx

from stream_gateway.config.loader import GatewayLlmConfig
from stream_gateway.llm.chat_sse import ChatCompletionsSseParser, ParsedEvent
from stream_gateway.llm.protocol import ChatRequest
from stream_gateway.llm.stream_repair import iter_sse_lines, repair_event_stream
from stream_gateway.tools.protocol import tool_spec_to_openai_tool

logger = logging.getLogger(__name__)


def build_payload(request: ChatRequest) -> Dict[str, Any]:
    """
    组装 chat.completions 请求体。

    规则：
    - 映射后的推理参数先写入，固定字段（model/messages/stream）最后写入，不会被参数覆盖；
    - 有工具时附加 `tools` 与 `tool_choice: "auto"`；
    - profile 允许时请求 `stream_options.include_usage`。
    """

    payload: Dict[str, Any] = dict(request.parameters)
    payload["model"] = request.target.model_id
    payload["messages"] = request.messages
    payload["stream"] = True
    if request.target.include_usage:
        payload["stream_options"] = {"include_usage": True}
    if request.tools:
        payload["tools"] = [tool_spec_to_openai_tool(s) for s in request.tools]
        payload["tool_choice"] = "auto"
    return payload


def _retryable_status(code: int) -> bool:
    """判断 HTTP status 是否适合重试（保守）。"""

    return code == 429 or 500 <= code <= 599


def _retry_after_ms_from_headers(headers: httpx.Headers) -> Optional[int]:
    """从 `Retry-After` 头解析等待毫秒数（仅支持整数秒；无法解析返回 None）。"""

    ra = headers.get("Retry-After")
    if not ra:
        return None
    try:
        sec = int(str(ra).strip())
    except (ValueError, TypeError):
        return None
    return sec * 1000 if sec > 0 else None


class OpenAIChatCompletionsBackend:
    """OpenAI-compatible chat.completions 实现（网络层）。"""

    def __init__(
        self,
        cfg: GatewayLlmConfig,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Any] = asyncio.sleep,
    ) -> None:
        """
        创建 backend。

        参数：
        - `cfg`：上游调用配置（timeout、retry）
        - `transport`：可选 httpx transport（测试注入 `httpx.MockTransport`）
        - `sleep`：可选退避等待函数（测试可注入无等待版本）
        """

        self._cfg = cfg
        self._transport = transport
        self._sleep = sleep

    def _client(self) -> httpx.AsyncClient:
        """创建一次调用使用的 AsyncClient。"""

        kwargs: Dict[str, Any] = {"timeout": httpx.Timeout(self._cfg.timeout_sec)}
        if self._transport is not None:
            kwargs["transport"] = self._transport
        return httpx.AsyncClient(**kwargs)

    async def _sleep_backoff(self, *, attempt: int, retry_after_ms: Optional[int]) -> float:
        """
        等待退避时间（指数退避 + 抖动）并返回秒数。

        说明：
        - attempt 从 0 开始；
        - 优先使用 `Retry-After`（若存在），否则使用指数退避，上限为 cap。
        """

        retry = self._cfg.retry
        if retry_after_ms is not None:
            delay = retry_after_ms / 1000.0
        else:
            base = min(retry.cap_delay_sec, retry.base_delay_sec * (2 ** attempt))
            jitter = random.uniform(0.0, base * retry.jitter_ratio)
            delay = min(retry.cap_delay_sec, base + jitter)
        await self._sleep(delay)
        return float(delay)

    @staticmethod
    def _notify_retry(request: ChatRequest, info: Dict[str, Any]) -> None:
        """若调用方提供 `on_retry`，通知其一次重试。"""

        on_retry = request.extra.get("on_retry")
        if callable(on_retry):
            on_retry(info)

    async def stream_chat(self, request: ChatRequest) -> AsyncIterator[ParsedEvent]:
        """
        发起 streaming chat.completions 请求，并解析 SSE 事件流。

        异常：
        - httpx.HTTPStatusError：非 2xx（body 已读取，便于上层提取错误消息）
        - httpx.RequestError / TimeoutException：网络错误（重试耗尽后）
        - UpstreamProtocolError：上游在流内报告错误
        """

        target = request.target
        payload = build_payload(request)
        max_retries = int(self._cfg.retry.max_retries)

        emitted_any = False
        attempt = 0
        while True:
            try:
                async with self._client() as client:
                    parser = ChatCompletionsSseParser(index_base=request.index_base)
                    async with client.stream("POST", target.url, json=payload, headers=target.headers) as resp:
                        # streaming 模式下需先读取错误 body，HTTPStatusError 才能携带 OpenAI 风格错误消息
                        if resp.status_code >= 400:
                            try:
                                await resp.aread()
                            except httpx.HTTPError:
                                logger.debug("failed to read error body status=%s", resp.status_code)
                        resp.raise_for_status()

                        chunks: AsyncIterator[bytes] = resp.aiter_bytes()
                        if target.patch_tool_call_index:
                            chunks = repair_event_stream(chunks, content_type=resp.headers.get("content-type"))
                        async for line in iter_sse_lines(chunks):
                            if not line.startswith("data:"):
                                continue
                            data = line[len("data:") :].strip()
                            for ev in parser.feed_data(data):
                                emitted_any = True
                                yield ev
                        for ev in parser.finish():
                            emitted_any = True
                            yield ev
                return
            except httpx.HTTPStatusError as exc:
                status = exc.response.status_code
                if emitted_any or attempt >= max_retries or not _retryable_status(status):
                    raise
                retry_after_ms = _retry_after_ms_from_headers(exc.response.headers)
                delay = await self._sleep_backoff(attempt=attempt, retry_after_ms=retry_after_ms)
                logger.debug("retrying upstream status=%s attempt=%s delay=%.2fs", status, attempt, delay)
                self._notify_retry(
                    request,
                    {
                        "error_kind": "http_status",
                        "status_code": int(status),
                        "attempt": attempt,
                        "max_retries": max_retries,
                        "retry_after_ms": retry_after_ms,
                        "delay_ms": int(delay * 1000),
                    },
                )
                attempt += 1
            except (httpx.TimeoutException, httpx.RequestError) as exc:
                # 已输出事件后不重试，避免重复输出
                if emitted_any or attempt >= max_retries:
                    raise
                delay = await self._sleep_backoff(attempt=attempt, retry_after_ms=None)
                logger.debug("retrying upstream after %s attempt=%s delay=%.2fs", type(exc).__name__, attempt, delay)
                self._notify_retry(
                    request,
                    {
                        "error_kind": "request_error",
                        "attempt": attempt,
                        "max_retries": max_retries,
                        "retry_after_ms": None,
                        "delay_ms": int(delay * 1000),
                    },
                )
                attempt += 1
