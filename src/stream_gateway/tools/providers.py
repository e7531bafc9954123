"""
Tool provider 实现。

- HttpToolProvider：retrieval 风格 HTTP 服务（`GET /tools`、`POST /tools/call`）
- StaticToolProvider：内存工具列表 + async handler（嵌入式使用与测试）
"""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Sequence

import httpx

from stream_gateway.core.errors import ToolProviderError
from stream_gateway.tools.protocol import ToolCallContext, ToolResult, ToolSpec

logger = logging.getLogger(__name__)

ToolHandler = Callable[[Dict[str, Any], ToolCallContext], Awaitable[ToolResult]]


def _spec_from_wire(item: Dict[str, Any], provider_id: str) -> Optional[ToolSpec]:
    """把服务返回的工具条目转换为 ToolSpec（兼容 `inputSchema`/`input_schema`/`parameters`）。"""

    name = item.get("name")
    if not isinstance(name, str) or not name.strip():
        return None
    schema = item.get("inputSchema") or item.get("input_schema") or item.get("parameters")
    if not isinstance(schema, dict):
        schema = {"type": "object", "properties": {}}
    description = item.get("description")
    return ToolSpec(
        name=name.strip(),
        description=description if isinstance(description, str) else "",
        input_schema=schema,
        provider_id=provider_id,
    )


class HttpToolProvider:
    """
    retrieval 风格 HTTP tool provider。

    协议：
    - `GET <base>/tools` → `{"tools": [...]}`
    - `POST <base>/tools/call`，body `{tool_name, arguments, thread_id, project_id, scope}` → ToolResult JSON

    说明：
    - `list_tools` 失败时抛 `ToolProviderError`（orchestrator 负责降级为 0 个工具）；
    - `call_tool` 永不抛出：非 2xx 与网络错误都转换为带 error 的 ToolResult。
    """

    def __init__(
        self,
        provider_id: str,
        base_url: str,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout_sec: float = 30.0,
        default_disabled: Sequence[str] = (),
    ) -> None:
        """
        参数：
        - provider_id：provider 标识（工具 key 前缀）
        - base_url：服务地址（例如 `http://127.0.0.1:8001`）
        - transport：可选 httpx transport（测试注入）
        - default_disabled：首次安装时默认禁用的工具 key
        """

        self.provider_id = provider_id
        self._base_url = base_url.rstrip("/")
        self._transport = transport
        self._timeout = httpx.Timeout(timeout_sec)
        self._default_disabled = list(default_disabled)

    def _client(self) -> httpx.AsyncClient:
        """创建一次调用使用的 AsyncClient。"""

        if self._transport is not None:
            return httpx.AsyncClient(timeout=self._timeout, transport=self._transport)
        return httpx.AsyncClient(timeout=self._timeout)

    async def list_tools(self) -> List[ToolSpec]:
        """列出服务提供的工具。"""

        try:
            async with self._client() as client:
                resp = await client.get(f"{self._base_url}/tools")
        except httpx.HTTPError as exc:
            raise ToolProviderError(
                f"tool provider {self.provider_id!r} unreachable: {exc}",
                details={"provider_id": self.provider_id},
            ) from exc
        if resp.status_code >= 400:
            raise ToolProviderError(
                f"tool provider {self.provider_id!r} GET /tools returned {resp.status_code}",
                details={"provider_id": self.provider_id, "status_code": resp.status_code},
            )
        try:
            data = resp.json()
        except ValueError as exc:
            raise ToolProviderError(
                f"tool provider {self.provider_id!r} returned invalid JSON",
                details={"provider_id": self.provider_id},
            ) from exc

        items = data.get("tools") if isinstance(data, dict) else None
        if not isinstance(items, list):
            return []
        specs: List[ToolSpec] = []
        for item in items:
            if isinstance(item, dict):
                spec = _spec_from_wire(item, self.provider_id)
                if spec is not None:
                    specs.append(spec)
        return specs

    async def call_tool(self, name: str, arguments: Dict[str, Any], context: ToolCallContext) -> ToolResult:
        """调用一次工具；失败转换为带 error 的 ToolResult。"""

        body = {
            "tool_name": name,
            "arguments": arguments,
            "thread_id": context.thread_id,
            "project_id": context.project_id,
            "scope": context.scope,
        }
        try:
            async with self._client() as client:
                resp = await client.post(f"{self._base_url}/tools/call", json=body)
                if resp.status_code >= 400:
                    text = resp.text or resp.reason_phrase
                    return ToolResult.failure(
                        f"Retrieval service error {resp.status_code}: {text}",
                        f"Retrieval tool call failed ({resp.status_code})",
                    )
                data = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            msg = str(exc) or type(exc).__name__
            logger.warning("tool call failed provider=%s tool=%s: %s", self.provider_id, name, msg)
            return ToolResult.failure(msg, f"Retrieval tool call failed: {msg}")

        if not isinstance(data, dict):
            return ToolResult.from_text(str(data))
        content = data.get("content")
        error = data.get("error")
        return ToolResult(
            content=[c for c in content if isinstance(c, dict)] if isinstance(content, list) else [],
            error=str(error) if error else None,
        )

    def default_disabled_tools(self) -> List[str]:
        """首次安装时默认禁用的工具 key。"""

        return list(self._default_disabled)


class StaticToolProvider:
    """
    内存 tool provider：固定工具列表 + async handler。

    说明：handler 抛出的异常由 orchestrator 统一转换为带 error 的 ToolResult。
    """

    def __init__(
        self,
        provider_id: str,
        tools: Iterable[ToolSpec] = (),
        handlers: Optional[Dict[str, ToolHandler]] = None,
        *,
        default_disabled: Sequence[str] = (),
    ) -> None:
        """创建内存 provider（工具的 provider_id 统一改写为本 provider）。"""

        self.provider_id = provider_id
        self._tools = [t.model_copy(update={"provider_id": provider_id}) for t in tools]
        self._handlers: Dict[str, ToolHandler] = dict(handlers or {})
        self._default_disabled = list(default_disabled)

    async def list_tools(self) -> List[ToolSpec]:
        """返回固定工具列表。"""

        return list(self._tools)

    async def call_tool(self, name: str, arguments: Dict[str, Any], context: ToolCallContext) -> ToolResult:
        """调用已注册的 handler。"""

        handler = self._handlers.get(name)
        if handler is None:
            raise ToolProviderError(
                f"tool {name!r} has no handler in provider {self.provider_id!r}",
                details={"provider_id": self.provider_id, "tool": name},
            )
        return await handler(arguments, context)

    def default_disabled_tools(self) -> List[str]:
        """首次安装时默认禁用的工具 key。"""

        return list(self._default_disabled)
