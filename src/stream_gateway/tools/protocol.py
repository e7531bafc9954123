"""
Tool 协议（ToolSpec / ToolCall / ToolResult / ToolProvider）。

本模块只定义 gateway 与外部 tool provider 之间的最小协议：
- ToolSpec：发现到的工具描述（OpenAI function calling 兼容 JSON schema）
- ToolCall：上游模型请求的一次调用（call_id/name/args）
- ToolResult：调用输出（内容片段 + 可选 error）
- ToolProvider：provider 协议（list_tools / call_tool / 可选 default_disabled_tools）
- tool_spec_to_openai_tool：将 ToolSpec 映射为 chat.completions tools[] 形状

说明：gateway 不包含任何工具业务逻辑，只负责发现、过滤与派发。
"""

from __future__ import annotations

import json
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

from pydantic import BaseModel, ConfigDict, Field

TOOL_KEY_SEPARATOR = "::"


def tool_key(provider_id: str, name: str) -> str:
    """返回工具的稳定 key（`provider_id::name`）。"""

    return f"{provider_id}{TOOL_KEY_SEPARATOR}{name}"


class ToolSpec(BaseModel):
    """
    Tool 描述（由 provider 发现）。

    字段：
    - name：工具名（provider 内唯一）
    - description：工具说明
    - input_schema：JSON Schema（object schema）
    - provider_id：所属 provider
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    name: str
    description: str = ""
    input_schema: Dict[str, Any] = Field(default_factory=lambda: {"type": "object", "properties": {}})
    provider_id: str = ""

    @property
    def key(self) -> str:
        """`provider_id::name`（disabled 集合使用此 key）。"""

        return tool_key(self.provider_id, self.name)


class ToolCall(BaseModel):
    """
    Tool 调用（内部表示）。

    字段：
    - call_id：本次调用的唯一 id（用于关联 tool output 回注）
    - name：工具名
    - args：解析后的参数 dict（json.loads(function.arguments) 的结果）
    - raw_arguments：原始 arguments 字符串（可选；用于回注到 wire）
    - index：turn 内分配的稳定 index
    """

    model_config = ConfigDict(extra="forbid")

    call_id: str
    name: str
    args: Dict[str, Any] = Field(default_factory=dict)
    raw_arguments: Optional[str] = None
    index: int = 0


class ToolCallContext(BaseModel):
    """转发给 provider 的会话上下文。"""

    model_config = ConfigDict(extra="forbid")

    thread_id: str
    project_id: Optional[str] = None
    scope: str = "thread"


class ToolResult(BaseModel):
    """
    Tool 执行结果。

    字段：
    - content：内容片段列表（例如 `{"type": "text", "text": "..."}`），回注给 LLM
    - error：失败时的错误说明（成功为 None）
    """

    model_config = ConfigDict(extra="forbid")

    content: List[Dict[str, Any]] = Field(default_factory=list)
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        """是否成功（无 error）。"""

        return self.error is None

    @classmethod
    def from_text(cls, text: str) -> "ToolResult":
        """便捷构造：单一文本片段的成功结果。"""

        return cls(content=[{"type": "text", "text": text}])

    @classmethod
    def failure(cls, error: str, text: str) -> "ToolResult":
        """便捷构造：带 error 与人类可读文本兜底的失败结果。"""

        return cls(content=[{"type": "text", "text": text}], error=error)

    def text(self) -> str:
        """拼接所有文本片段（用于回注 tool message）。"""

        parts: List[str] = []
        for item in self.content:
            if isinstance(item, dict) and item.get("type") == "text" and isinstance(item.get("text"), str):
                parts.append(item["text"])
        if parts:
            return "\n".join(parts)
        if self.content:
            return json.dumps(self.content, ensure_ascii=False)
        return self.error or ""


@runtime_checkable
class ToolProvider(Protocol):
    """
    外部 tool provider 协议。

    约束：
    - `list_tools` 返回的 ToolSpec 需带 `provider_id`（缺省时由 orchestrator 补齐）；
    - 失败以异常表达（orchestrator 负责降级与兜底）。
    """

    provider_id: str

    async def list_tools(self) -> List[ToolSpec]:
        """列出当前可用工具。"""

        ...

    async def call_tool(self, name: str, arguments: Dict[str, Any], context: ToolCallContext) -> ToolResult:
        """执行一次工具调用。"""

        ...


def tool_spec_to_openai_tool(spec: ToolSpec) -> Dict[str, Any]:
    """
    将 ToolSpec 映射为 OpenAI chat.completions 的 tools[] item。

    返回：
    - dict：`{"type":"function","function":{"name","description","parameters"}}`
    """

    return {
        "type": "function",
        "function": {
            "name": spec.name,
            "description": spec.description,
            "parameters": dict(spec.input_schema),
        },
    }
