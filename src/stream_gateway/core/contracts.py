"""
核心契约（Core Contracts）。

本模块定义 gateway 的公共数据形状：
- TurnRequest：一次 send/regenerate 的输入（消息、provider、模型、推理参数）
- ProviderDescriptor：provider 配置快照（由外部配置协作者提供；gateway 只读）
- InferenceParameters：provider 无关的稀疏推理参数
- StreamEvent：规范化事件流条目（tagged union，`type` 取值固定）
- UsageSnapshot：每个已完成 turn 的用量与吞吐（创建后不可变）
"""

from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

STREAM_EVENT_TYPES = (
    "start",
    "text-delta",
    "tool-call-start",
    "tool-call-delta",
    "tool-call-result",
    "usage-delta",
    "finish",
    "error",
)
TERMINAL_EVENT_TYPES = ("finish", "error")


class StreamEvent(BaseModel):
    """
    StreamEvent：规范化事件流条目。

    字段：
    - type：事件类型（见 `STREAM_EVENT_TYPES`）
    - conversation_id：所属会话
    - turn_id：所属 turn（同一 send/regenerate 请求内稳定）
    - timestamp：RFC3339 时间字符串
    - payload：事件专用字段（JSON object）

    约束：
    - `tool-call-start/tool-call-delta` 的 payload 必含 `index`（turn 内单调分配，与上游是否提供 index 无关）。
    """

    model_config = ConfigDict(extra="forbid")

    type: str
    conversation_id: str
    turn_id: str
    timestamp: str
    payload: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("type")
    @classmethod
    def _check_type(cls, value: str) -> str:
        """拒绝未知事件类型（事件语法是封闭集合）。"""

        if value not in STREAM_EVENT_TYPES:
            raise ValueError(f"unknown stream event type: {value!r}")
        return value

    @property
    def is_terminal(self) -> bool:
        """是否为终止事件（finish/error）。"""

        return self.type in TERMINAL_EVENT_TYPES

    def to_json(self) -> str:
        """序列化为 JSON 字符串。"""

        return self.model_dump_json(exclude_none=True)


class UsageSnapshot(BaseModel):
    """
    UsageSnapshot：单个 turn 的用量快照（frozen）。

    字段：
    - input_tokens/output_tokens/total_tokens：token 计数
    - elapsed_ms：从 `start` 到 turn 完成的耗时（毫秒）
    - tokens_per_second：吞吐（保留 1 位小数）
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    input_tokens: Optional[int] = None
    output_tokens: int = 0
    total_tokens: int = 0
    elapsed_ms: int = 0
    tokens_per_second: float = 0.0


class InlineFile(BaseModel):
    """用户消息附带的内联附件（已由上层解析为文本）。"""

    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = None
    content: Optional[str] = None


class MessagePart(BaseModel):
    """
    消息内容片段。

    - `text`：文本（使用 `text`）
    - `tool-call`：assistant 请求的工具调用（使用 `call_id/name/arguments`）
    - `tool-result`：工具输出（使用 `call_id/name/result`）
    """

    model_config = ConfigDict(extra="forbid")

    type: Literal["text", "tool-call", "tool-result"] = "text"
    text: Optional[str] = None
    call_id: Optional[str] = None
    name: Optional[str] = None
    arguments: Optional[Dict[str, Any]] = None
    result: Optional[str] = None


class ChatMessage(BaseModel):
    """对话消息（role + 内容片段；可选内联附件）。"""

    model_config = ConfigDict(extra="forbid")

    role: Literal["user", "assistant", "system", "tool"]
    parts: List[MessagePart] = Field(default_factory=list)
    inline_files: List[InlineFile] = Field(default_factory=list)

    @classmethod
    def text(cls, role: str, text: str) -> "ChatMessage":
        """便捷构造：单一文本片段的消息。"""

        return cls(role=role, parts=[MessagePart(type="text", text=text)])


class InferenceParameters(BaseModel):
    """
    provider 无关的推理参数（稀疏记录）。

    说明：
    - 缺失/None 的字段永不转发；
    - `extra` 承载 canonical 集合无法表达的 provider 特有字段（是否转发由 Parameter Mapper 决定）。
    """

    model_config = ConfigDict(extra="forbid")

    temperature: Optional[float] = None
    top_p: Optional[float] = None
    top_k: Optional[int] = None
    repeat_penalty: Optional[float] = None
    presence_penalty: Optional[float] = None
    frequency_penalty: Optional[float] = None
    max_output_tokens: Optional[int] = None
    stop_sequences: Optional[List[str]] = None
    extra: Dict[str, Any] = Field(default_factory=dict)


class ProviderCustomHeader(BaseModel):
    """provider 自定义 header（键值对）。"""

    model_config = ConfigDict(extra="forbid")

    header: str
    value: str


class ModelDescriptor(BaseModel):
    """provider 下的模型条目（id + 能力集合，例如 `tools`）。"""

    model_config = ConfigDict(extra="forbid")

    id: str
    capabilities: List[str] = Field(default_factory=list)


class ProviderDescriptor(BaseModel):
    """
    Provider 配置快照（只读输入）。

    字段：
    - name：provider 名（例如 openai/gemini/ollama）
    - base_url：可选；缺省由兼容模式的默认值决定
    - api_key：可选的已解析凭证（不得写入日志/事件）
    - custom_headers：自定义 header
    - models：模型与能力集合
    - compatibility_mode：可选；显式指定兼容模式（优先于按 name 推断）
    """

    model_config = ConfigDict(extra="forbid")

    name: str
    base_url: Optional[str] = None
    api_key: Optional[str] = Field(default=None, repr=False)
    custom_headers: List[ProviderCustomHeader] = Field(default_factory=list)
    models: List[ModelDescriptor] = Field(default_factory=list)
    compatibility_mode: Optional[str] = None

    def get_model(self, model_id: str) -> Optional[ModelDescriptor]:
        """按 id 查找模型条目（未登记则返回 None）。"""

        for m in self.models:
            if m.id == model_id:
                return m
        return None

    def supports_tools(self, model_id: str) -> bool:
        """判断所选模型是否具备 tool calling 能力（未登记的模型视为不支持）。"""

        m = self.get_model(model_id)
        return m is not None and "tools" in m.capabilities


class TurnRequest(BaseModel):
    """
    TurnRequest：一次 send/regenerate 的输入。

    说明：
    - messages 顺序端到端保持；
    - `regenerate-message` 时由调用方负责去掉上一条 assistant 回复。
    """

    model_config = ConfigDict(extra="forbid")

    conversation_id: str
    messages: List[ChatMessage]
    model_id: str
    provider: ProviderDescriptor
    system_prompt: Optional[str] = None
    parameters: InferenceParameters = Field(default_factory=InferenceParameters)
    trigger: Literal["submit-message", "regenerate-message"] = "submit-message"
    project_id: Optional[str] = None
