"""
会话传输状态机（send / regenerate / cancel / reconnect）。

状态：
- idle → preparing → streaming → {completed | aborted | errored}

执行模型：
- 每个 turn 在独立 task 中运行（producer），产出的 `StreamEvent` 写入队列；`send()` 返回的异步迭代器从队列读取；
- producer 内部沿用“backend 消费 task + 队列轮询”的方式：每次轮询检查取消标记，取消时 cancel backend task，
  因而取消后不再读取任何上游字节；
- 每个会话同时最多一个活动 turn：新的 send 会先取消旧 turn 并等待其进入 aborted。

事件口径：
- 非取消的 turn 以恰好一个 `finish` 或 `error` 结束；
- 被取消的 turn 不再交付任何事件（包括终止事件），状态为 aborted。
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

from stream_gateway.config.loader import GatewayConfig
from stream_gateway.core.contracts import StreamEvent, TurnRequest, UsageSnapshot
from stream_gateway.core.errors import ConfigurationError
from stream_gateway.core.turn_errors import classify_turn_exception
from stream_gateway.core.utils import monotonic_ms, now_rfc3339
from stream_gateway.llm.chat_sse import ParsedEvent
from stream_gateway.llm.messages import to_wire_messages, tool_round_messages
from stream_gateway.llm.openai_chat import OpenAIChatCompletionsBackend
from stream_gateway.llm.params import map_parameters
from stream_gateway.llm.protocol import ChatBackend, ChatRequest
from stream_gateway.llm.resolver import resolve
from stream_gateway.observability.usage import UsageAggregator
from stream_gateway.tools.orchestrator import ToolOrchestrator
from stream_gateway.tools.protocol import ToolCall, ToolResult

logger = logging.getLogger(__name__)

CancelChecker = Callable[[], bool]


class SessionState(str, Enum):
    """会话传输状态。"""

    IDLE = "idle"
    PREPARING = "preparing"
    STREAMING = "streaming"
    COMPLETED = "completed"
    ABORTED = "aborted"
    ERRORED = "errored"


@dataclass
class _ActiveTurn:
    """单个活动 turn 的运行时句柄。"""

    conversation_id: str
    turn_id: str
    cancel_checker: Optional[CancelChecker] = None
    cancel_requested: bool = False
    done: asyncio.Event = field(default_factory=asyncio.Event)
    task: Optional["asyncio.Task[None]"] = None

    def is_cancelled(self) -> bool:
        """取消标记或外部 cancel_checker 任一为真即视为已取消。"""

        if self.cancel_requested:
            return True
        if self.cancel_checker is not None and self.cancel_checker():
            self.cancel_requested = True
        return self.cancel_requested


class _TurnAborted(Exception):
    """producer 内部使用：在 yield point 检测到取消。"""


class StreamingGateway:
    """
    Streaming 推理网关（会话状态机 + turn 编排）。

    依赖（均可注入，便于测试）：
    - backend：上游 streaming 调用（缺省为 OpenAI-compatible httpx 实现）
    - orchestrator：工具发现/派发（缺省为不含 provider 的空编排器）
    - config：gateway 配置快照
    """

    def __init__(
        self,
        *,
        config: Optional[GatewayConfig] = None,
        backend: Optional[ChatBackend] = None,
        orchestrator: Optional[ToolOrchestrator] = None,
        clock: Callable[[], float] = monotonic_ms,
        poll_interval_sec: float = 0.05,
    ) -> None:
        """
        参数：
        - config：配置快照（缺省使用 schema 默认值）
        - backend：ChatBackend 实现
        - orchestrator：ToolOrchestrator
        - clock：毫秒时钟（用量聚合）
        - poll_interval_sec：producer 轮询取消标记的间隔
        """

        self._config = config or GatewayConfig()
        self._backend: ChatBackend = backend or OpenAIChatCompletionsBackend(self._config.llm)
        self._orchestrator = orchestrator or ToolOrchestrator()
        self._clock = clock
        self._poll = float(poll_interval_sec)
        self._states: Dict[str, SessionState] = {}
        self._active: Dict[str, _ActiveTurn] = {}
        self._latest_turn: Dict[str, str] = {}
        self._usage: Dict[str, UsageSnapshot] = {}

    @property
    def orchestrator(self) -> ToolOrchestrator:
        """工具编排器。"""

        return self._orchestrator

    def state(self, conversation_id: str) -> SessionState:
        """返回会话的最新状态（未出现过的会话为 idle）。"""

        return self._states.get(conversation_id, SessionState.IDLE)

    def last_usage(self, conversation_id: str) -> Optional[UsageSnapshot]:
        """返回会话最近一个 completed turn 的用量快照。"""

        return self._usage.get(conversation_id)

    def _set_state(self, conversation_id: str, state: SessionState) -> None:
        """切换状态并记录 debug 日志。"""

        prev = self._states.get(conversation_id, SessionState.IDLE)
        self._states[conversation_id] = state
        logger.debug("conversation=%s state %s -> %s", conversation_id, prev.value, state.value)

    def cancel(self, conversation_id: str) -> bool:
        """
        协作式取消会话的活动 turn。

        返回：
        - True：存在活动 turn 且已标记取消；False：没有活动 turn
        """

        active = self._active.get(conversation_id)
        if active is None or active.done.is_set():
            return False
        active.cancel_requested = True
        return True

    def reconnect(self, conversation_id: str) -> None:
        """不支持重连：始终返回 None（没有可重连的流）。"""

        logger.debug("reconnect requested for conversation=%s; no stream to reconnect to", conversation_id)
        return None

    async def regenerate(
        self, request: TurnRequest, *, cancel_checker: Optional[CancelChecker] = None
    ) -> AsyncIterator[StreamEvent]:
        """
        重新生成（与 send 相同的流程；调用方负责去掉上一条 assistant 回复）。
        """

        if request.trigger != "regenerate-message":
            request = request.model_copy(update={"trigger": "regenerate-message"})
        async for ev in self.send(request, cancel_checker=cancel_checker):
            yield ev

    async def send(
        self, request: TurnRequest, *, cancel_checker: Optional[CancelChecker] = None
    ) -> AsyncIterator[StreamEvent]:
        """
        发送一次 turn 并以异步迭代器交付规范化事件。

        参数：
        - request：turn 请求
        - cancel_checker：可选；返回 True 表示调用方要求取消（在每个 yield point 检查）
        """

        cid = request.conversation_id
        previous = self._active.get(cid)
        if previous is not None and not previous.done.is_set():
            logger.debug("conversation=%s cancelling previous turn=%s", cid, previous.turn_id)
            previous.cancel_requested = True
            await previous.done.wait()

        active = _ActiveTurn(conversation_id=cid, turn_id=uuid.uuid4().hex, cancel_checker=cancel_checker)
        self._active[cid] = active
        self._latest_turn[cid] = active.turn_id
        out_q: "asyncio.Queue[Optional[StreamEvent]]" = asyncio.Queue()
        active.task = asyncio.create_task(self._run_turn(active, request, out_q))

        delivered_terminal = False
        try:
            while True:
                ev = await out_q.get()
                if ev is None:
                    break
                if active.is_cancelled():
                    break
                if ev.is_terminal:
                    delivered_terminal = True
                yield ev
        finally:
            if not active.done.is_set():
                active.cancel_requested = True
                await active.done.wait()
            if active.cancel_requested and not delivered_terminal and self._latest_turn.get(cid) == active.turn_id:
                self._set_state(cid, SessionState.ABORTED)

    def _event(self, active: _ActiveTurn, event_type: str, payload: Optional[Dict[str, Any]] = None) -> StreamEvent:
        """构造一个属于当前 turn 的事件。"""

        return StreamEvent(
            type=event_type,
            conversation_id=active.conversation_id,
            turn_id=active.turn_id,
            timestamp=now_rfc3339(),
            payload=dict(payload or {}),
        )

    async def _run_turn(
        self, active: _ActiveTurn, request: TurnRequest, out_q: "asyncio.Queue[Optional[StreamEvent]]"
    ) -> None:
        """turn producer：准备 → 上游 streaming（含工具轮次）→ 终止事件。"""

        cid = active.conversation_id
        aggregator = UsageAggregator(clock=self._clock)

        def emit(event_type: str, payload: Optional[Dict[str, Any]] = None) -> None:
            """经用量聚合器后写入输出队列。"""

            out_q.put_nowait(aggregator.observe(self._event(active, event_type, payload)))

        def check_cancel() -> None:
            """yield point：检测到取消则中止 turn。"""

            if active.is_cancelled():
                raise _TurnAborted()

        try:
            self._set_state(cid, SessionState.PREPARING)
            target = resolve(request.model_id, request.provider, settings=self._config.gateway)
            parameters = map_parameters(request.parameters, target.param_flavor)
            check_cancel()
            snapshot = await self._orchestrator.refresh(
                cid, model_supports_tools=request.provider.supports_tools(request.model_id)
            )
            check_cancel()

            self._set_state(cid, SessionState.STREAMING)
            emit(
                "start",
                {
                    "model_id": request.model_id,
                    "provider": request.provider.name,
                    "compatibility_mode": target.compatibility_mode.value,
                    "trigger": request.trigger,
                    "tools": [s.name for s in snapshot.enabled],
                },
            )

            wire_messages = to_wire_messages(request.messages, system_prompt=request.system_prompt)
            rounds = 0
            next_index = 0
            finish_reason: Optional[str] = None
            while True:
                chat_request = ChatRequest(
                    target=target,
                    messages=list(wire_messages),
                    tools=list(snapshot.enabled),
                    parameters=parameters,
                    index_base=next_index,
                    turn_id=active.turn_id,
                )
                assistant_text = ""
                pending: List[ToolCall] = []
                async for parsed in self._stream_backend(active, chat_request):
                    t = parsed.type
                    if t == "text_delta":
                        assistant_text += parsed.text or ""
                        emit("text-delta", {"text": parsed.text or ""})
                    elif t == "tool_call_start":
                        next_index = max(next_index, int(parsed.index or 0) + 1)
                        emit("tool-call-start", {"index": parsed.index, "call_id": parsed.call_id, "name": parsed.name})
                    elif t == "tool_call_delta":
                        emit("tool-call-delta", {"index": parsed.index, "arguments_delta": parsed.arguments_delta})
                    elif t == "usage":
                        emit("usage-delta", _usage_payload(parsed.usage))
                    elif t == "tool_calls":
                        pending.extend(parsed.tool_calls or [])
                    elif t == "completed":
                        finish_reason = parsed.finish_reason

                if not pending:
                    break
                if rounds >= self._config.gateway.max_tool_rounds:
                    logger.warning("conversation=%s reached max_tool_rounds=%s", cid, self._config.gateway.max_tool_rounds)
                    finish_reason = "max_tool_rounds"
                    break

                results: List[ToolResult] = []
                for call in pending:
                    check_cancel()
                    result = await self._orchestrator.dispatch(call, conversation_id=cid, project_id=request.project_id)
                    results.append(result)
                    emit("tool-call-result", _tool_result_payload(call, result))
                check_cancel()
                wire_messages.extend(tool_round_messages(pending, results, assistant_text=assistant_text))
                rounds += 1

            usage = aggregator.snapshot()
            self._usage[cid] = usage
            emit(
                "finish",
                {"finish_reason": finish_reason or "stop", "tool_rounds": rounds, "usage": usage.model_dump()},
            )
            self._set_state(cid, SessionState.COMPLETED)
        except _TurnAborted:
            self._set_state(cid, SessionState.ABORTED)
        except asyncio.CancelledError:
            self._set_state(cid, SessionState.ABORTED)
            raise
        except Exception as exc:
            if isinstance(exc, ConfigurationError):
                logger.warning("conversation=%s configuration error: %s", cid, exc.message)
            else:
                logger.warning("conversation=%s turn failed: %s", cid, type(exc).__name__)
            emit("error", classify_turn_exception(exc).to_payload())
            self._set_state(cid, SessionState.ERRORED)
        finally:
            # 同一会话的 turn 串行执行，下一轮会重新 refresh
            self._orchestrator.forget(cid)
            active.done.set()
            out_q.put_nowait(None)
            if self._active.get(cid) is active:
                del self._active[cid]

    async def _stream_backend(self, active: _ActiveTurn, chat_request: ChatRequest) -> AsyncIterator[ParsedEvent]:
        """
        在独立 task 中消费 backend，并以轮询方式转发事件。

        说明：
        - 每次轮询检查取消；取消时 cancel backend task（停止读取上游字节）并抛 `_TurnAborted`；
        - backend 异常通过队列传递并在此处重新抛出。
        """

        agen = self._backend.stream_chat(chat_request)
        q_backend: "asyncio.Queue[Any]" = asyncio.Queue()

        async def _consume_backend() -> None:
            """消费 backend streaming 并写入队列（异常与 EOF 通过哨兵传递）。"""

            try:
                async for item in agen:
                    await q_backend.put(item)
            except asyncio.CancelledError:
                with contextlib.suppress(Exception):
                    await agen.aclose()
                raise
            except Exception as e:
                await q_backend.put(e)
            finally:
                await q_backend.put(None)

        backend_task = asyncio.create_task(_consume_backend())
        try:
            while True:
                if active.is_cancelled():
                    raise _TurnAborted()
                try:
                    item = await asyncio.wait_for(q_backend.get(), timeout=self._poll)
                except asyncio.TimeoutError:
                    continue
                if item is None:
                    break
                if isinstance(item, BaseException):
                    raise item
                yield item
        finally:
            if not backend_task.done():
                backend_task.cancel()
                with contextlib.suppress(BaseException):
                    await asyncio.gather(backend_task, return_exceptions=True)


def _usage_payload(usage: Dict[str, Any]) -> Dict[str, Any]:
    """把上游 usage（OpenAI 字段名）转换为 `usage-delta` payload（canonical 字段名）。"""

    out: Dict[str, Any] = {}
    mapping = {
        "prompt_tokens": "input_tokens",
        "completion_tokens": "output_tokens",
        "total_tokens": "total_tokens",
        "input_tokens": "input_tokens",
        "output_tokens": "output_tokens",
        "tokens_per_second": "tokens_per_second",
    }
    for src, dst in mapping.items():
        value = usage.get(src)
        if isinstance(value, (int, float)) and not isinstance(value, bool) and dst not in out:
            out[dst] = value
    return out


def _tool_result_payload(call: ToolCall, result: ToolResult) -> Dict[str, Any]:
    """构造 `tool-call-result` payload。"""

    payload: Dict[str, Any] = {
        "index": call.index,
        "call_id": call.call_id,
        "name": call.name,
        "arguments": dict(call.args),
        "content": list(result.content),
    }
    if result.error is not None:
        payload["error"] = result.error
    return payload
