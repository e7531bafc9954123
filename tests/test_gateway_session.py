from __future__ import annotations

import asyncio
import json
from typing import Any, Dict, List

import httpx

from stream_gateway.config.loader import GatewayConfig, GatewayLlmConfig
from stream_gateway.core.contracts import (
    ChatMessage,
    InferenceParameters,
    ModelDescriptor,
    ProviderDescriptor,
    StreamEvent,
    TurnRequest,
)
from stream_gateway.gateway.session import SessionState, StreamingGateway
from stream_gateway.llm.chat_sse import ParsedEvent
from stream_gateway.llm.fake import FakeChatBackend, FakeChatCall
from stream_gateway.llm.openai_chat import OpenAIChatCompletionsBackend
from stream_gateway.tools.orchestrator import ToolOrchestrator
from stream_gateway.tools.protocol import ToolCall, ToolCallContext, ToolResult, ToolSpec
from stream_gateway.tools.providers import StaticToolProvider


def _provider(name: str = "openai", *, api_key: str | None = "sk-test", tools: bool = True) -> ProviderDescriptor:
    caps = ["tools"] if tools else []
    return ProviderDescriptor(name=name, api_key=api_key, models=[ModelDescriptor(id="m-1", capabilities=caps)])


def _request(provider: ProviderDescriptor | None = None, **kwargs: Any) -> TurnRequest:
    return TurnRequest(
        conversation_id=kwargs.pop("conversation_id", "c1"),
        messages=[ChatMessage.text("user", "hello")],
        model_id="m-1",
        provider=provider or _provider(),
        **kwargs,
    )


async def _collect(gw: StreamingGateway, req: TurnRequest) -> List[StreamEvent]:
    return [ev async for ev in gw.send(req)]


def _search_provider(seen: List[Dict[str, Any]] | None = None) -> StaticToolProvider:
    async def search(args: Dict[str, Any], ctx: ToolCallContext) -> ToolResult:
        if seen is not None:
            seen.append({"args": args, "thread_id": ctx.thread_id, "project_id": ctx.project_id})
        return ToolResult.from_text("3 hits")

    spec = ToolSpec(name="search", description="Search the index", input_schema={"type": "object", "properties": {"q": {"type": "string"}}})
    return StaticToolProvider("rag", [spec], {"search": search})


def _tool_round_calls() -> List[FakeChatCall]:
    call = ToolCall(call_id="t1", name="search", args={"q": "x"}, raw_arguments='{"q":"x"}', index=0)
    return [
        FakeChatCall(
            events=[
                ParsedEvent(type="tool_call_start", index=0, call_id="t1", name="search"),
                ParsedEvent(type="tool_call_delta", index=0, arguments_delta='{"q":"x"}'),
                ParsedEvent(type="tool_calls", tool_calls=[call], finish_reason="tool_calls"),
                ParsedEvent(type="completed", finish_reason="tool_calls"),
            ]
        ),
        FakeChatCall(
            events=[
                ParsedEvent(type="text_delta", text="Found 3 hits."),
                ParsedEvent(type="usage", usage={"prompt_tokens": 10, "completion_tokens": 4, "total_tokens": 14}),
                ParsedEvent(type="completed", finish_reason="stop"),
            ]
        ),
    ]


def test_send_streams_text_and_finishes_with_usage() -> None:
    backend = FakeChatBackend(
        [
            FakeChatCall(
                events=[
                    ParsedEvent(type="text_delta", text="Hel"),
                    ParsedEvent(type="text_delta", text="lo"),
                    ParsedEvent(type="usage", usage={"prompt_tokens": 3, "completion_tokens": 2, "total_tokens": 5}),
                    ParsedEvent(type="completed", finish_reason="stop"),
                ]
            )
        ]
    )
    gw = StreamingGateway(backend=backend, poll_interval_sec=0.01)
    events = asyncio.run(_collect(gw, _request(parameters=InferenceParameters(temperature=0.2, top_k=5))))

    assert [e.type for e in events] == ["start", "text-delta", "text-delta", "usage-delta", "finish"]
    assert events[0].payload["compatibility_mode"] == "openai"
    assert events[0].payload["trigger"] == "submit-message"
    assert len({e.turn_id for e in events}) == 1
    assert events[3].payload == {"input_tokens": 3, "output_tokens": 2, "total_tokens": 5}

    finish = events[-1].payload
    assert finish["finish_reason"] == "stop"
    assert finish["usage"]["total_tokens"] == 5
    assert gw.state("c1") is SessionState.COMPLETED
    assert gw.last_usage("c1") is not None
    # openai flavor 不转发 top_k
    assert backend.requests[0].parameters == {"temperature": 0.2}


def test_missing_credentials_fail_before_any_network_call() -> None:
    calls = {"n": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["n"] += 1
        return httpx.Response(200)

    backend = OpenAIChatCompletionsBackend(GatewayLlmConfig(), transport=httpx.MockTransport(handler))
    gw = StreamingGateway(backend=backend, poll_interval_sec=0.01)
    events = asyncio.run(_collect(gw, _request(_provider(api_key=None))))

    assert [e.type for e in events] == ["error"]
    assert events[0].payload["error_kind"] == "configuration_error"
    assert events[0].payload["retryable"] is False
    assert calls["n"] == 0
    assert gw.state("c1") is SessionState.ERRORED


def test_upstream_auth_failure_becomes_error_event() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(401, json={"error": {"message": "Invalid API key"}})

    backend = OpenAIChatCompletionsBackend(GatewayLlmConfig(), transport=httpx.MockTransport(handler))
    gw = StreamingGateway(backend=backend, poll_interval_sec=0.01)
    events = asyncio.run(_collect(gw, _request()))

    assert [e.type for e in events] == ["start", "error"]
    assert events[-1].payload["error_kind"] == "auth_error"
    assert "sk-test" not in events[-1].to_json()
    assert gw.state("c1") is SessionState.ERRORED


def test_gemini_tool_call_fragments_get_turn_indices() -> None:
    bodies: List[Dict[str, Any]] = []

    def handler(request: httpx.Request) -> httpx.Response:
        bodies.append(json.loads(request.content))
        if len(bodies) == 1:
            chunk = {
                "choices": [
                    {
                        "delta": {
                            "tool_calls": [
                                {"id": "a", "function": {"name": "search", "arguments": '{"q":"1"}'}},
                                {"id": "b", "function": {"name": "search", "arguments": '{"q":"2"}'}},
                                {"id": "c", "function": {"name": "search", "arguments": '{"q":"3"}'}},
                            ]
                        }
                    }
                ]
            }
            lines = [json.dumps(chunk), json.dumps({"choices": [{"delta": {}, "finish_reason": "tool_calls"}]}), "[DONE]"]
        else:
            lines = [json.dumps({"choices": [{"delta": {"content": "done"}, "finish_reason": "stop"}]}), "[DONE]"]
        body = "".join(f"data: {line}\n\n" for line in lines).encode("utf-8")
        return httpx.Response(200, headers={"content-type": "text/event-stream"}, content=body)

    backend = OpenAIChatCompletionsBackend(GatewayLlmConfig(), transport=httpx.MockTransport(handler))
    orch = ToolOrchestrator([_search_provider()])
    gw = StreamingGateway(backend=backend, orchestrator=orch, poll_interval_sec=0.01)
    events = asyncio.run(_collect(gw, _request(_provider("gemini"))))

    starts = [e for e in events if e.type == "tool-call-start"]
    assert [e.payload["index"] for e in starts] == [0, 1, 2]
    results = [e for e in events if e.type == "tool-call-result"]
    assert [e.payload["call_id"] for e in results] == ["a", "b", "c"]
    assert events[-1].type == "finish"
    assert bodies[0]["tools"][0]["function"]["name"] == "search"
    assert [m["role"] for m in bodies[1]["messages"]] == ["user", "assistant", "tool", "tool", "tool"]


def test_tool_round_dispatches_and_reinjects_results() -> None:
    seen: List[Dict[str, Any]] = []
    backend = FakeChatBackend(_tool_round_calls())
    orch = ToolOrchestrator([_search_provider(seen)])
    gw = StreamingGateway(backend=backend, orchestrator=orch, poll_interval_sec=0.01)
    events = asyncio.run(_collect(gw, _request(system_prompt="be brief", project_id="proj")))

    assert [e.type for e in events] == [
        "start",
        "tool-call-start",
        "tool-call-delta",
        "tool-call-result",
        "text-delta",
        "usage-delta",
        "finish",
    ]
    assert events[0].payload["tools"] == ["search"]
    result = events[3].payload
    assert result["call_id"] == "t1"
    assert result["arguments"] == {"q": "x"}
    assert result["content"] == [{"type": "text", "text": "3 hits"}]
    assert "error" not in result
    assert seen == [{"args": {"q": "x"}, "thread_id": "c1", "project_id": "proj"}]

    second = backend.requests[1]
    assert second.index_base == 1
    assert second.messages[0] == {"role": "system", "content": "be brief"}
    assert second.messages[-1] == {"role": "tool", "tool_call_id": "t1", "content": "3 hits"}
    assert events[-1].payload["tool_rounds"] == 1
    assert events[-1].payload["finish_reason"] == "stop"


def test_tool_snapshot_is_released_when_turn_ends() -> None:
    backend = FakeChatBackend(_tool_round_calls())
    orch = ToolOrchestrator([_search_provider()])
    gw = StreamingGateway(backend=backend, orchestrator=orch, poll_interval_sec=0.01)
    events = asyncio.run(_collect(gw, _request()))

    assert events[-1].type == "finish"
    assert orch.snapshot("c1").enabled == ()
    assert dict(orch.available_tools("c1")) == {}


def test_model_without_tool_capability_gets_no_tools() -> None:
    backend = FakeChatBackend([FakeChatCall(events=[ParsedEvent(type="text_delta", text="hi")])])
    orch = ToolOrchestrator([_search_provider()])
    gw = StreamingGateway(backend=backend, orchestrator=orch, poll_interval_sec=0.01)
    events = asyncio.run(_collect(gw, _request(_provider(tools=False))))

    assert events[0].payload["tools"] == []
    assert backend.requests[0].tools == []
    assert events[-1].type == "finish"


def test_max_tool_rounds_stops_the_loop() -> None:
    backend = FakeChatBackend(_tool_round_calls()[:1])
    cfg = GatewayConfig(gateway={"max_tool_rounds": 0})
    gw = StreamingGateway(config=cfg, backend=backend, orchestrator=ToolOrchestrator([_search_provider()]), poll_interval_sec=0.01)
    events = asyncio.run(_collect(gw, _request()))

    assert events[-1].type == "finish"
    assert events[-1].payload["finish_reason"] == "max_tool_rounds"
    assert not any(e.type == "tool-call-result" for e in events)
    assert len(backend.requests) == 1


def test_cancel_stops_delivery_and_aborts() -> None:
    text_events = [ParsedEvent(type="text_delta", text=f"w{i} ") for i in range(10)]
    backend = FakeChatBackend([FakeChatCall(events=text_events, delay_sec=0.05)])
    gw = StreamingGateway(backend=backend, poll_interval_sec=0.01)

    async def _run() -> List[StreamEvent]:
        seen: List[StreamEvent] = []
        async for ev in gw.send(_request()):
            seen.append(ev)
            if sum(1 for e in seen if e.type == "text-delta") == 2:
                assert gw.cancel("c1") is True
        return seen

    events = asyncio.run(_run())
    assert [e.type for e in events] == ["start", "text-delta", "text-delta"]
    assert gw.state("c1") is SessionState.ABORTED
    assert backend.events_yielded < len(text_events)
    assert gw.last_usage("c1") is None
    assert gw.cancel("c1") is False


def test_cancel_checker_is_honoured() -> None:
    backend = FakeChatBackend([FakeChatCall(events=[ParsedEvent(type="text_delta", text="x")] * 5, delay_sec=0.05)])
    gw = StreamingGateway(backend=backend, poll_interval_sec=0.01)
    flag = {"stop": False}

    async def _run() -> List[StreamEvent]:
        seen: List[StreamEvent] = []
        async for ev in gw.send(_request(), cancel_checker=lambda: flag["stop"]):
            seen.append(ev)
            if ev.type == "text-delta":
                flag["stop"] = True
        return seen

    events = asyncio.run(_run())
    assert [e.type for e in events] == ["start", "text-delta"]
    assert gw.state("c1") is SessionState.ABORTED


def test_new_send_cancels_the_active_turn() -> None:
    slow = FakeChatCall(events=[ParsedEvent(type="text_delta", text=f"{i}") for i in range(20)], delay_sec=0.05)
    quick = FakeChatCall(events=[ParsedEvent(type="text_delta", text="second"), ParsedEvent(type="completed", finish_reason="stop")])
    backend = FakeChatBackend([slow, quick])
    gw = StreamingGateway(backend=backend, poll_interval_sec=0.01)

    async def _run() -> tuple[List[StreamEvent], List[StreamEvent]]:
        first: List[StreamEvent] = []

        async def _consume_first() -> None:
            async for ev in gw.send(_request()):
                first.append(ev)

        task = asyncio.create_task(_consume_first())
        while not any(e.type == "text-delta" for e in first):
            await asyncio.sleep(0.01)
        second = await _collect(gw, _request())
        await task
        return first, second

    first, second = asyncio.run(_run())
    assert not any(e.is_terminal for e in first)
    assert [e.type for e in second] == ["start", "text-delta", "finish"]
    assert first[0].turn_id != second[0].turn_id
    assert gw.state("c1") is SessionState.COMPLETED


def test_regenerate_marks_trigger() -> None:
    backend = FakeChatBackend([FakeChatCall(events=[ParsedEvent(type="text_delta", text="again")])])
    gw = StreamingGateway(backend=backend, poll_interval_sec=0.01)

    async def _run() -> List[StreamEvent]:
        return [ev async for ev in gw.regenerate(_request())]

    events = asyncio.run(_run())
    assert events[0].payload["trigger"] == "regenerate-message"
    assert events[-1].payload["finish_reason"] == "fake_eof"


def test_reconnect_has_nothing_to_resume() -> None:
    gw = StreamingGateway(backend=FakeChatBackend([]))
    assert gw.reconnect("c1") is None
    assert gw.state("c1") is SessionState.IDLE


def test_backend_exception_becomes_error_event() -> None:
    gw = StreamingGateway(backend=FakeChatBackend([]), poll_interval_sec=0.01)
    events = asyncio.run(_collect(gw, _request()))

    assert [e.type for e in events] == ["start", "error"]
    assert events[-1].payload["error_kind"] == "unknown"
    assert "exhausted" in events[-1].payload["message"]
    assert gw.state("c1") is SessionState.ERRORED
