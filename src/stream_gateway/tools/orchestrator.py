"""
Tool 编排：发现、过滤与派发。

包含：
- refresh：并发查询所有 provider（各自受 discovery 超时约束），失败的 provider 降级为 0 个工具（WARNING）
- enabled_tools：按 `provider_id::name` 做纯集合差
- 快照：每次 refresh 生成新的不可变快照并整体替换引用（读方无需加锁）；`forget` 释放会话快照
- dispatch：只在该会话的快照内按工具名定位 provider 并转发调用（受 dispatch 超时约束）；任何失败都转换为带 error 的 ToolResult
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, FrozenSet, Iterable, List, Mapping, Optional, Sequence, Tuple

from stream_gateway.core.errors import ToolDispatchError, ToolProviderError
from stream_gateway.tools.disabled import DisabledToolStore, InMemoryDisabledToolStore
from stream_gateway.tools.protocol import (
    TOOL_KEY_SEPARATOR,
    ToolCall,
    ToolCallContext,
    ToolProvider,
    ToolResult,
    ToolSpec,
    tool_key,
)

logger = logging.getLogger(__name__)


def enabled_tools(tools: Iterable[ToolSpec], disabled: Iterable[str]) -> List[ToolSpec]:
    """
    计算启用的工具（纯函数）：`tools` 中 key 不在 `disabled` 内的条目，保持原顺序。

    参数：
    - tools：发现到的工具
    - disabled：禁用 key 集合（`provider_id::name`）
    """

    blocked = frozenset(disabled)
    return [t for t in tools if t.key not in blocked]


@dataclass(frozen=True)
class ToolSnapshot:
    """
    一次 refresh 的不可变结果。

    字段：
    - discovered：发现到的全部工具（按 provider 注册顺序）
    - enabled：过滤后的工具（注入请求）
    - by_name：启用工具的 name → ToolSpec（只读 mapping）
    - failed_providers：本次发现失败/超时的 provider id
    """

    discovered: Tuple[ToolSpec, ...] = ()
    enabled: Tuple[ToolSpec, ...] = ()
    by_name: Mapping[str, ToolSpec] = field(default_factory=lambda: MappingProxyType({}))
    failed_providers: Tuple[str, ...] = ()


_EMPTY_SNAPSHOT = ToolSnapshot()


def _first_provider_per_name(tools: Sequence[ToolSpec]) -> List[ToolSpec]:
    """同名的启用工具只保留先注册 provider 的那个（被遮蔽者记录 WARNING）。"""

    owners: Dict[str, str] = {}
    kept: List[ToolSpec] = []
    for s in tools:
        owner = owners.get(s.name)
        if owner is not None:
            logger.warning("tool name %s from %s shadowed by provider %s", s.name, s.provider_id, owner)
            continue
        owners[s.name] = s.provider_id
        kept.append(s)
    return kept


class ToolOrchestrator:
    """
    Tool 编排器。

    说明：
    - 快照按会话保存，会话之间互不可见；turn 结束后由调用方 `forget`；
    - refresh 期间的并发读取看到的是旧快照或新快照，不会看到中间状态。
    """

    def __init__(
        self,
        providers: Sequence[ToolProvider] = (),
        *,
        disabled_store: Optional[DisabledToolStore] = None,
        discovery_timeout_sec: float = 10.0,
        dispatch_timeout_sec: float = 60.0,
    ) -> None:
        """
        参数：
        - providers：已注册的 tool provider（顺序决定同名工具的优先级）
        - disabled_store：disabled 集合存储（缺省为内存实现）
        - discovery_timeout_sec / dispatch_timeout_sec：单个 provider 的发现/派发超时
        """

        self._providers: Dict[str, ToolProvider] = {}
        for p in providers:
            self._providers[p.provider_id] = p
        self._disabled = disabled_store or InMemoryDisabledToolStore()
        self._discovery_timeout = float(discovery_timeout_sec)
        self._dispatch_timeout = float(dispatch_timeout_sec)
        self._snapshots: Dict[str, ToolSnapshot] = {}

    @property
    def disabled_store(self) -> DisabledToolStore:
        """disabled 集合存储。"""

        return self._disabled

    @property
    def provider_ids(self) -> List[str]:
        """已注册的 provider id。"""

        return list(self._providers)

    def snapshot(self, conversation_id: str) -> ToolSnapshot:
        """返回会话的当前快照（未 refresh 过或已 forget 则为空快照）。"""

        return self._snapshots.get(conversation_id, _EMPTY_SNAPSHOT)

    def available_tools(self, conversation_id: str) -> Mapping[str, Dict[str, Any]]:
        """返回启用工具的 name → {description, input_schema}（只读快照）。"""

        snap = self.snapshot(conversation_id)
        return MappingProxyType(
            {name: {"description": s.description, "input_schema": dict(s.input_schema)} for name, s in snap.by_name.items()}
        )

    def enabled_specs(self, conversation_id: str) -> List[ToolSpec]:
        """返回启用工具的完整描述（用于请求注入）。"""

        return list(self.snapshot(conversation_id).enabled)

    def forget(self, conversation_id: str) -> None:
        """丢弃会话快照（不影响 disabled 集合）。"""

        self._snapshots.pop(conversation_id, None)

    async def _discover_one(self, provider: ToolProvider) -> Tuple[str, Optional[List[ToolSpec]]]:
        """查询单个 provider；失败/超时返回 None（记录 WARNING，不向上抛出）。"""

        pid = provider.provider_id
        try:
            specs = await asyncio.wait_for(provider.list_tools(), timeout=self._discovery_timeout)
        except asyncio.TimeoutError:
            logger.warning("tool provider %s timed out after %.1fs; contributing no tools", pid, self._discovery_timeout)
            return pid, None
        except ToolProviderError as exc:
            logger.warning("tool provider %s unavailable: %s", pid, exc.message)
            return pid, None
        except Exception as exc:
            logger.warning("tool provider %s failed during discovery: %s", pid, exc)
            return pid, None
        return pid, [s if s.provider_id else s.model_copy(update={"provider_id": pid}) for s in specs]

    def _maybe_seed_defaults(self) -> None:
        """首次发现工具时，用 provider 提供的默认禁用列表 seed 全局默认集合（仅一次）。"""

        if self._disabled.is_seeded():
            return
        keys: List[str] = []
        for pid, provider in self._providers.items():
            fn = getattr(provider, "default_disabled_tools", None)
            if not callable(fn):
                continue
            for k in fn() or []:
                k = str(k)
                keys.append(k if TOOL_KEY_SEPARATOR in k else tool_key(pid, k))
        if self._disabled.seed_defaults(keys):
            logger.debug("seeded default disabled tools: %s", sorted(keys))

    async def refresh(self, conversation_id: str, *, model_supports_tools: bool = True) -> ToolSnapshot:
        """
        重新发现工具并替换会话快照。

        参数：
        - conversation_id：会话 id（决定使用哪个 disabled 集合）
        - model_supports_tools：所选模型是否具备 tool calling 能力；False 时启用集合为空且不查询 provider

        返回：
        - 新快照
        """

        if not model_supports_tools or not self._providers:
            snap = _EMPTY_SNAPSHOT
            self._snapshots[conversation_id] = snap
            return snap

        results = await asyncio.gather(*(self._discover_one(p) for p in self._providers.values()))

        discovered: List[ToolSpec] = []
        failed: List[str] = []
        for pid, specs in results:
            if specs is None:
                failed.append(pid)
            else:
                discovered.extend(specs)

        if discovered:
            self._maybe_seed_defaults()

        disabled: FrozenSet[str] = self._disabled.disabled_for(conversation_id)
        enabled = _first_provider_per_name(enabled_tools(discovered, disabled))
        snap = ToolSnapshot(
            discovered=tuple(discovered),
            enabled=tuple(enabled),
            by_name=MappingProxyType({s.name: s for s in enabled}),
            failed_providers=tuple(failed),
        )
        self._snapshots[conversation_id] = snap
        return snap

    async def dispatch(
        self,
        call: ToolCall,
        *,
        conversation_id: str,
        project_id: Optional[str] = None,
        scope: str = "thread",
    ) -> ToolResult:
        """
        派发一次工具调用（永不抛出）。

        返回：
        - ToolResult：成功为 provider 的结果；未知工具、provider 失败或超时时带 `error` 与可读文本兜底
        """

        spec = self.snapshot(conversation_id).by_name.get(call.name)
        provider = self._providers.get(spec.provider_id) if spec is not None else None
        context = ToolCallContext(thread_id=conversation_id, project_id=project_id, scope=scope)

        try:
            if spec is None or provider is None:
                raise ToolDispatchError(f"tool not available: {call.name}", details={"tool": call.name})
            try:
                return await asyncio.wait_for(
                    provider.call_tool(call.name, dict(call.args), context), timeout=self._dispatch_timeout
                )
            except asyncio.TimeoutError as exc:
                raise ToolDispatchError(
                    f"tool {call.name} timed out after {self._dispatch_timeout:.1f}s",
                    details={"tool": call.name, "provider_id": spec.provider_id},
                ) from exc
            except ToolDispatchError:
                raise
            except Exception as exc:
                raise ToolDispatchError(
                    f"tool {call.name} failed: {exc}",
                    details={"tool": call.name, "provider_id": spec.provider_id},
                ) from exc
        except ToolDispatchError as exc:
            logger.warning("tool dispatch failed call_id=%s: %s", call.call_id, exc.message)
            return ToolResult.failure(exc.message, f"Tool call failed: {exc.message}")
