"""
Disabled tool 集合存储。

口径：
- key 形如 `provider_id::name`；
- 每个会话有独立集合；会话未设置时回退到全局默认集合；
- 全局默认集合只在“首次发现工具且尚未 seed”时由 provider 默认值初始化一次，之后仅由显式用户操作修改；
- 持久化属于外部协作者：本模块只提供协议与内存实现。
"""

from __future__ import annotations

from typing import Dict, FrozenSet, Iterable, Optional, Protocol


class DisabledToolStore(Protocol):
    """Disabled tool 集合存储协议。"""

    def disabled_for(self, conversation_id: Optional[str]) -> FrozenSet[str]:
        """返回会话的 disabled 集合（未设置时为全局默认集合）。"""

        ...

    def set_disabled(self, conversation_id: str, keys: Iterable[str]) -> None:
        """设置会话的 disabled 集合（显式用户操作）。"""

        ...

    def set_default_disabled(self, keys: Iterable[str]) -> None:
        """设置全局默认 disabled 集合（显式用户操作）。"""

        ...

    def is_seeded(self) -> bool:
        """全局默认集合是否已被 seed（或被用户设置过）。"""

        ...

    def seed_defaults(self, keys: Iterable[str]) -> bool:
        """若尚未 seed，则用 keys 初始化全局默认集合并返回 True；否则不做任何事并返回 False。"""

        ...


class InMemoryDisabledToolStore:
    """进程内 disabled 集合存储（测试与嵌入式使用）。"""

    def __init__(self, *, default_disabled: Iterable[str] | None = None) -> None:
        """
        参数：
        - default_disabled：可选；预置全局默认集合（视为已 seed）
        """

        self._per_conversation: Dict[str, FrozenSet[str]] = {}
        self._default: FrozenSet[str] = frozenset(default_disabled or ())
        self._seeded = default_disabled is not None

    def disabled_for(self, conversation_id: Optional[str]) -> FrozenSet[str]:
        """返回会话的 disabled 集合（未设置时为全局默认集合）。"""

        if conversation_id is not None and conversation_id in self._per_conversation:
            return self._per_conversation[conversation_id]
        return self._default

    def set_disabled(self, conversation_id: str, keys: Iterable[str]) -> None:
        """设置会话的 disabled 集合。"""

        self._per_conversation[conversation_id] = frozenset(keys)

    def set_default_disabled(self, keys: Iterable[str]) -> None:
        """设置全局默认集合（同时标记为已 seed）。"""

        self._default = frozenset(keys)
        self._seeded = True

    def is_seeded(self) -> bool:
        """全局默认集合是否已被 seed。"""

        return self._seeded

    def seed_defaults(self, keys: Iterable[str]) -> bool:
        """只在首次调用时生效的 seed。"""

        if self._seeded:
            return False
        self._default = frozenset(keys)
        self._seeded = True
        return True
