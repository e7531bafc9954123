"""
Observability（turn 用量与吞吐）。

说明：
- 不引入第三方监控依赖；上层可消费 `UsageSnapshot` 接入自己的指标系统。
"""

from __future__ import annotations

__all__ = [
    "usage",
]
