"""
Turn 用量与吞吐聚合。

口径：
- `start` 记录时钟起点；`usage-delta` / `finish` 捕获上游报告的 token 计数与可选吞吐；
- 吞吐：上游给出的正数优先；否则 output_tokens / 秒（两者均为正时）；否则 0；保留 1 位小数；
- total：上游报告值优先，否则 input + output；
- observe 不修改事件（原样返回）。
"""

from __future__ import annotations

from typing import Any, Callable, Dict, Optional

from stream_gateway.core.contracts import StreamEvent, UsageSnapshot
from stream_gateway.core.utils import monotonic_ms


def compute_tokens_per_second(
    output_tokens: Optional[int], elapsed_ms: Optional[float], provider_tps: Optional[float] = None
) -> float:
    """
    计算 tokens/s。

    示例：
    - output=120, elapsed=4000ms, provider=None → 30.0
    - output=0 或 elapsed=0 且无 provider 值 → 0
    """

    if provider_tps is not None and provider_tps > 0:
        return round(float(provider_tps), 1)
    if output_tokens and elapsed_ms and output_tokens > 0 and elapsed_ms > 0:
        return round(output_tokens / (elapsed_ms / 1000.0), 1)
    return 0.0


def _as_int(value: Any) -> Optional[int]:
    """宽松转换为 int（bool/非数字返回 None）。"""

    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value)
    return None


class UsageAggregator:
    """
    单个 turn 的用量聚合器。

    用法：
    - 对 turn 的每个事件调用 `observe(event)`（返回同一事件）
    - turn 完成时调用 `snapshot()` 得到冻结的 `UsageSnapshot`
    """

    def __init__(self, *, clock: Callable[[], float] = monotonic_ms) -> None:
        """
        参数：
        - clock：返回毫秒读数的时钟（测试可注入确定性时钟）
        """

        self._clock = clock
        self._started_at: Optional[float] = None
        self._input_tokens: Optional[int] = None
        self._output_tokens: Optional[int] = None
        self._total_tokens: Optional[int] = None
        self._provider_tps: Optional[float] = None

    def start(self) -> None:
        """记录起点（重复调用不覆盖）。"""

        if self._started_at is None:
            self._started_at = self._clock()

    def record_usage(self, usage: Dict[str, Any]) -> None:
        """
        记录上游报告的用量（OpenAI 字段名或 canonical 字段名均可）。

        说明：同一 turn 多次上游调用（工具轮次）时，计数累加。
        """

        inp = _as_int(usage.get("input_tokens", usage.get("prompt_tokens")))
        out = _as_int(usage.get("output_tokens", usage.get("completion_tokens")))
        total = _as_int(usage.get("total_tokens"))
        if inp is not None:
            self._input_tokens = (self._input_tokens or 0) + inp
        if out is not None:
            self._output_tokens = (self._output_tokens or 0) + out
        if total is not None:
            self._total_tokens = (self._total_tokens or 0) + total
        tps = usage.get("tokens_per_second")
        if isinstance(tps, (int, float)) and not isinstance(tps, bool) and tps > 0:
            self._provider_tps = float(tps)

    def observe(self, event: StreamEvent) -> StreamEvent:
        """观察一个事件并原样返回。"""

        if event.type == "start":
            self.start()
        elif event.type == "usage-delta":
            self.record_usage(event.payload)
        elif event.type == "finish":
            tps = event.payload.get("provider_tokens_per_second")
            if isinstance(tps, (int, float)) and not isinstance(tps, bool) and tps > 0:
                self._provider_tps = float(tps)
        return event

    def snapshot(self, now: Optional[float] = None) -> UsageSnapshot:
        """
        生成冻结的 UsageSnapshot。

        参数：
        - now：可选的毫秒读数（缺省读取时钟）
        """

        end = self._clock() if now is None else now
        elapsed = max(0.0, end - self._started_at) if self._started_at is not None else 0.0
        output = self._output_tokens or 0
        if self._total_tokens is not None:
            total = self._total_tokens
        else:
            total = (self._input_tokens or 0) + output
        return UsageSnapshot(
            input_tokens=self._input_tokens,
            output_tokens=output,
            total_tokens=total,
            elapsed_ms=int(round(elapsed)),
            tokens_per_second=compute_tokens_per_second(output, elapsed, self._provider_tps),
        )
