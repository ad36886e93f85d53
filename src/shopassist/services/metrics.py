import math
import time
from collections import Counter, deque
from dataclasses import dataclass, field
from threading import Lock
from typing import Any, Dict, Iterable, List


@dataclass(frozen=True)
class RunRecord:
    """Outcome of a single agent run."""

    latency_ms: float
    model_call_count: int
    tool_names: List[str] = field(default_factory=list)
    error: bool = False


def percentile(sorted_values: List[float], pct: float) -> float:
    """Nearest-rank percentile of an ascending list; 0 for an empty list."""
    if not sorted_values:
        return 0.0
    index = math.ceil(pct / 100 * len(sorted_values)) - 1
    return sorted_values[max(0, index)]


def _mean(values: Iterable[float]) -> float:
    values = list(values)
    return sum(values) / len(values) if values else 0.0


class MetricsCollector:
    """Process-wide run metrics with bounded latency and model-call windows."""

    def __init__(self, max_samples: int = 1000) -> None:
        if max_samples < 1:
            raise ValueError("max_samples must be >= 1")
        self.max_samples = max_samples
        self._lock = Lock()
        self.reset()

    def reset(self) -> None:
        with self._lock:
            self._request_count = 0
            self._error_count = 0
            self._response_times: deque[float] = deque(maxlen=self.max_samples)
            self._llm_call_counts: deque[int] = deque(maxlen=self.max_samples)
            self._tool_call_counts: Counter[str] = Counter()
            self._last_reset_time = time.time()

    def record(self, run: RunRecord) -> None:
        with self._lock:
            self._request_count += 1
            if run.error:
                self._error_count += 1
            self._response_times.append(run.latency_ms)
            self._llm_call_counts.append(run.model_call_count)
            self._tool_call_counts.update(run.tool_names)

    def snapshot(self) -> Dict[str, Any]:
        """Return a read-only copy of the aggregates plus derived statistics."""
        with self._lock:
            times = sorted(self._response_times)
            llm_calls = sorted(self._llm_call_counts)
            request_count = self._request_count
            error_count = self._error_count
            tool_counts = dict(self._tool_call_counts)
            last_reset = self._last_reset_time

        return {
            "requestCount": request_count,
            "errorCount": error_count,
            "errorRate": error_count / request_count if request_count else 0.0,
            "averageResponseTime": _mean(times),
            "p50ResponseTime": percentile(times, 50),
            "p95ResponseTime": percentile(times, 95),
            "p99ResponseTime": percentile(times, 99),
            "averageLlmCalls": _mean(llm_calls),
            "p50LlmCalls": percentile(llm_calls, 50),
            "p95LlmCalls": percentile(llm_calls, 95),
            "p99LlmCalls": percentile(llm_calls, 99),
            "sampleCount": len(times),
            "toolCallCounts": tool_counts,
            "lastResetTime": last_reset,
        }
