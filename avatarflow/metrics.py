"""
In-process pipeline metrics, exposed on GET /metrics.

  counters   pipeline.submitted / succeeded / failed, errors.<kind>
  gauges     active_jobs, start_time
  latency    rolling window of stage durations (ms) with p50/p95
  errors     the most recent terminal failures

Everything resets on restart; ProgressRecords are the durable history.
"""

import time
import threading
from collections import Counter, deque
from contextlib import contextmanager
from typing import Deque, Dict

LATENCY_WINDOW = 100
ERROR_WINDOW = 50

_lock = threading.Lock()
_counters: Counter = Counter()
_gauges: Dict[str, float] = {}
_stage_ms: Dict[str, Deque[float]] = {}
_failures: Deque[dict] = deque(maxlen=ERROR_WINDOW)


def inc_counter(name: str, amount: int = 1):
    with _lock:
        _counters[name] += amount


def set_gauge(name: str, value: float):
    with _lock:
        _gauges[name] = value


def record_latency(stage: str, duration_ms: float):
    with _lock:
        window = _stage_ms.setdefault(stage, deque(maxlen=LATENCY_WINDOW))
        window.append(duration_ms)


@contextmanager
def timed(stage: str):
    """Record how long the wrapped block took, whether or not it raised."""
    started = time.monotonic()
    try:
        yield
    finally:
        record_latency(stage, (time.monotonic() - started) * 1000)


def record_error(stage: str, error_type: str, message: str, job_id: str = ""):
    with _lock:
        _failures.append({
            "at": time.time(),
            "job_id": job_id,
            "stage": stage,
            "error_type": error_type,
            "message": message[:300],
        })


def reset():
    with _lock:
        _counters.clear()
        _gauges.clear()
        _stage_ms.clear()
        _failures.clear()


def _summarize(samples) -> dict:
    ordered = sorted(samples)
    n = len(ordered)
    return {
        "p50": ordered[n // 2],
        "p95": ordered[min(n - 1, int(n * 0.95))],
        "avg": sum(ordered) / n,
        "count": n,
    }


def get_snapshot() -> dict:
    now = time.time()
    with _lock:
        finished = _counters["pipeline.succeeded"] + _counters["pipeline.failed"]
        return {
            "timestamp": now,
            "counters": {k: v for k, v in _counters.items() if v},
            "gauges": dict(_gauges),
            "latency": {
                stage: _summarize(window) for stage, window in _stage_ms.items() if window
            },
            "success_rate": (
                round(_counters["pipeline.succeeded"] / finished, 4) if finished else None
            ),
            "recent_errors": list(_failures)[-10:],
            "uptime_seconds": now - _gauges.get("start_time", now),
        }
