"""
Request-scoped tracing for heatmap computations.

Provides a thread-local TraceContext that records:
  - Per-stage timing (resolve_pois, build_indexes, score, ...)
  - Per-upstream-call timing (service, endpoint, elapsed_ms, status)
  - End-of-request summary (total_elapsed, upstream calls, outcome)

Usage:
    from hm_trace import TraceContext, get_trace, set_trace, clear_trace

    ctx = TraceContext(trace_id=request_id)
    set_trace(ctx)
    ...
    ctx.log_summary()
    clear_trace()

Worker threads do not inherit thread-locals; wrap callables submitted
to an executor with propagate_trace().
"""

import functools
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


# =============================================================================
# Records
# =============================================================================

@dataclass
class UpstreamCallRecord:
    """One call to a POI source (SQLite store, Overpass)."""
    service: str          # "poi_db" | "overpass"
    endpoint: str
    elapsed_ms: int
    status_code: int
    provider_status: str = ""   # "ok" | "rate_limit" | "timeout" | ...
    stage: str = ""


@dataclass
class StageRecord:
    stage_name: str
    elapsed_ms: int = 0
    upstream_calls: int = 0
    error_class: str = ""
    error_message: str = ""


# =============================================================================
# Trace context
# =============================================================================

@dataclass
class TraceContext:
    """Accumulates timing data for a single heatmap request."""
    trace_id: str
    request_start: float = field(default_factory=time.time)
    stages: List[StageRecord] = field(default_factory=list)
    calls: List[UpstreamCallRecord] = field(default_factory=list)
    _current_stage: str = ""
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def start_stage(self, name: str):
        self._current_stage = name

    def end_stage(self):
        self._current_stage = ""

    def record_stage(
        self,
        stage_name: str,
        start_ts: float,
        end_ts: float,
        error_class: str = "",
        error_message: str = "",
    ):
        with self._lock:
            calls_in_stage = sum(1 for c in self.calls if c.stage == stage_name)
            rec = StageRecord(
                stage_name=stage_name,
                elapsed_ms=int((end_ts - start_ts) * 1000),
                upstream_calls=calls_in_stage,
                error_class=error_class,
                error_message=error_message,
            )
            self.stages.append(rec)

        status = "ERR" if error_class else "OK"
        err_info = f" err={error_class}: {error_message}" if error_class else ""
        logger.info(
            "  [stage] trace=%s %s %s %dms calls=%d%s",
            self.trace_id,
            stage_name,
            status,
            rec.elapsed_ms,
            calls_in_stage,
            err_info,
        )

    def record_api_call(
        self,
        service: str,
        endpoint: str,
        elapsed_ms: int,
        status_code: int,
        provider_status: str = "",
    ):
        rec = UpstreamCallRecord(
            service=service,
            endpoint=endpoint,
            elapsed_ms=elapsed_ms,
            status_code=status_code,
            provider_status=provider_status,
            stage=self._current_stage,
        )
        with self._lock:
            self.calls.append(rec)
        logger.info(
            "  [upstream] trace=%s stage=%s svc=%s ep=%s ms=%d http=%d status=%s",
            self.trace_id,
            self._current_stage or "-",
            service,
            endpoint,
            elapsed_ms,
            status_code,
            provider_status,
        )

    def summary_dict(self) -> Dict[str, Any]:
        total_elapsed = int((time.time() - self.request_start) * 1000)
        with self._lock:
            errored = [s for s in self.stages if s.error_class]
            stages = list(self.stages)
            calls = list(self.calls)

        if errored:
            outcome = "partial" if len(errored) < len(stages) else "error"
        elif not stages:
            outcome = "empty"
        else:
            outcome = "success"

        return {
            "trace_id": self.trace_id,
            "total_elapsed_ms": total_elapsed,
            "upstream_calls": len(calls),
            "stages": [
                {
                    "stage": s.stage_name,
                    "elapsed_ms": s.elapsed_ms,
                    "upstream_calls": s.upstream_calls,
                    "error": (
                        f"{s.error_class}: {s.error_message}"
                        if s.error_class else None
                    ),
                }
                for s in stages
            ],
            "final_outcome": outcome,
        }

    def log_summary(self):
        s = self.summary_dict()
        logger.info(
            "[trace-summary] trace=%s total_ms=%d upstream_calls=%d stages=%d outcome=%s",
            s["trace_id"],
            s["total_elapsed_ms"],
            s["upstream_calls"],
            len(s["stages"]),
            s["final_outcome"],
        )


# =============================================================================
# Thread-local storage
# =============================================================================

_trace_local = threading.local()


def get_trace() -> Optional[TraceContext]:
    """Get the current request's trace context, or None."""
    return getattr(_trace_local, "ctx", None)


def set_trace(ctx: Optional[TraceContext]):
    _trace_local.ctx = ctx


def clear_trace():
    _trace_local.ctx = None


def propagate_trace(fn: Callable) -> Callable:
    """Bind the caller's trace to fn so it is visible inside a worker thread."""
    parent = get_trace()

    @functools.wraps(fn)
    def wrapper(*args, **kwargs):
        previous = get_trace()
        set_trace(parent)
        try:
            return fn(*args, **kwargs)
        finally:
            set_trace(previous)

    return wrapper


def timed_stage(stage_name: str, fn: Callable, *args, **kwargs):
    """Run fn with timing. Logs duration and re-raises on failure."""
    trace = get_trace()
    if trace:
        trace.start_stage(stage_name)
    t0 = time.time()
    try:
        result = fn(*args, **kwargs)
        t1 = time.time()
        if trace:
            trace.record_stage(stage_name, t0, t1)
        else:
            logger.debug("  [stage] %s OK (%.3fs)", stage_name, t1 - t0)
        return result
    except Exception as exc:
        t1 = time.time()
        if trace:
            trace.record_stage(
                stage_name, t0, t1,
                error_class=type(exc).__name__,
                error_message=str(exc)[:200],
            )
        else:
            logger.info(
                "  [stage] %s FAILED (%.3fs): %s", stage_name, t1 - t0, exc
            )
        raise
    finally:
        if trace:
            trace.end_stage()
