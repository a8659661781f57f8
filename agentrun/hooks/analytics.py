"""Execution analytics observer: one record per run plus aggregate counters."""

from __future__ import annotations

import logging
from collections import Counter, deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from agentrun.hooks.bus import Hook
from agentrun.llm.types import Usage

logger = logging.getLogger(__name__)


@dataclass
class ExecutionStats:
    run_id: str
    provider: str
    model: str | None
    started_at: datetime
    status: str = "running"
    duration: float = 0.0
    provider_calls: int = 0
    tool_calls: int = 0
    tool_errors: int = 0
    usage: Usage = field(default_factory=Usage)
    error_code: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "provider": self.provider,
            "model": self.model,
            "started_at": self.started_at.isoformat(),
            "status": self.status,
            "duration": self.duration,
            "provider_calls": self.provider_calls,
            "tool_calls": self.tool_calls,
            "tool_errors": self.tool_errors,
            "total_tokens": self.usage.total_tokens,
            "error_code": self.error_code,
        }


class ExecutionAnalyticsHook(Hook):
    """
    Collects an ``ExecutionStats`` record per run.

    Parameters
    ----------
    max_entries:
        Number of finished runs kept; older records are dropped first.
    slow_threshold:
        Runs taking longer than this many seconds are logged as warnings.
    """

    def __init__(self, max_entries: int = 1000, slow_threshold: float = 5.0) -> None:
        self.max_entries = max_entries
        self.slow_threshold = slow_threshold
        self._active: dict[str, ExecutionStats] = {}
        self._history: deque[ExecutionStats] = deque(maxlen=max_entries)
        self._tool_usage: Counter[str] = Counter()
        self._error_counts: Counter[str] = Counter()

    @property
    def history(self) -> list[ExecutionStats]:
        return list(self._history)

    def before_run(self, ctx, user_input):
        self._active[ctx.run_id] = ExecutionStats(
            run_id=ctx.run_id,
            provider=ctx.provider_name,
            model=ctx.model,
            started_at=datetime.now(timezone.utc),
        )

    def after_provider_call(self, ctx, response):
        rec = self._active.get(ctx.run_id)
        if rec is None:
            return
        rec.provider_calls += 1
        if response.usage is not None:
            rec.usage = rec.usage + response.usage

    def after_tool_call(self, ctx, call, result, error):
        rec = self._active.get(ctx.run_id)
        self._tool_usage[call.name] += 1
        if error is not None:
            self._error_counts[error.code] += 1
        if rec is None:
            return
        rec.tool_calls += 1
        if error is not None:
            rec.tool_errors += 1

    def after_run(self, ctx, outcome):
        rec = self._active.pop(ctx.run_id, None)
        if rec is None:
            return
        rec.status = outcome.status.value
        rec.duration = outcome.duration
        if outcome.error is not None:
            rec.error_code = getattr(outcome.error, "code", type(outcome.error).__name__)
            self._error_counts[rec.error_code] += 1
        self._history.append(rec)
        if rec.duration > self.slow_threshold:
            logger.warning(
                "Slow run %s: %.2fs (threshold %.2fs)",
                rec.run_id[:8],
                rec.duration,
                self.slow_threshold,
            )

    def get_stats(self) -> dict[str, Any]:
        runs = list(self._history)
        total = len(runs)
        succeeded = sum(1 for r in runs if r.status == "done")
        return {
            "total_runs": total,
            "succeeded": succeeded,
            "failed": sum(1 for r in runs if r.status == "failed"),
            "cancelled": sum(1 for r in runs if r.status == "cancelled"),
            "success_rate": succeeded / total if total else 0.0,
            "average_duration": sum(r.duration for r in runs) / total if total else 0.0,
            "provider_calls": sum(r.provider_calls for r in runs),
            "total_tokens": sum(r.usage.total_tokens for r in runs),
            "tool_usage": dict(self._tool_usage),
            "error_counts": dict(self._error_counts),
        }

    def clear(self) -> None:
        self._active.clear()
        self._history.clear()
        self._tool_usage.clear()
        self._error_counts.clear()
