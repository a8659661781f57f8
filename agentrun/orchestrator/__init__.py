"""Execution orchestrator -- the request / response / tool loop."""

from agentrun.orchestrator.context import (
    CancellationToken,
    ExecutionContext,
    RunOutcome,
    RunState,
)
from agentrun.orchestrator.core import Orchestrator, RunStats

__all__ = [
    "CancellationToken",
    "ExecutionContext",
    "Orchestrator",
    "RunOutcome",
    "RunState",
    "RunStats",
]
