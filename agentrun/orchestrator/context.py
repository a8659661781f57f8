"""Per-run state shared between the orchestrator and hook observers."""

from __future__ import annotations

import asyncio
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

from agentrun.errors import RunCancelled
from agentrun.llm.types import Message, Usage

if TYPE_CHECKING:
    from agentrun.hooks.bus import HookBus
    from agentrun.session.history import ConversationHistory
    from agentrun.tools.registry import ToolRegistry


class RunState(str, Enum):
    IDLE = "idle"
    AWAITING_MODEL = "awaiting_model"
    TOOLS_PENDING = "tools_pending"
    DONE = "done"
    FAILED = "failed"
    CANCELLED = "cancelled"


class CancellationToken:
    """
    Cooperative cancellation signal for one or more runs.

    The orchestrator checks it before every provider call, before every
    tool call and before every history append.  Work already in flight is
    not interrupted, but its result is dropped.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    def cancel(self, reason: str = "Run cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise RunCancelled(self.reason or "Run cancelled")


@dataclass
class ExecutionContext:
    """Transient state of one run; discarded when the run ends."""

    provider_name: str
    model: str | None
    history: ConversationHistory
    tools: ToolRegistry
    hooks: HookBus
    cancel_token: CancellationToken
    system_messages: tuple[Message, ...] = ()
    run_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    streaming: bool = False
    iteration: int = 0
    started_at: float = field(default_factory=time.monotonic)
    tools_executed: list[str] = field(default_factory=list)
    usage: Usage = field(default_factory=Usage)
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def elapsed(self) -> float:
        return time.monotonic() - self.started_at


@dataclass(frozen=True)
class RunOutcome:
    """Terminal result of a run, handed to ``after_run`` observers."""

    status: RunState
    message: Message | None = None
    error: BaseException | None = None
    iterations: int = 0
    duration: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.status is RunState.DONE

    @property
    def cancelled(self) -> bool:
        return self.status is RunState.CANCELLED
