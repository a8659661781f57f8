from __future__ import annotations

import logging

from agentrun.hooks.bus import Hook

logger = logging.getLogger(__name__)


class LoggingHook(Hook):
    """Writes one log line per lifecycle event."""

    def __init__(self, level: int = logging.INFO, log: logging.Logger | None = None) -> None:
        self.level = level
        self._log = log or logger

    def before_run(self, ctx, user_input):
        self._log.log(
            self.level,
            "[%s] run started provider=%s model=%s input_chars=%d",
            ctx.run_id[:8],
            ctx.provider_name,
            ctx.model,
            len(user_input),
        )

    def after_run(self, ctx, outcome):
        if outcome.error is not None and not outcome.cancelled:
            self._log.log(
                self.level,
                "[%s] run %s after %d iteration(s) in %.2fs: %s",
                ctx.run_id[:8],
                outcome.status.value,
                outcome.iterations,
                outcome.duration,
                outcome.error,
            )
        else:
            self._log.log(
                self.level,
                "[%s] run %s after %d iteration(s) in %.2fs",
                ctx.run_id[:8],
                outcome.status.value,
                outcome.iterations,
                outcome.duration,
            )

    def before_provider_call(self, ctx, messages):
        self._log.log(
            self.level,
            "[%s] provider call #%d with %d message(s)",
            ctx.run_id[:8],
            ctx.iteration,
            len(messages),
        )

    def after_provider_call(self, ctx, response):
        calls = len(response.tool_calls or ())
        self._log.log(
            self.level,
            "[%s] provider responded: %d chars, %d tool call(s)",
            ctx.run_id[:8],
            len(response.content),
            calls,
        )

    def before_tool_call(self, ctx, call):
        self._log.log(self.level, "[%s] tool %s (%s)", ctx.run_id[:8], call.name, call.id)

    def after_tool_call(self, ctx, call, result, error):
        if error is not None:
            self._log.log(
                self.level, "[%s] tool %s failed: %s", ctx.run_id[:8], call.name, error.code
            )
        else:
            self._log.log(self.level, "[%s] tool %s ok", ctx.run_id[:8], call.name)
