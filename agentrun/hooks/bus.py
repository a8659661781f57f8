"""Ordered observer bus with per-observer failure isolation."""

from __future__ import annotations

import inspect
import logging
from typing import Any, Iterator

from agentrun.errors import RunCancelled

logger = logging.getLogger(__name__)

HOOK_POINTS = (
    "before_run",
    "after_run",
    "before_provider_call",
    "after_provider_call",
    "before_tool_call",
    "after_tool_call",
    "on_stream_chunk",
)


class Hook:
    """
    No-op base for observers.

    Subclasses override any subset of the extension points; plain objects
    with matching method names work as well.  Methods may be sync or async.
    Raising ``RunCancelled`` from a ``before_*`` method aborts the run.
    """

    @property
    def name(self) -> str:
        return type(self).__name__

    def before_run(self, ctx, user_input: str) -> None:
        pass

    def after_run(self, ctx, outcome) -> None:
        pass

    def before_provider_call(self, ctx, messages) -> None:
        pass

    def after_provider_call(self, ctx, response) -> None:
        pass

    def before_tool_call(self, ctx, call) -> None:
        pass

    def after_tool_call(self, ctx, call, result, error) -> None:
        pass

    def on_stream_chunk(self, ctx, chunk) -> None:
        pass


def hook_name(hook: Any) -> str:
    return getattr(hook, "name", None) or type(hook).__name__


class HookBus:
    def __init__(self, hooks: list[Any] | None = None) -> None:
        self._hooks: list[Any] = []
        for h in hooks or []:
            self.add(h)

    def add(self, hook: Any) -> None:
        self._hooks.append(hook)

    def remove(self, name: str) -> bool:
        for i, h in enumerate(self._hooks):
            if hook_name(h) == name:
                del self._hooks[i]
                return True
        return False

    def get(self, name: str) -> Any | None:
        for h in self._hooks:
            if hook_name(h) == name:
                return h
        return None

    def __iter__(self) -> Iterator[Any]:
        return iter(list(self._hooks))

    def __len__(self) -> int:
        return len(self._hooks)

    async def emit(self, point: str, *args: Any, allow_cancel: bool = False) -> None:
        """
        Invoke *point* on every observer, in registration order.

        A failing observer is logged and skipped.  ``RunCancelled`` is
        re-raised (stopping the remaining observers) only when
        *allow_cancel* is set; elsewhere it is treated like any failure.
        """
        if point not in HOOK_POINTS:
            raise ValueError(f"Unknown hook point: {point}")
        for hook in list(self._hooks):
            method = getattr(hook, point, None)
            if method is None:
                continue
            try:
                result = method(*args)
                if inspect.isawaitable(result):
                    await result
            except RunCancelled as e:
                if allow_cancel:
                    logger.info("Hook %s cancelled the run at %s: %s", hook_name(hook), point, e)
                    raise
                logger.warning(
                    "Hook %s raised RunCancelled from %s, which cannot cancel; ignored",
                    hook_name(hook),
                    point,
                )
            except Exception:
                logger.exception("Hook %s failed at %s", hook_name(hook), point)
