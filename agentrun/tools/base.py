from __future__ import annotations

import asyncio
import functools
import inspect
from abc import ABC, abstractmethod
from typing import Any, Callable


def normalize_schema(schema: dict) -> dict:
    """Declared schema with ``type`` defaulting to ``"object"``."""
    if schema and "type" in schema:
        return schema
    return {"type": "object", **(schema or {})}


class Tool(ABC):
    @property
    @abstractmethod
    def name(self) -> str: ...

    @property
    @abstractmethod
    def description(self) -> str: ...

    @property
    @abstractmethod
    def parameters(self) -> dict: ...

    @abstractmethod
    async def execute(self, **kwargs) -> Any: ...

    def to_schema(self) -> dict:
        return {
            "name": self.name,
            "description": self.description,
            "parameters": normalize_schema(self.parameters),
        }


class FunctionTool(Tool):
    """Wraps a plain callable (sync or async) as a tool."""

    def __init__(
        self,
        name: str,
        description: str,
        parameters: dict,
        handler: Callable[..., Any],
    ) -> None:
        self._name = name
        self._description = description
        self._parameters = parameters
        self._handler = handler

    @property
    def name(self) -> str:
        return self._name

    @property
    def description(self) -> str:
        return self._description

    @property
    def parameters(self) -> dict:
        return self._parameters

    async def execute(self, **kwargs) -> Any:
        if inspect.iscoroutinefunction(self._handler):
            return await self._handler(**kwargs)
        # Sync handlers run in a worker thread so the event loop keeps going.
        result = await asyncio.to_thread(functools.partial(self._handler, **kwargs))
        if inspect.isawaitable(result):
            result = await result
        return result


def function_tool(
    parameters: dict | None = None,
    *,
    name: str | None = None,
    description: str | None = None,
) -> Callable[[Callable[..., Any]], FunctionTool]:
    """
    Decorator turning a function into a ``FunctionTool``.

    Name and description default to the function's ``__name__`` and the
    first paragraph of its docstring.
    """

    def wrap(fn: Callable[..., Any]) -> FunctionTool:
        doc = inspect.getdoc(fn) or ""
        return FunctionTool(
            name=name or fn.__name__,
            description=description if description is not None else doc.split("\n\n")[0],
            parameters=parameters or {},
            handler=fn,
        )

    return wrap
