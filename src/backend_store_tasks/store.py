"""
MIT License
Copyright (c) 2026 backend-store-tasks contributors
See LICENSE file for full license text.

Protocols describing the host dispatch framework the plugin attaches to.

The plugin needs two things from a store: a middleware hook (``use``) that
wraps every dispatch, and the ``dispatch`` entry point itself, which workers
re-enter to run delivered jobs. Handlers are registered by the application
(typically ``store.define(method, handler)``); the plugin never does that.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from .engine.types import Job

# Continuation passed to middlewares; calls the rest of the chain.
Next = Callable[[Any], Awaitable[Any]]


class TaskCreator(Protocol):
    """``method_context.create_task`` bound to one in-flight dispatch."""

    def __call__(
        self,
        method: str,
        payload: Any = None,
        *,
        job_options: dict[str, Any] | None = None,
    ) -> Awaitable[Job]: ...


class MethodContext(Protocol):
    """Per-dispatch state visible to handlers."""

    context: Any
    cid: str | None


class MiddlewareContext(Protocol):
    """Per-dispatch state visible to middlewares."""

    method_context: Any
    context: Any
    cid: str | None


Middleware = Callable[[Any, MiddlewareContext, Next], Awaitable[Any]]


@runtime_checkable
class Store(Protocol):
    """Host framework surface consumed by the plugin."""

    def use(self, middleware: Middleware) -> Any:
        """Register a middleware run before the target handler."""
        ...

    async def dispatch(self, method: str, payload: Any = None, context: Any = None) -> Any:
        """Run ``method`` through the middleware chain and its handler."""
        ...
