from __future__ import annotations

import inspect
import uuid
from dataclasses import dataclass
from typing import Any

import pytest


@dataclass
class FakeMethodContext:
    method: str
    context: Any
    cid: str


@dataclass
class FakeMiddlewareContext:
    method: str
    method_context: FakeMethodContext
    context: Any
    cid: str


class FakeStore:
    """Minimal dispatch store: define/use/dispatch with a middleware chain."""

    def __init__(self) -> None:
        self._methods: dict[str, Any] = {}
        self._middlewares: list[Any] = []

    def define(self, method: str, handler: Any) -> None:
        self._methods[method] = handler

    def use(self, middleware: Any) -> None:
        self._middlewares.append(middleware)

    async def dispatch(
        self,
        method: str,
        payload: Any = None,
        context: Any = None,
        *,
        cid: str | None = None,
    ) -> Any:
        handler = self._methods.get(method)
        if handler is None:
            raise LookupError(f"Method '{method}' is not defined")
        cid = cid or uuid.uuid4().hex
        method_context = FakeMethodContext(method=method, context=context, cid=cid)
        middleware_context = FakeMiddlewareContext(
            method=method,
            method_context=method_context,
            context=context,
            cid=cid,
        )

        async def call(index: int, current: Any) -> Any:
            if index == len(self._middlewares):
                result = handler(current, method_context)
                if inspect.isawaitable(result):
                    result = await result
                return result
            return await self._middlewares[index](
                current,
                middleware_context,
                lambda p: call(index + 1, p),
            )

        return await call(0, payload)


class CallRecorder:
    """Store handler that records ``(payload, method_context)`` per call."""

    def __init__(self, error: Exception | None = None) -> None:
        self.calls: list[tuple[Any, Any]] = []
        self._error = error

    async def __call__(self, payload: Any, method_context: Any) -> None:
        self.calls.append((payload, method_context))
        if self._error is not None:
            raise self._error


@pytest.fixture
def store() -> FakeStore:
    return FakeStore()


@pytest.fixture
def worker_store() -> FakeStore:
    return FakeStore()


@pytest.fixture
def recorder_factory():
    return CallRecorder
