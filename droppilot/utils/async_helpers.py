"""Async programming utilities and helpers."""

from __future__ import annotations

import asyncio
import logging
from collections import abc
from functools import wraps
from typing import Any, Generic, Hashable, Literal, ParamSpec, TypeVar

from droppilot.exceptions import ExitRequest


_T = TypeVar("_T")  # type
_P = ParamSpec("_P")  # params
_D = TypeVar("_D")  # default

logger = logging.getLogger("DropPilot")


def task_wrapper(
    afunc: abc.Callable[_P, abc.Coroutine[Any, Any, _T]] | None = None, *, critical: bool = False
):
    """
    Decorator for background tasks.

    Args:
        afunc: The async function to wrap
        critical: If True, a failure closes the owning DropFarmer instance

    ExitRequest and cancellation pass through silently, anything else is logged
    and re-raised into the wrapping task.
    """

    def decorator(
        afunc: abc.Callable[_P, abc.Coroutine[Any, Any, _T]],
    ) -> abc.Callable[_P, abc.Coroutine[Any, Any, _T | None]]:
        @wraps(afunc)
        async def wrapper(*args: _P.args, **kwargs: _P.kwargs) -> _T | None:
            try:
                return await afunc(*args, **kwargs)
            except ExitRequest:
                return None
            except Exception:
                logger.exception(f"Exception in {afunc.__name__} task")
                if critical:
                    from droppilot.core.farmer import DropFarmer  # cyclic import

                    farmer = args and args[0] or None  # extract from 'self' arg
                    if not isinstance(farmer, DropFarmer) and farmer is not None:
                        farmer = getattr(farmer, "_farmer", None)  # extract from '_farmer' attr
                    if isinstance(farmer, DropFarmer):
                        farmer.close()
                raise  # raise up to the wrapping task

        return wrapper

    if afunc is None:
        return decorator
    return decorator(afunc)


class ScheduledTask(Generic[_T]):
    """
    Holds at most one background task, keyed by the condition that governs it.

    Starting the task under a new key cancels the previous one first.
    Call `cancel` once the governing condition stops holding.

    Usage:
        tick = ScheduledTask("tick")
        tick.ensure(drop_id, lambda: self._tick_loop())
        ...
        tick.cancel()
    """

    def __init__(self, name: str):
        self.name: str = name
        self.key: Hashable | None = None
        self._task: asyncio.Task[_T] | None = None

    def __repr__(self) -> str:
        return f"ScheduledTask({self.name!r}, key={self.key!r}, active={self.active})"

    @property
    def active(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def task(self) -> asyncio.Task[_T] | None:
        return self._task

    def start(self, key: Hashable, coro: abc.Coroutine[Any, Any, _T]) -> asyncio.Task[_T]:
        """Cancel whatever runs now and start `coro` under `key`."""
        self.cancel()
        self.key = key
        self._task = asyncio.create_task(coro, name=f"{self.name}:{key}")
        return self._task

    def ensure(
        self, key: Hashable, factory: abc.Callable[[], abc.Coroutine[Any, Any, _T]]
    ) -> asyncio.Task[_T]:
        """
        Start the task unless it's already running under the same key.

        A factory is taken instead of a coroutine,
        so that nothing is left un-awaited when the task is kept.
        """
        if self.active and self.key == key:
            assert self._task is not None
            return self._task
        return self.start(key, factory())

    def cancel(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None
        self.key = None

    def release(self) -> None:
        """Forget the current task without cancelling it."""
        self._task = None
        self.key = None


class AwaitableValue(Generic[_T]):
    """
    A value that can be set, cleared and awaited by multiple consumers.
    """

    def __init__(self):
        self._value: _T
        self._event = asyncio.Event()

    def has_value(self) -> bool:
        return self._event.is_set()

    def wait(self) -> abc.Coroutine[Any, Any, Literal[True]]:
        """Return a coroutine that waits for the value to be set."""
        return self._event.wait()

    def get_with_default(self, default: _D) -> _T | _D:
        if self._event.is_set():
            return self._value
        return default

    async def get(self) -> _T:
        await self._event.wait()
        return self._value

    def set(self, value: _T) -> None:
        self._value = value
        self._event.set()

    def clear(self) -> None:
        self._event.clear()
