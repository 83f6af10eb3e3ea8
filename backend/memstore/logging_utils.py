"""Per-call query logging for adapter coroutines."""

from __future__ import annotations

import functools
import logging
import time
from contextvars import ContextVar
from typing import Any, Awaitable, Callable, Optional, TypeVar

logger = logging.getLogger("memstore.queries")

_T = TypeVar("_T")

# Name of the outermost logged call running in the current context.
_active_call: ContextVar[Optional[str]] = ContextVar("memstore_active_call", default=None)


def current_call() -> Optional[str]:
    return _active_call.get()


def logged_call(
    operation: Optional[str] = None,
) -> Callable[[Callable[..., Awaitable[_T]]], Callable[..., Awaitable[_T]]]:
    """
    Log name, duration and failure of an async adapter call.

    Only the outermost decorated call in a context is logged; decorated calls
    made while it runs go straight through.
    """

    def decorator(fn: Callable[..., Awaitable[_T]]) -> Callable[..., Awaitable[_T]]:
        name = operation or fn.__qualname__

        @functools.wraps(fn)
        async def wrapper(*args: Any, **kwargs: Any) -> _T:
            if _active_call.get() is not None:
                return await fn(*args, **kwargs)
            token = _active_call.set(name)
            started = time.monotonic()
            try:
                result = await fn(*args, **kwargs)
            except Exception as exc:
                logger.warning(
                    "%s failed after %.1fms: %s",
                    name,
                    (time.monotonic() - started) * 1000,
                    exc,
                )
                raise
            finally:
                _active_call.reset(token)
            logger.debug("%s took %.1fms", name, (time.monotonic() - started) * 1000)
            return result

        return wrapper

    return decorator
