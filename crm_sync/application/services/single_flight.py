"""Single-flight: at most one in-flight call per key; concurrent callers share it."""

import asyncio
from collections.abc import Awaitable, Callable, Hashable
from typing import Any


class SingleFlight:
    """Collapse concurrent calls for the same key into one execution.

    The first caller runs ``fn``; callers arriving while it is in flight
    await the same future and receive its result or its exception. If the
    leader itself is cancelled, one waiter re-runs ``fn`` for the rest. The key
    is released as soon as the call settles, so a later call runs again.
    """

    def __init__(self) -> None:
        self._calls: dict[Hashable, asyncio.Future[Any]] = {}

    def in_flight(self, key: Hashable) -> bool:
        return key in self._calls

    async def do[T](self, key: Hashable, fn: Callable[[], Awaitable[T]]) -> T:
        while (existing := self._calls.get(key)) is not None:
            try:
                # shield: a cancelled waiter must not cancel the leader's call
                return await asyncio.shield(existing)
            except asyncio.CancelledError:
                if not existing.cancelled() or _cancelling():
                    raise
                # The leader was cancelled, not us: take over the call.

        future: asyncio.Future[T] = asyncio.get_running_loop().create_future()
        self._calls[key] = future
        try:
            result = await fn()
        except asyncio.CancelledError:
            future.cancel()
            raise
        except BaseException as exc:
            future.set_exception(exc)
            # mark retrieved; waiters (if any) still receive it
            future.exception()
            raise
        else:
            future.set_result(result)
            return result
        finally:
            self._calls.pop(key, None)


def _cancelling() -> bool:
    task = asyncio.current_task()
    return task is not None and task.cancelling() > 0
