"""Bounded polling helper."""
import asyncio
from typing import Awaitable, Callable, Optional, TypeVar

from deployflow.exceptions import PollTimeoutError

T = TypeVar("T")


async def poll_until(
    check: Callable[[], Awaitable[Optional[T]]],
    *,
    timeout: float,
    interval: float,
    description: str = "condition",
) -> T:
    """Call ``check`` until it returns something other than None.

    Exceptions raised by ``check`` are fatal and propagate unchanged.

    Args:
        check: Async callable returning a result, or None to keep waiting
        timeout: Maximum seconds to wait
        interval: Seconds to sleep between checks
        description: What is being waited for, used in the timeout message

    Returns:
        The first non-None result

    Raises:
        PollTimeoutError: If the deadline passes first
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout

    while True:
        result = await check()
        if result is not None:
            return result

        remaining = deadline - loop.time()
        if remaining <= 0:
            raise PollTimeoutError(description, timeout)
        await asyncio.sleep(min(interval, remaining))
