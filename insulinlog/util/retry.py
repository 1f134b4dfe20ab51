# insulinlog/util/retry.py
import asyncio
import logging
from typing import Any, Awaitable, Callable, Sequence

logger = logging.getLogger("insulinlog.retry")

# Seconds to wait before the 2nd, 3rd and 4th attempt
BACKOFFS = (1, 3, 10)


async def with_retry(
    func: Callable[..., Awaitable[Any]], *args, backoffs: Sequence[float] = BACKOFFS, **kwargs
):
    """Await func(*args, **kwargs), retrying on any exception; the last one is re-raised."""
    attempts = len(backoffs) + 1
    for attempt in range(attempts):
        try:
            return await func(*args, **kwargs)
        except Exception as e:  # aiogram/HTTP errors
            if attempt == attempts - 1:
                raise
            delay = backoffs[attempt]
            logger.warning(
                "retry %s attempt=%d/%d delay=%ss err=%s",
                getattr(func, "__name__", func),
                attempt + 1,
                attempts,
                delay,
                e,
            )
            await asyncio.sleep(delay)
