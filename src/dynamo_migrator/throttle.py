"""Fixed-delay throttling between DynamoDB operations."""

import asyncio


async def sleep_ms(ms: float) -> None:
    """Suspend the current task for `ms` milliseconds.

    A zero delay still yields to the event loop once.
    """
    await asyncio.sleep(max(ms, 0) / 1000)
