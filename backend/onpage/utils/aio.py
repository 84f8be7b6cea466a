"""Asyncio helpers."""

import asyncio
from typing import Any, Awaitable, List


async def gather_cancelling(*awaitables: Awaitable[Any]) -> List[Any]:
    """
    Run awaitables concurrently and return their results in order.

    WHAT: Like asyncio.gather, but when one fails the others are cancelled
          before the exception propagates.

    WHY: A failed report must not leave sibling queries running against the
         datastores.
    """
    tasks = [asyncio.ensure_future(a) for a in awaitables]
    try:
        return list(await asyncio.gather(*tasks))
    except BaseException:
        for task in tasks:
            if not task.done():
                task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise
