"""
Runs blocking service calls off the event loop with a timeout.
"""
import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor
from functools import partial
from typing import Any, Callable

from venturematch.middleware.error_handling import OperationTimeoutException

logger = logging.getLogger(__name__)

# Thread pool for running sync service calls with timeout
_executor = ThreadPoolExecutor(max_workers=4)


async def run_with_timeout(func: Callable[..., Any], *args, timeout: float, operation: str, **kwargs) -> Any:
    loop = asyncio.get_event_loop()
    try:
        return await asyncio.wait_for(
            loop.run_in_executor(_executor, partial(func, *args, **kwargs)),
            timeout=timeout
        )
    except asyncio.TimeoutError:
        logger.warning(f"{operation} exceeded {timeout}s")
        raise OperationTimeoutException(operation, timeout)
