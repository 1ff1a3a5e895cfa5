"""
Cooperative deadlines for request-scoped computations.
"""
import time
from typing import Optional

from venturematch.middleware.error_handling import OperationTimeoutException


class Deadline:
    """
    Tracks a caller-supplied timeout.

    Long loops call ``check()`` between units of work; it raises
    OperationTimeoutException once the budget is spent. A timeout of None
    never expires.
    """

    def __init__(self, timeout: Optional[float], operation: str, clock=time.monotonic):
        self.timeout = timeout
        self.operation = operation
        self._clock = clock
        self._expires_at = None if timeout is None else clock() + timeout

    @property
    def expired(self) -> bool:
        return self._expires_at is not None and self._clock() >= self._expires_at

    def check(self) -> None:
        if self.expired:
            raise OperationTimeoutException(self.operation, self.timeout)
