import asyncio
import logging
from typing import Awaitable, Callable, Optional, Tuple, Type, TypeVar

logger = logging.getLogger("uvicorn.error")

T = TypeVar("T")


class RetryPolicy:
    """Fixed-delay retry for a single async operation."""

    def __init__(
        self,
        max_attempts: int = 3,
        delay_s: float = 5.0,
        retry_on: Tuple[Type[BaseException], ...] = (Exception,),
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.max_attempts = max_attempts
        self.delay_s = delay_s
        self.retry_on = retry_on
        self._sleep = sleep or asyncio.sleep

    async def run(self, operation: Callable[[], Awaitable[T]], *, label: str = "operation") -> T:
        last_exc: Optional[BaseException] = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                return await operation()
            except self.retry_on as exc:
                last_exc = exc
                if attempt >= self.max_attempts:
                    break
                logger.warning(
                    "%s failed (attempt %s/%s): %s; retrying in %ss",
                    label,
                    attempt,
                    self.max_attempts,
                    exc,
                    self.delay_s,
                )
                await self._sleep(self.delay_s)
        logger.error("%s failed after %s attempts: %s", label, self.max_attempts, last_exc)
        assert last_exc is not None
        raise last_exc
