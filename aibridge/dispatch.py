"""Concurrency-bounded dispatch of provider calls.

Every provider call runs inside a dispatch slot taken from an
:class:`asyncio.Semaphore`, whose waiters are admitted in FIFO order.
Non-streaming calls are retried on transport failures; a response body that
carries an error aborts immediately. Streaming calls run exactly once because a
partially consumed stream cannot be replayed.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable, Optional

from aibridge.errors import ProviderContentError, ProviderExhausted

logger = logging.getLogger(__name__)


@dataclass
class AttemptOutcome:
    """Result of a single provider attempt.

    Exactly one of ``value``, ``error`` and ``content_error`` is meaningful.
    ``raw`` keeps the raw provider response for diagnostics.
    """

    value: Any = None
    error: Optional[BaseException] = None
    raw: Any = None
    content_error: Any = None

    @property
    def ok(self) -> bool:
        return self.value is not None and self.error is None and self.content_error is None


@dataclass
class DispatchTask:
    provider: str
    call: Callable[[], Awaitable[Any]]
    streaming: bool = False


class DispatchQueue:
    def __init__(self, limit: int = 4, latency: float = 0.0, max_attempts: int = 2) -> None:
        if limit < 1:
            raise ValueError(f"Dispatch limit must be at least 1 (received {limit}).")
        if max_attempts < 1:
            raise ValueError(f"max_attempts must be at least 1 (received {max_attempts}).")
        self.limit = limit
        self.latency = latency
        self.max_attempts = max_attempts
        self._slots = asyncio.Semaphore(limit)
        self._in_flight = 0

    @property
    def in_flight(self) -> int:
        return self._in_flight

    async def submit(self, task: DispatchTask) -> Any:
        """Run ``task`` once a slot frees up and return its result."""
        async with self._slots:
            self._in_flight += 1
            try:
                if task.streaming:
                    result = await task.call()
                else:
                    result = await self._run_with_retries(task)
                await self._pace()
                return result
            finally:
                self._in_flight -= 1

    async def stream(self, task: DispatchTask) -> AsyncIterator[Any]:
        """Hold a slot while iterating the async iterator returned by ``task.call``."""
        async with self._slots:
            self._in_flight += 1
            try:
                async for item in task.call():
                    yield item
                await self._pace()
            finally:
                self._in_flight -= 1

    async def _pace(self) -> None:
        if self.latency > 0:
            await asyncio.sleep(self.latency)

    async def _run_with_retries(self, task: DispatchTask) -> Any:
        last_error: Optional[BaseException] = None
        last_response: Any = None

        for attempt in range(self.max_attempts):
            outcome = await self._attempt(task)
            if outcome.content_error is not None:
                logger.warning("%s returned an error payload: %s", task.provider, outcome.content_error)
                raise ProviderContentError(task.provider, outcome.content_error, outcome.raw)
            if outcome.ok:
                return outcome.value

            if outcome.error is not None:
                last_error = outcome.error
            if outcome.raw is not None:
                last_response = outcome.raw
            logger.warning(
                "%s call failed (attempt %d/%d): %s",
                task.provider,
                attempt + 1,
                self.max_attempts,
                outcome.error if outcome.error is not None else f"malformed response {outcome.raw!r}",
            )

        logger.error(
            "Unable to get a valid %s response. Last error: %r. Last response: %r",
            task.provider,
            last_error,
            last_response,
        )
        raise ProviderExhausted(task.provider, self.max_attempts, last_error, last_response)

    @staticmethod
    async def _attempt(task: DispatchTask) -> AttemptOutcome:
        try:
            outcome = await task.call()
        except Exception as exc:
            return AttemptOutcome(error=exc)
        if isinstance(outcome, AttemptOutcome):
            return outcome
        return AttemptOutcome(value=outcome)
