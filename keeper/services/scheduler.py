"""Cycle scheduler with bounded retry and single-shot mode."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable

import aiohttp

from ..errors import ConfigurationError, RetriesExhaustedError, TransportError

logger = logging.getLogger(__name__)

RETRYABLE_ERRORS: tuple[type[BaseException], ...] = (
    TransportError,
    aiohttp.ClientError,
    asyncio.TimeoutError,
)
FATAL_ERRORS: tuple[type[BaseException], ...] = (ConfigurationError,)


class CycleOutcome(Enum):
    SUCCESS = "success"
    RETRYABLE = "retryable"
    FATAL = "fatal"


@dataclass(frozen=True)
class AttemptResult:
    outcome: CycleOutcome
    error: BaseException | None = None


class RetryingScheduler:
    """Runs ``cycle`` every ``polling_interval`` seconds, strictly sequentially.

    Each cycle gets up to ``error_retries + 1`` attempts separated by
    ``error_retries_timeout`` seconds. Only transient transport errors are
    retried; configuration errors end the run at once and anything else is a
    defect that propagates untouched. With ``polling_interval == 0`` exactly one
    cycle runs. ``on_finish`` is awaited whenever ``run`` returns or raises.
    """

    def __init__(
        self,
        cycle: Callable[[], Awaitable[None]],
        polling_interval: float,
        error_retries: int,
        error_retries_timeout: float,
        on_finish: Callable[[], Awaitable[None]] | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if polling_interval < 0:
            raise ConfigurationError("polling_interval must be >= 0")
        if error_retries < 0:
            raise ConfigurationError("error_retries must be >= 0")
        if error_retries_timeout < 0:
            raise ConfigurationError("error_retries_timeout must be >= 0")
        self._cycle = cycle
        self.polling_interval = polling_interval
        self.error_retries = error_retries
        self.error_retries_timeout = error_retries_timeout
        self._on_finish = on_finish
        self._sleep = sleep
        self.cycles_completed = 0

    @property
    def single_shot(self) -> bool:
        return self.polling_interval == 0

    async def _attempt(self) -> AttemptResult:
        try:
            await self._cycle()
        except RETRYABLE_ERRORS as e:
            return AttemptResult(CycleOutcome.RETRYABLE, e)
        except FATAL_ERRORS as e:
            return AttemptResult(CycleOutcome.FATAL, e)
        return AttemptResult(CycleOutcome.SUCCESS)

    async def run_cycle_with_retry(self) -> int:
        """Run one cycle; return the number of attempts it took."""
        max_attempts = self.error_retries + 1
        last_error: BaseException | None = None

        for attempt in range(1, max_attempts + 1):
            result = await self._attempt()
            if result.outcome is CycleOutcome.SUCCESS:
                if attempt > 1:
                    logger.info("Cycle succeeded on attempt %d/%d", attempt, max_attempts)
                return attempt
            assert result.error is not None
            if result.outcome is CycleOutcome.FATAL:
                logger.error("Fatal error in cycle: %s", result.error)
                raise result.error

            last_error = result.error
            logger.warning(
                "Cycle attempt %d/%d failed: %s", attempt, max_attempts, result.error
            )
            if attempt < max_attempts:
                await self._sleep(self.error_retries_timeout)

        assert last_error is not None
        raise RetriesExhaustedError(max_attempts, last_error)

    async def run(self) -> None:
        if self.single_shot:
            logger.info("Running a single cycle")
        else:
            logger.info("Starting keeper loop (polling every %ss)", self.polling_interval)

        try:
            while True:
                await self.run_cycle_with_retry()
                self.cycles_completed += 1
                logger.info("Cycle %d complete", self.cycles_completed)
                if self.single_shot:
                    return
                await self._sleep(self.polling_interval)
        finally:
            if self._on_finish is not None:
                await self._on_finish()
