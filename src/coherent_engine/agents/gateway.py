"""Oracle gateway: timeout and retry policy around one oracle call.

The oracle is any object with ``async complete(prompt) -> str``.  The
gateway bounds each attempt with a timeout, retries timeouts and
transient failures with capped exponential backoff, and lets fatal
failures through on the first occurrence.

Callers must tolerate duplicate calls: a retried prompt may already
have been served once by the provider.  Cancellation of the calling
task aborts the in-flight attempt and is never retried.
"""

from __future__ import annotations

import asyncio
import logging
import socket
from typing import Awaitable, Callable, Protocol

from coherent_engine.config import EngineConfig
from coherent_engine.errors import (
    FatalOracleError,
    OracleError,
    OracleExhaustedError,
    OracleTimeoutError,
    TransientOracleError,
)

logger = logging.getLogger(__name__)


class Oracle(Protocol):
    """External text-generation capability."""

    async def complete(self, prompt: str) -> str: ...


def classify_failure(exc: BaseException) -> OracleError:
    """Map an arbitrary exception to the oracle error taxonomy."""
    if isinstance(exc, OracleError):
        return exc
    if isinstance(exc, (TimeoutError, asyncio.TimeoutError)):
        return OracleTimeoutError(str(exc) or "oracle call timed out")
    if isinstance(exc, (ConnectionError, socket.gaierror, OSError)):
        return TransientOracleError(f"{type(exc).__name__}: {exc}")
    return FatalOracleError(f"{type(exc).__name__}: {exc}")


def backoff_delay(attempt: int, base_s: float, cap_s: float) -> float:
    """Delay before retry number *attempt* (1-based): ``base * 2**(attempt-1)``, capped."""
    return min(base_s * (2 ** (attempt - 1)), cap_s)


class OracleGateway:
    """Wraps an :class:`Oracle` with timeout and retry policy.

    Args:
        oracle: The underlying oracle.
        timeout_s: Upper bound on a single attempt.
        max_attempts: Total attempts for timeout/transient failures.
        backoff_base_s: First retry delay.
        backoff_cap_s: Maximum retry delay.
        sleep: Awaitable sleep, injectable for tests.
    """

    def __init__(
        self,
        oracle: Oracle,
        *,
        timeout_s: float = 120.0,
        max_attempts: int = 3,
        backoff_base_s: float = 1.0,
        backoff_cap_s: float = 10.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {max_attempts}")
        self._oracle = oracle
        self.timeout_s = timeout_s
        self.max_attempts = max_attempts
        self.backoff_base_s = backoff_base_s
        self.backoff_cap_s = backoff_cap_s
        self._sleep = sleep
        self.calls = 0  # attempts issued, across all prompts

    @classmethod
    def from_config(cls, oracle: Oracle, config: EngineConfig) -> OracleGateway:
        return cls(
            oracle,
            timeout_s=config.oracle_timeout_s,
            max_attempts=config.oracle_max_attempts,
            backoff_base_s=config.backoff_base_s,
            backoff_cap_s=config.backoff_cap_s,
        )

    async def call(self, prompt: str) -> str:
        """Send *prompt*; return the oracle's text.

        Raises:
            FatalOracleError: Immediately, without retry.
            OracleExhaustedError: When every attempt timed out or failed
                transiently.
        """
        last_error: OracleError | None = None
        for attempt in range(1, self.max_attempts + 1):
            self.calls += 1
            try:
                return await asyncio.wait_for(
                    self._oracle.complete(prompt), timeout=self.timeout_s,
                )
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # classified below; fatal ones re-raised
                error = classify_failure(exc)
                if isinstance(error, FatalOracleError):
                    logger.error("Oracle call failed fatally: %s", error)
                    if error is exc:
                        raise
                    raise error from exc
                last_error = error

            if attempt < self.max_attempts:
                delay = backoff_delay(attempt, self.backoff_base_s, self.backoff_cap_s)
                logger.warning(
                    "Oracle call failed (attempt %d/%d), retrying in %.1fs: %s",
                    attempt, self.max_attempts, delay, last_error,
                )
                await self._sleep(delay)

        raise OracleExhaustedError(self.max_attempts, last_error) from last_error
