"""Error hierarchy for the coherence engine.

Only ``OracleExhaustedError`` and ``FatalOracleError`` end a run.
Everything else is recovered close to where it is raised and surfaces
only as a progress message or a log line.
"""

from __future__ import annotations


class CoherenceError(Exception):
    """Base class for every error raised by the engine."""


# ── Oracle failures ─────────────────────────────────────────────────

class OracleError(CoherenceError):
    """A call to the text-generation oracle failed."""


class OracleTimeoutError(OracleError, TimeoutError):
    """No response arrived within the configured timeout."""


class TransientOracleError(OracleError):
    """Connection reset, DNS failure, rate limiting or a 5xx status."""


class FatalOracleError(OracleError):
    """The oracle rejected the request outright (auth, quota, bad request)."""


class OracleExhaustedError(OracleError):
    """Retryable failures persisted past the attempt ceiling."""

    def __init__(self, attempts: int, last_error: BaseException | None) -> None:
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"Oracle call failed after {attempts} attempts: {last_error}"
        )


# ── Structured-output failures ──────────────────────────────────────

class ParseError(CoherenceError, ValueError):
    """Oracle text did not have the expected structured shape."""


class SkeletonSynthesisError(ParseError):
    """The two-tier synthesis call returned an unusable skeleton."""


# ── Persistence ─────────────────────────────────────────────────────

class RunStoreError(CoherenceError):
    """The persistence collaborator refused a read or write."""


class RunNotFoundError(RunStoreError, KeyError):
    """No run (or skeleton) exists under the requested identifier."""


# ── Input ───────────────────────────────────────────────────────────

class EmptyDocumentError(CoherenceError, ValueError):
    """The input text contains no words."""
