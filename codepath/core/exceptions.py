"""
Exception hierarchy shared by the retrieval, planning and sync services.

Transient errors are retried with backoff, validation errors are surfaced
immediately, fatal errors abort the operation without touching stored state.
Conflicts (stale or duplicate sync deliveries) are not exceptions at all.
"""

import asyncio

import httpx


class CodepathError(Exception):
    """Base exception for all service errors."""

    pass


# ============================================
# Transient
# ============================================


class TransientProviderError(CodepathError):
    """External provider call failed in a way worth retrying."""

    pass


class ProviderTimeoutError(TransientProviderError):
    """Provider call exceeded its deadline and was cancelled."""

    pass


class ProviderUnavailableError(TransientProviderError):
    """Provider throttled the call or is temporarily down (429, 5xx, transport)."""

    pass


class ProviderRejectedError(CodepathError):
    """Provider refused the request (bad credentials, malformed reply). Not retried."""

    pass


# ============================================
# Validation
# ============================================


class ValidationFailure(CodepathError):
    """Input rejected outright. Never retried."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class InvalidInputError(ValidationFailure):
    pass


class NotFoundError(ValidationFailure):
    pass


class InvalidStateError(ValidationFailure):
    pass


class CyclicCurriculumError(ValidationFailure):
    """Task or domain prerequisite graph contains a cycle."""

    def __init__(self, cycle: list[str]):
        self.cycle = list(cycle)
        super().__init__(f"Cyclic prerequisites: {' -> '.join(self.cycle)}")


# ============================================
# Fatal
# ============================================


class FatalError(CodepathError):
    """Internal invariant broken. Logged for operators, never persisted."""

    pass


class SpecExportError(FatalError):
    pass


class InvariantViolationError(FatalError):
    pass


# ============================================
# Error Classification
# ============================================

RETRYABLE_STATUS_CODES = {408, 425, 429, 500, 502, 503, 504}


def classify_provider_error(error: Exception) -> Exception:
    """
    Map a raw provider exception onto the transient hierarchy.

    Returns the error unchanged when it is not a provider failure, so
    programming errors keep propagating as themselves.
    """
    if isinstance(error, TransientProviderError):
        return error
    if isinstance(error, (asyncio.TimeoutError, httpx.TimeoutException)):
        return ProviderTimeoutError(str(error) or "provider call timed out")
    if isinstance(error, httpx.HTTPStatusError):
        status = error.response.status_code
        if status in RETRYABLE_STATUS_CODES:
            return ProviderUnavailableError(f"provider returned HTTP {status}")
        return error
    if isinstance(error, (httpx.TransportError, ConnectionError)):
        return ProviderUnavailableError(str(error))
    return error
