"""
Error taxonomy for the relay pipeline.

Errors are classified where they happen. Only TransientInfraError (and its
subclasses) is ever retried by the RetryManager; everything else propagates
immediately.
"""

from __future__ import annotations

from typing import Optional


class RelayError(Exception):
    """Base class for all pipeline errors."""


class ValidationError(RelayError):
    """Malformed input. Never retried, surfaced as a 4xx."""

    def __init__(self, message: str, *, field: Optional[str] = None) -> None:
        super().__init__(message)
        self.field = field


class TransientInfraError(RelayError):
    """Broker / cache / provider hiccup (timeouts, 5xx, unavailable). Retried per policy."""


class PublishError(TransientInfraError):
    """The broker could not accept a published message."""


class TopologyConflictError(RelayError):
    """An exchange or queue was redeclared with different arguments."""


class ResolverNotFound(RelayError):
    """No ticket / agent assignment exists for the conversation."""


class ProviderError(RelayError):
    """
    Outbound provider send failure.

    kind is "transient" (timeout, rate limit, 5xx) or "permanent"
    (invalid recipient, blocked number, other 4xx).
    """

    kind = "transient"

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code

    @property
    def transient(self) -> bool:
        return self.kind == "transient"


class TransientProviderError(ProviderError, TransientInfraError):
    kind = "transient"


class PermanentProviderError(ProviderError):
    kind = "permanent"


class RetryExhaustedError(RelayError):
    """
    Terminal failure after policy.max_attempts.

    dead_lettered tells whether the RetryManager managed to park the message
    in its DLQ with the terminal error attached.
    """

    def __init__(self, attempts: int, last_error: BaseException, *, dead_lettered: bool = False) -> None:
        super().__init__(f"retry exhausted after {attempts} attempt(s): {last_error!r}")
        self.attempts = attempts
        self.last_error = last_error
        self.dead_lettered = dead_lettered
