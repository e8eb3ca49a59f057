"""
Error taxonomy for the search domain.

Validation problems subclass ValueError and backend/availability problems
subclass RuntimeError, so the API layer can keep mapping them to HTTP 400
and HTTP 503 respectively.
"""


class SearchError(RuntimeError):
    """Base class for all catalog search failures."""


class ValidationError(SearchError, ValueError):
    """Bad input. Never retried."""


class TransientBackendError(SearchError):
    """A backend (index engine, database, cache) failed in a retryable way."""


class EngineTimeoutError(TransientBackendError):
    """The index engine did not answer within the configured timeout."""


class PermanentTaskError(SearchError):
    """A sync task exhausted its retries and was moved to the dead-letter list."""


class CacheError(SearchError):
    """The cache backend failed. Callers treat this as a miss."""


class ServiceUnavailableError(SearchError):
    """Both the primary engine and the relational fallback failed."""


class ExperimentNotFoundError(SearchError, KeyError):
    """No experiment with the given id exists."""

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else "experiment not found"


class ExperimentNotActiveError(ValidationError):
    """The experiment is not accepting new assignments (not started, stopped or expired)."""
