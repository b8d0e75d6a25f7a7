"""Error taxonomy shared by the pipeline, version store, and comparison engine."""

from __future__ import annotations


class SiteClonerError(RuntimeError):
    """Base class for every failure raised by site-cloner."""


class ValidationError(SiteClonerError):
    """Caller supplied missing or malformed input. Not retryable."""


class NotFoundError(SiteClonerError):
    """A job, checkpoint, or version does not exist."""


class ConflictError(SiteClonerError):
    """The request conflicts with the current state of a store."""


class ImmutableVersionError(ConflictError):
    def __init__(self, version_id: str):
        super().__init__(
            "Versions are immutable and cannot be deleted. "
            "This preserves complete version history."
        )
        self.version_id = version_id


class ExternalUnavailableError(SiteClonerError):
    """Renderer or generated site not reachable in time. Retryable by the caller."""


class ServerUnavailableError(ExternalUnavailableError):
    """The generated site could not be provisioned within its timeout."""


class PersistenceError(SiteClonerError):
    """A store write failed. No partial state is left behind."""


class CorruptStateError(SiteClonerError):
    """A persisted record exists but cannot be parsed."""
