"""Exception hierarchy for workspace-rag.

Transient provider failures (``ProviderUnavailable``, ``ProviderTimeout``)
are retried by callers; ``DimensionMismatch`` and ``ContentRejected`` are
surfaced immediately.
"""

from __future__ import annotations


class WorkspaceRagError(Exception):
    """Base class for all workspace-rag errors."""

    #: Short machine-readable name reported in stream error events.
    code: str = "error"

    def __init__(self, message: str = "") -> None:
        super().__init__(message)
        self.message = message


class ConfigError(WorkspaceRagError):
    """Configuration could not be loaded or validated."""

    code = "config_error"


class ProviderError(WorkspaceRagError):
    """Base class for embedding and completion provider failures."""

    code = "provider_error"
    transient: bool = False


class ProviderUnavailable(ProviderError):
    """The provider could not be reached or answered with a server error."""

    code = "provider_unavailable"
    transient = True


class ProviderTimeout(ProviderError):
    """The provider did not answer within the configured timeout."""

    code = "provider_timeout"
    transient = True


class ContentRejected(ProviderError):
    """The completion provider declined the input."""

    code = "content_rejected"


class VectorIndexError(WorkspaceRagError):
    """Base class for vector index failures."""

    code = "index_error"


class IndexUnavailable(VectorIndexError):
    """The backing store of the index cannot be read or written."""

    code = "index_unavailable"


class DimensionMismatch(VectorIndexError):
    """An embedding does not match the dimensionality of the index."""

    code = "dimension_mismatch"

    def __init__(self, expected: int, actual: int) -> None:
        super().__init__(
            f"Embedding dimension {actual} does not match index dimension {expected}"
        )
        self.expected = expected
        self.actual = actual


class ExtractionError(WorkspaceRagError):
    """A document could not be turned into text."""

    code = "extraction_error"


class AgentError(WorkspaceRagError):
    """A sub-agent failed to produce a result."""

    code = "agent_error"


class SessionError(WorkspaceRagError):
    """Base class for session errors."""

    code = "session_error"


class SessionNotFoundError(SessionError):
    """No session exists with the requested id."""

    code = "session_not_found"


class CheckpointError(SessionError):
    """A session checkpoint could not be written or read."""

    code = "checkpoint_error"
