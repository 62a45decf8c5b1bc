"""Exception types shared by the DocManifest pipelines."""

from typing import Any, List, Optional


class PipelineError(Exception):
    """Base class for pipeline errors."""
    pass


class ConfigurationError(PipelineError, ValueError):
    """Raised when options are inconsistent. Never retried."""
    pass


class FetchError(PipelineError):
    """Raised when an HTTP fetch fails."""

    def __init__(self, message: str, status_code: Optional[int] = None, retryable: bool = False):
        super().__init__(message)
        self.status_code = status_code
        self.retryable = retryable


class ContentRejected(PipelineError):
    """Raised when a response is refused by content policy (size, type, length)."""
    pass


class RobotsDisallowed(PipelineError):
    """Raised when robots.txt forbids fetching a URL."""
    pass


class StorageError(PipelineError):
    """Raised when the chunk or tool store rejects an operation."""
    pass


class EmbeddingError(PipelineError):
    """Raised when every embedding provider failed."""
    pass


class ClassificationError(PipelineError):
    """Raised when the text classifier cannot produce a result."""
    pass


class PromptGenerationError(PipelineError):
    """Raised when no format in a manifest produced a valid prompt."""

    def __init__(self, message: str, attempts: Optional[List[Any]] = None):
        super().__init__(message)
        self.attempts = attempts or []
