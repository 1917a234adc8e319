"""Exception types raised by the indexing and query pipeline."""


class VecgrepError(Exception):
    """Base class for all vecgrep errors."""


class StorageError(VecgrepError):
    """The index database cannot be opened or initialized."""


class ConstraintViolationError(VecgrepError):
    """A per-file write violated a storage constraint and was rolled back."""

    def __init__(self, path: str, message: str):
        super().__init__(f"{path}: {message}")
        self.path = path


class ExtractionError(VecgrepError):
    """An extractor could not produce chunks for a file."""


class EmbeddingError(VecgrepError):
    """An embedding backend failed and retries were exhausted."""


class TransientEmbeddingError(EmbeddingError):
    """A retryable backend failure (timeout, connection reset, rate limit)."""


class BatchEmbeddingError(EmbeddingError):
    """A batch call that partially succeeded.

    Attributes:
        partial: Mapping of input index to the vector computed for it.
        failed: Input indices the backend could not embed.
    """

    def __init__(self, message: str, partial: dict, failed: list[int]):
        super().__init__(message)
        self.partial = partial
        self.failed = failed


class EngineMismatchError(VecgrepError):
    """A vector does not match the dimensionality registered for its engine."""


class ScopeNotFoundError(VecgrepError):
    """A root or scope path does not exist on disk."""
