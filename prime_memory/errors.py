"""
Shared error types for the memory engine.
"""


class ValidationIssue(ValueError):
    def __init__(
        self,
        message: str,
        field: str = "unknown",
        error_type: str = "invalid",
        error_code: str | None = None,
        data: dict | None = None,
    ):
        super().__init__(message)
        self.field = field
        self.error_type = error_type
        self.error_code = error_code
        self.data = data


class NotFoundIssue(LookupError):
    """Raised when a memory or entity referenced by the caller does not exist."""

    def __init__(self, message: str, field: str = "name", name: str | None = None):
        super().__init__(message)
        self.field = field
        self.name = name


class EmbeddingProviderError(RuntimeError):
    """Raised when the embedding provider is unavailable."""


class DimensionMismatchError(ValueError):
    """Raised when two vectors of different length are compared."""

    def __init__(self, left: int, right: int):
        super().__init__(f"vector dimensions differ ({left} != {right})")
        self.left = left
        self.right = right


class RecallDeadlineExceeded(TimeoutError):
    """Raised inside a recall pass when its deadline has elapsed."""

    def __init__(self, stage: str):
        super().__init__(f"recall deadline exceeded before {stage}")
        self.stage = stage
