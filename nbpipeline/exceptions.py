"""Pipeline exceptions."""


class PipelineError(Exception):
    """Base class for run pipeline errors."""

    def __init__(self, message: str, details: dict = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)

    def __str__(self):
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class NotFound(PipelineError):
    """Referenced run or company does not exist."""

    pass


class InvalidState(PipelineError):
    """Operation attempted against a run in an incompatible status."""

    def __init__(self, message: str, status: str = None, **kwargs):
        super().__init__(message, kwargs)
        self.status = status


class InvalidArgument(PipelineError, ValueError):
    """Malformed decision or canonicalization input."""

    pass


class UnknownBlockCode(InvalidArgument):
    """NB code that cannot be resolved to a canonical block."""

    pass


class BudgetExceeded(PipelineError):
    """Cost estimate does not allow the run to be queued."""

    def __init__(self, message: str, estimated: float = None, limit: float = None, **kwargs):
        super().__init__(message, {"estimated": estimated, "limit": limit, **kwargs})
        self.estimated = estimated
        self.limit = limit


class PartialCopyFailure(PipelineError):
    """Cache clone produced fewer (or more) blocks than a complete run has."""

    def __init__(self, message: str, copied: int = 0, **kwargs):
        super().__init__(message, {"copied": copied, **kwargs})
        self.copied = copied


class ProviderFailure(PipelineError):
    """Generation provider call failed."""

    def __init__(self, message: str, provider: str = None, **kwargs):
        super().__init__(message, kwargs)
        self.provider = provider
