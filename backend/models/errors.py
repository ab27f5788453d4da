"""Error types shared by the provider clients and the optimization pipeline."""
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


class ProviderErrorCode(str, Enum):
    """Failure categories reported by the embedding and generative providers."""
    RATE_LIMITED = "RATE_LIMITED"
    QUOTA_EXHAUSTED = "QUOTA_EXHAUSTED"
    AUTHENTICATION_ERROR = "AUTHENTICATION_ERROR"
    TIMEOUT_ERROR = "TIMEOUT_ERROR"
    NETWORK_ERROR = "NETWORK_ERROR"
    MODEL_LOADING = "MODEL_LOADING"
    API_ERROR = "API_ERROR"
    TRUNCATED_RESPONSE = "TRUNCATED_RESPONSE"
    MALFORMED_RESPONSE = "MALFORMED_RESPONSE"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"

    @property
    def retryable(self) -> bool:
        """Whether a caller may retry the same request later."""
        return self in _RETRYABLE_CODES


_RETRYABLE_CODES = frozenset({
    ProviderErrorCode.RATE_LIMITED,
    ProviderErrorCode.TIMEOUT_ERROR,
    ProviderErrorCode.NETWORK_ERROR,
    ProviderErrorCode.MODEL_LOADING,
})


@dataclass
class ProviderError:
    """Structured error response from provider operations."""
    code: ProviderErrorCode
    message: str
    details: Dict[str, Any] = field(default_factory=dict)


class ProviderClientError(Exception):
    """Exception raised by provider clients with structured error information."""

    def __init__(self, error: ProviderError):
        self.error = error
        super().__init__(error.message)

    @property
    def retryable(self) -> bool:
        return self.error.code.retryable


class PipelineErrorKind(str, Enum):
    """The five failure kinds of the optimization pipeline."""
    FATAL_STAGE = "fatal_stage"
    ITEM_LEVEL = "item_level"
    RECOVERABLE_STAGE = "recoverable_stage"
    DATA_INTEGRITY = "data_integrity"
    PROVIDER_PROTOCOL = "provider_protocol"


class PipelineError(Exception):
    """A pipeline failure tagged with its kind and the stage it happened in."""

    def __init__(
        self,
        kind: PipelineErrorKind,
        stage: str,
        message: str,
        cause: Optional[BaseException] = None
    ):
        self.kind = kind
        self.stage = stage
        self.message = message
        self.cause = cause
        super().__init__(message)


class OptimizationInProgressError(RuntimeError):
    """Raised when a second optimization is started for a session that is already running."""

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"An optimization is already running for session '{session_id}'")


class VectorError(ValueError):
    """Raised for vectors that cannot be compared (length mismatch, zero magnitude)."""
