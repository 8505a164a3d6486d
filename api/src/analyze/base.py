import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Generic, Optional, TypeVar

from validation.url_validator import ParsedURL

T = TypeVar('T')


class ErrorType:
    VALIDATION = 'validation'
    NETWORK = 'network'
    TIMEOUT = 'timeout'
    RATE_LIMIT = 'rate_limit'
    NOT_FOUND = 'not_found'
    INVALID_DOMAIN = 'invalid_domain'
    CONNECTION = 'connection'
    CERTIFICATE = 'certificate'
    API_ERROR = 'api_error'
    API_KEY_MISSING = 'api_key_missing'
    API_KEY_INVALID = 'api_key_invalid'
    COST_THRESHOLD_EXCEEDED = 'cost_threshold_exceeded'
    INVALID_RESPONSE = 'invalid_response'
    AI_DISABLED = 'ai_disabled'
    INSUFFICIENT_SERVICES = 'insufficient_services'
    UNKNOWN = 'unknown'

    RETRYABLE = frozenset({NETWORK, TIMEOUT, RATE_LIMIT, CONNECTION})


@dataclass(frozen=True)
class AnalysisError:
    type: str
    message: str
    retryable: bool = False
    code: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if self.code is None:
            object.__setattr__(self, 'code', self.type)


class AnalyzerException(Exception):
    """Raised inside an analyzer and converted to an AnalysisError at its boundary."""

    def __init__(self, error_type: str, message: str, retryable: bool = None,
                 details: Dict[str, Any] = None):
        super().__init__(message)
        self.error_type = error_type
        self.retryable = error_type in ErrorType.RETRYABLE if retryable is None else retryable
        self.details = details or {}

    def to_error(self) -> AnalysisError:
        return AnalysisError(
            type=self.error_type,
            message=str(self),
            retryable=self.retryable,
            details=self.details,
        )


@dataclass(frozen=True)
class AnalysisOutcome(Generic[T]):
    success: bool
    data: Optional[T] = None
    error: Optional[AnalysisError] = None
    from_cache: bool = False
    processing_time_ms: float = 0.0

    @classmethod
    def ok(cls, data: T, started: float, from_cache: bool = False) -> 'AnalysisOutcome[T]':
        return cls(success=True, data=data, from_cache=from_cache,
                   processing_time_ms=elapsed_ms(started))

    @classmethod
    def failed(cls, error: AnalysisError, started: float) -> 'AnalysisOutcome[T]':
        return cls(success=False, error=error, processing_time_ms=elapsed_ms(started))


def elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000, 2)


class ReputationAnalyzer(ABC):
    name = 'reputation'

    @abstractmethod
    async def analyze(self, parsed_url: ParsedURL, force_refresh: bool = False) -> AnalysisOutcome:
        pass


class DomainAgeAnalyzer(ABC):
    name = 'whois'

    @abstractmethod
    async def analyze(self, parsed_url: ParsedURL, force_refresh: bool = False) -> AnalysisOutcome:
        pass


class CertificateAnalyzer(ABC):
    name = 'ssl'

    @abstractmethod
    async def analyze(self, parsed_url: ParsedURL, force_refresh: bool = False) -> AnalysisOutcome:
        pass


class ContentAnalyzer(ABC):
    name = 'ai'

    @abstractmethod
    async def analyze(self, parsed_url: ParsedURL, context: Dict[str, Any] = None,
                      force_refresh: bool = False) -> AnalysisOutcome:
        pass
