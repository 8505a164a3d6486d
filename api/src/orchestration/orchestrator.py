import asyncio
import inspect
import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from analyze.ai_analyzer import build_url_structure
from analyze.base import (AnalysisError, AnalysisOutcome, CertificateAnalyzer, ContentAnalyzer, DomainAgeAnalyzer,
                          ErrorType, ReputationAnalyzer)
from config.default import Config
from scoring.calculator import ScoringCalculator
from scoring.config_manager import ValidationReport
from scoring.models import (SCORED_FACTORS, FactorInput, RiskLevel, ScoringBreakdown, ScoringInput,
                            ScoringMetadata, ScoringResult)
from utils.cache import CacheManager
from utils.logger import setup_logger
from validation.url_validator import ParsedURL, validate_url

logger = setup_logger('orchestrator')

SERVICE_NAMES = ('reputation', 'whois', 'ssl', 'ai')

# Service name -> scored factor it feeds
SERVICE_FACTORS = dict(zip(SERVICE_NAMES, (factor.value for factor in SCORED_FACTORS)))

FALLBACK_SCORE = 50.0
FALLBACK_CONFIDENCE = 0.3


class InsufficientServicesError(Exception):
    def __init__(self, succeeded: int, required: int):
        super().__init__(f'Insufficient successful services: {succeeded}/{required} required')
        self.succeeded = succeeded
        self.required = required


class URLValidationError(Exception):
    def __init__(self, error_type: str, message: str):
        super().__init__(message)
        self.error_type = error_type


@dataclass(frozen=True)
class OrchestratorSettings:
    service_timeout: float = 30.0
    scoring_timeout: float = 5.0
    total_timeout: float = 60.0
    min_required_services: int = 2
    history_size: int = 100
    cache_results: bool = True
    cache_ttl: int = 300
    allow_private_urls: bool = False
    warming_concurrency: int = 3

    @classmethod
    def from_config(cls) -> 'OrchestratorSettings':
        return cls(
            service_timeout=Config.SERVICE_TIMEOUT,
            scoring_timeout=Config.SCORING_TIMEOUT,
            total_timeout=Config.TOTAL_ANALYSIS_TIMEOUT,
            min_required_services=Config.MIN_REQUIRED_SERVICES,
            history_size=Config.HISTORY_SIZE,
            cache_results=Config.CACHE_ORCHESTRATION_RESULTS,
            cache_ttl=Config.CACHE_EXPIRATION,
            allow_private_urls=Config.ALLOW_PRIVATE_URLS,
            warming_concurrency=Config.CACHE_WARMING_CONCURRENCY,
        )


@dataclass(frozen=True)
class ServiceSummary:
    success: bool
    processing_time_ms: float
    from_cache: bool = False
    error: Optional[AnalysisError] = None


@dataclass(frozen=True)
class OrchestrationMetrics:
    total_processing_time_ms: float
    services_executed: int
    services_succeeded: int
    services_failed: int
    caching_enabled: bool
    parallel_execution: bool = True
    cache_hit: bool = False


@dataclass(frozen=True)
class OrchestrationResult:
    scoring_result: ScoringResult
    service_results: Dict[str, ServiceSummary]
    metrics: OrchestrationMetrics
    error: Optional[AnalysisError] = None
    from_cache: bool = False

    @property
    def is_fallback(self) -> bool:
        return self.error is not None


@dataclass(frozen=True)
class HistoryEntry:
    url: str
    result: OrchestrationResult
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class HistoryRing:
    """Fixed-capacity circular buffer; appending past capacity overwrites the oldest entry."""

    def __init__(self, capacity: int):
        if capacity < 1:
            raise ValueError('History capacity must be at least 1')
        self.capacity = capacity
        self._slots: List[Optional[HistoryEntry]] = [None] * capacity
        self._next = 0
        self._size = 0

    def append(self, entry: HistoryEntry) -> None:
        self._slots[self._next] = entry
        self._next = (self._next + 1) % self.capacity
        self._size = min(self._size + 1, self.capacity)

    def items(self) -> List[HistoryEntry]:
        """Entries oldest first."""
        if self._size < self.capacity:
            return list(self._slots[:self._size])
        return self._slots[self._next:] + self._slots[:self._next]

    def recent(self, count: int) -> List[HistoryEntry]:
        return self.items()[-count:] if count > 0 else []

    def clear(self) -> None:
        self._slots = [None] * self.capacity
        self._next = 0
        self._size = 0

    def __len__(self) -> int:
        return self._size


async def run_settled(calls: Dict[str, Callable[[], Union[Awaitable, Any]]],
                      timeout: float) -> Dict[str, Union[Any, BaseException]]:
    """Run every call concurrently and wait for all of them.

    Each call gets its own ``timeout``. A call that raises (synchronously or
    while awaited) or times out yields its exception in place of a result;
    the other calls keep running.
    """
    async def settle(call):
        result = call()
        if inspect.isawaitable(result):
            result = await result
        return result

    names = list(calls)
    results = await asyncio.gather(
        *(asyncio.wait_for(settle(calls[name]), timeout) for name in names),
        return_exceptions=True,
    )
    return dict(zip(names, results))


def summarize(name: str, settled: Any, timeout: float) -> AnalysisOutcome:
    """Turn a settled service call into an AnalysisOutcome."""
    if isinstance(settled, AnalysisOutcome):
        return settled
    if isinstance(settled, asyncio.TimeoutError):
        error = AnalysisError(type=ErrorType.TIMEOUT, message=f'{name} service timed out after {timeout}s',
                              retryable=True)
        return AnalysisOutcome(success=False, error=error, processing_time_ms=timeout * 1000)
    if isinstance(settled, BaseException):
        error = AnalysisError(type=ErrorType.UNKNOWN, message=f'{name} service failed: {str(settled)}')
        return AnalysisOutcome(success=False, error=error)
    error = AnalysisError(type=ErrorType.INVALID_RESPONSE,
                          message=f'{name} service returned {type(settled).__name__}')
    return AnalysisOutcome(success=False, error=error)


def classify_failure(error: BaseException) -> AnalysisError:
    if isinstance(error, URLValidationError):
        return AnalysisError(type=ErrorType.VALIDATION, message=str(error), code=error.error_type)
    if isinstance(error, InsufficientServicesError):
        return AnalysisError(type=ErrorType.INSUFFICIENT_SERVICES, message=str(error),
                             details={'succeeded': error.succeeded, 'required': error.required})
    if isinstance(error, asyncio.TimeoutError):
        return AnalysisError(type=ErrorType.TIMEOUT, message=str(error) or 'Analysis timed out', retryable=True)
    return AnalysisError(type=ErrorType.UNKNOWN, message=str(error) or type(error).__name__)


class AnalysisOrchestrator:
    """Fans a URL out to the four analyzers and scores whatever comes back."""

    def __init__(self, reputation: ReputationAnalyzer, whois: DomainAgeAnalyzer, ssl: CertificateAnalyzer,
                 ai: ContentAnalyzer, calculator: ScoringCalculator, cache: CacheManager,
                 settings: OrchestratorSettings = None, service_caches: Dict[str, CacheManager] = None):
        self.services = {'reputation': reputation, 'whois': whois, 'ssl': ssl, 'ai': ai}
        self.calculator = calculator
        self.cache = cache
        self.service_caches = dict(service_caches or {})
        self.settings = settings or OrchestratorSettings.from_config()
        self.history = HistoryRing(self.settings.history_size)
        logger.info(
            f"Orchestrator initialized: service_timeout={self.settings.service_timeout}s, "
            f"min_services={self.settings.min_required_services}, cache={self.cache.backend.name}"
        )

    async def analyze_url(self, url: str, force_refresh: bool = False, experiment_id: str = None,
                          user_id: str = None) -> OrchestrationResult:
        """Analyze ``url`` end to end. Never raises: failures produce a fallback result."""
        started = time.perf_counter()
        logger.info(f"Starting analysis for {url} (force_refresh={force_refresh})")
        try:
            return await asyncio.wait_for(
                self._analyze(url, started, force_refresh, experiment_id, user_id),
                self.settings.total_timeout,
            )
        except Exception as e:
            error = classify_failure(e)
            logger.error(f"Analysis failed for {url}: [{error.type}] {error.message}")
            return self.fallback_result(url, started, error)

    async def _analyze(self, url: str, started: float, force_refresh: bool, experiment_id: Optional[str],
                       user_id: Optional[str]) -> OrchestrationResult:
        validation = validate_url(url, allow_private=self.settings.allow_private_urls)
        if not validation.is_valid:
            raise URLValidationError(validation.error_type, validation.error)
        parsed = validation.parsed

        if self.settings.cache_results and not force_refresh:
            lookup = await self.cache.get_async(parsed.normalized)
            if lookup.hit:
                logger.info(f"Serving cached analysis for {parsed.normalized}")
                cached = lookup.value
                return replace(cached, from_cache=True, metrics=replace(cached.metrics, cache_hit=True))

        outcomes = await self.execute_services(parsed, force_refresh)
        succeeded = sum(1 for outcome in outcomes.values() if outcome.success)
        if succeeded < self.settings.min_required_services:
            raise InsufficientServicesError(succeeded, self.settings.min_required_services)

        scoring_input = self.build_scoring_input(parsed.normalized, outcomes)
        scoring_result = await asyncio.wait_for(
            self.calculator.calculate_score(scoring_input, experiment_id, user_id),
            self.settings.scoring_timeout,
        )

        result = OrchestrationResult(
            scoring_result=scoring_result,
            service_results={
                name: ServiceSummary(outcome.success, outcome.processing_time_ms, outcome.from_cache, outcome.error)
                for name, outcome in outcomes.items()
            },
            metrics=OrchestrationMetrics(
                total_processing_time_ms=round((time.perf_counter() - started) * 1000, 2),
                services_executed=len(outcomes),
                services_succeeded=succeeded,
                services_failed=len(outcomes) - succeeded,
                caching_enabled=self.settings.cache_results,
            ),
        )

        if self.settings.cache_results:
            await self.cache.set_async(parsed.normalized, result, self.settings.cache_ttl)
        self.history.append(HistoryEntry(parsed.normalized, result))

        logger.info(
            f"Analysis completed for {parsed.normalized}: score={scoring_result.final_score} "
            f"({scoring_result.risk_level}), services={succeeded}/{len(outcomes)}, "
            f"time={result.metrics.total_processing_time_ms}ms"
        )
        return result

    async def execute_services(self, parsed: ParsedURL, force_refresh: bool = False) -> Dict[str, AnalysisOutcome]:
        context = {'url_structure': build_url_structure(parsed)}
        calls = {
            'reputation': lambda: self.services['reputation'].analyze(parsed, force_refresh=force_refresh),
            'whois': lambda: self.services['whois'].analyze(parsed, force_refresh=force_refresh),
            'ssl': lambda: self.services['ssl'].analyze(parsed, force_refresh=force_refresh),
            'ai': lambda: self.services['ai'].analyze(parsed, context=context, force_refresh=force_refresh),
        }
        timeout = self.settings.service_timeout
        settled = await run_settled(calls, timeout)

        outcomes = {}
        for name in SERVICE_NAMES:
            outcome = summarize(name, settled[name], timeout)
            if not outcome.success:
                logger.warning(f"{name} service failed for {parsed.hostname}: "
                               f"[{outcome.error.type}] {outcome.error.message}")
            outcomes[name] = outcome
        return outcomes

    @staticmethod
    def build_scoring_input(url: str, outcomes: Dict[str, AnalysisOutcome]) -> ScoringInput:
        inputs = {}
        for name, outcome in outcomes.items():
            if outcome.success and outcome.data is not None:
                inputs[name] = FactorInput(outcome.data, outcome.processing_time_ms, outcome.from_cache)
        return ScoringInput(url=url, **inputs)

    def fallback_result(self, url: str, started: float, error: AnalysisError) -> OrchestrationResult:
        processing_time = round((time.perf_counter() - started) * 1000, 2)
        weights = dict(self.calculator.config.weights)
        scoring_result = ScoringResult(
            url=url,
            final_score=FALLBACK_SCORE,
            risk_level=RiskLevel.MEDIUM.value,
            confidence=FALLBACK_CONFIDENCE,
            risk_factors=[],
            metadata=ScoringMetadata(
                total_processing_time_ms=processing_time,
                config_used={},
                config_hash='fallback',
                missing_factors=[factor.value for factor in SCORED_FACTORS],
                redistributed_weights=weights,
                normalization_method=self.calculator.config.normalization.method,
            ),
            breakdown=ScoringBreakdown(weighted_scores={}, normalized_scores={}, raw_scores={}, total_weight=0.0),
        )
        return OrchestrationResult(
            scoring_result=scoring_result,
            service_results={name: ServiceSummary(False, 0.0, False, error) for name in SERVICE_NAMES},
            metrics=OrchestrationMetrics(
                total_processing_time_ms=processing_time,
                services_executed=len(SERVICE_NAMES),
                services_succeeded=0,
                services_failed=len(SERVICE_NAMES),
                caching_enabled=self.settings.cache_results,
            ),
            error=error,
        )

    def get_statistics(self) -> Dict[str, Any]:
        entries = self.history.items()
        availability = {factor.value: 0.0 for factor in SCORED_FACTORS}
        stats = {
            'total_analyses': len(entries),
            'average_processing_time_ms': 0.0,
            'average_success_rate': 0.0,
            'service_availability': availability,
            'recent_analyses': [],
            'scoring': self.calculator.get_statistics(),
            'cache': self.cache.stats(),
        }
        if not entries:
            return stats

        total = len(entries)
        stats['average_processing_time_ms'] = round(
            sum(entry.result.metrics.total_processing_time_ms for entry in entries) / total, 2)
        stats['average_success_rate'] = round(
            sum(entry.result.metrics.services_succeeded / entry.result.metrics.services_executed
                for entry in entries) / total, 2)
        for entry in entries:
            for name, summary in entry.result.service_results.items():
                if summary.success:
                    availability[SERVICE_FACTORS[name]] += 1
        stats['service_availability'] = {key: round(count / total * 100, 1) for key, count in availability.items()}
        stats['recent_analyses'] = [
            {'url': entry.url, 'score': entry.result.scoring_result.final_score, 'timestamp': entry.timestamp}
            for entry in self.history.recent(10)
        ]
        return stats

    def update_configuration(self, **changes) -> OrchestratorSettings:
        """Replace individual settings, e.g. ``update_configuration(service_timeout=10)``."""
        settings = replace(self.settings, **changes)
        if settings.history_size != self.settings.history_size:
            resized = HistoryRing(settings.history_size)
            for entry in self.history.items():
                resized.append(entry)
            self.history = resized
        self.settings = settings
        logger.info(f"Orchestrator configuration updated: {changes}")
        return settings

    def update_scoring_config(self, overrides: Dict[str, Any],
                              reason: str = 'configuration update') -> ValidationReport:
        return self.calculator.config_manager.update_config(overrides, reason)

    def clear_history(self) -> None:
        self.history.clear()
        self.calculator.clear_history()
        logger.info('Orchestrator history cleared')

    def invalidate_cache(self, pattern: str, include_services: bool = False) -> int:
        removed = self.cache.invalidate(pattern)
        if include_services:
            removed += sum(cache.invalidate(pattern) for cache in self.service_caches.values())
        return removed

    def clear_cache(self, include_services: bool = True) -> int:
        removed = self.cache.clear()
        if include_services:
            removed += sum(cache.clear() for cache in self.service_caches.values())
        logger.info(f"Cleared {removed} cached entries")
        return removed

    def cache_stats(self) -> Dict[str, Dict[str, Any]]:
        stats = {'orchestration': self.cache.stats()}
        stats.update({name: cache.stats() for name, cache in self.service_caches.items()})
        return stats

    async def warm_cache(self, urls: List[str], per_url_timeout: float = None,
                         concurrency: int = None) -> Dict[str, Any]:
        """Compute fresh results for ``urls`` so later requests are served from cache."""
        started = time.perf_counter()
        per_url_timeout = per_url_timeout or self.settings.total_timeout
        semaphore = asyncio.Semaphore(concurrency or self.settings.warming_concurrency)

        async def warm(url):
            async with semaphore:
                result = await asyncio.wait_for(self.analyze_url(url, force_refresh=True), per_url_timeout)
            if result.is_fallback:
                raise RuntimeError(result.error.message)
            return result

        unique_urls = list(dict.fromkeys(urls))
        settled = await asyncio.gather(*(warm(url) for url in unique_urls), return_exceptions=True)
        failed = {url: str(outcome) or type(outcome).__name__
                  for url, outcome in zip(unique_urls, settled) if isinstance(outcome, BaseException)}

        report = {
            'total': len(unique_urls),
            'warmed': len(unique_urls) - len(failed),
            'failed': failed,
            'duration_ms': round((time.perf_counter() - started) * 1000, 2),
        }
        logger.info(f"Cache warming finished: {report['warmed']}/{report['total']} URLs warmed")
        return report
