import asyncio
import time
from typing import Callable, Optional, Union

import validators
import whois

from analyze.base import (AnalysisError, AnalysisOutcome, AnalyzerException, DomainAgeAnalyzer,
                          ErrorType)
from analyze.whois_parser import is_not_found_response, parse_whois_response
from config.default import Config
from utils.cache import CacheManager
from utils.logger import setup_logger
from validation.url_validator import ParsedURL, split_domain, to_ascii_hostname

logger = setup_logger('whois_analyzer')

SOCKET_FAILURE_MARKERS = ('socket not responding', 'socket error')


def query_whois(domain: str) -> str:
    """Blocking WHOIS query returning the registry's raw text."""
    entry = whois.whois(domain)
    return entry.text or ''


def classify_whois_error(error: Exception) -> AnalyzerException:
    if isinstance(error, AnalyzerException):
        return error
    message = str(error)
    lowered = message.lower()
    if is_not_found_response(lowered):
        return AnalyzerException(ErrorType.NOT_FOUND, 'Domain not found in WHOIS database')
    if isinstance(error, TimeoutError) or 'timed out' in lowered or 'timeout' in lowered:
        return AnalyzerException(ErrorType.TIMEOUT, f'WHOIS query timed out: {message}')
    if 'rate limit' in lowered or 'quota' in lowered or 'too many requests' in lowered:
        return AnalyzerException(ErrorType.RATE_LIMIT, f'WHOIS rate limit exceeded: {message}')
    if isinstance(error, (ConnectionError, OSError)) or 'connection' in lowered or 'network' in lowered:
        return AnalyzerException(ErrorType.NETWORK, f'WHOIS network error: {message}')
    return AnalyzerException(ErrorType.UNKNOWN, f'WHOIS lookup failed: {message}', retryable=False)


def normalize_domain(target: Union[str, ParsedURL]) -> str:
    """Reduce a hostname, URL or ParsedURL to the registrable root domain."""
    if isinstance(target, ParsedURL):
        if target.is_ip:
            raise AnalyzerException(ErrorType.INVALID_DOMAIN, 'WHOIS lookups need a domain name, not an IP')
        return target.domain

    domain = (target or '').strip().lower()
    if '://' in domain:
        domain = domain.split('://', 1)[1]
    domain = domain.split('/', 1)[0].split(':', 1)[0].rstrip('.')
    if domain.startswith('www.'):
        domain = domain[4:]

    ascii_domain = to_ascii_hostname(domain) if domain else None
    if not ascii_domain or not validators.domain(ascii_domain):
        raise AnalyzerException(ErrorType.INVALID_DOMAIN, f'Invalid domain: {target}')
    return split_domain(domain)[0]


class WhoisAnalyzer(DomainAgeAnalyzer):
    """Domain age and registration analysis backed by WHOIS."""

    def __init__(self, cache: CacheManager, lookup: Callable[[str], str] = query_whois,
                 max_retries: int = None, base_delay: float = None, max_delay: float = None):
        self.cache = cache
        self.lookup = lookup
        self.max_retries = Config.WHOIS_MAX_RETRIES if max_retries is None else max_retries
        self.base_delay = Config.WHOIS_RETRY_BASE_DELAY if base_delay is None else base_delay
        self.max_delay = Config.WHOIS_RETRY_MAX_DELAY if max_delay is None else max_delay

    async def analyze(self, parsed_url: ParsedURL, force_refresh: bool = False) -> AnalysisOutcome:
        return await self.analyze_domain(parsed_url, force_refresh=force_refresh)

    async def analyze_domain(self, target: Union[str, ParsedURL],
                             force_refresh: bool = False) -> AnalysisOutcome:
        started = time.perf_counter()
        try:
            domain = normalize_domain(target)
        except AnalyzerException as e:
            return AnalysisOutcome.failed(e.to_error(), started)

        if not force_refresh:
            lookup = await self.cache.get_async(domain)
            if lookup.hit:
                return AnalysisOutcome.ok(lookup.value, started, from_cache=True)

        try:
            raw_text = await self._query_with_retry(domain)
            analysis = parse_whois_response(domain, raw_text)
        except AnalyzerException as e:
            logger.warning(f"WHOIS analysis failed for {domain}: [{e.error_type}] {str(e)}")
            return AnalysisOutcome.failed(e.to_error(), started)
        except Exception as e:
            logger.error(f"Unexpected WHOIS failure for {domain}: {str(e)}")
            return AnalysisOutcome.failed(
                AnalysisError(type=ErrorType.UNKNOWN, message=str(e)), started)

        await self.cache.set_async(domain, analysis)
        logger.info(f"WHOIS analysis for {domain}: age={analysis.age_in_days} score={analysis.score}")
        return AnalysisOutcome.ok(analysis, started)

    def retry_delay(self, attempt: int) -> float:
        return min(self.base_delay * (2 ** attempt), self.max_delay)

    async def _query_with_retry(self, domain: str) -> str:
        loop = asyncio.get_running_loop()
        last_error: Optional[AnalyzerException] = None

        for attempt in range(self.max_retries + 1):
            try:
                raw_text = await loop.run_in_executor(None, self.lookup, domain)
                self._check_response(raw_text)
                return raw_text
            except Exception as e:
                last_error = classify_whois_error(e)
                if not last_error.retryable or attempt == self.max_retries:
                    break
                delay = self.retry_delay(attempt)
                logger.warning(
                    f"WHOIS attempt {attempt + 1} for {domain} failed ({last_error.error_type}), "
                    f"retrying in {delay}s"
                )
                await asyncio.sleep(delay)

        raise last_error

    @staticmethod
    def _check_response(raw_text: str) -> None:
        if not raw_text or not raw_text.strip():
            raise AnalyzerException(ErrorType.NETWORK, 'Empty WHOIS response')
        lowered = raw_text.lower()
        if any(marker in lowered for marker in SOCKET_FAILURE_MARKERS):
            raise AnalyzerException(ErrorType.NETWORK, raw_text.strip()[:200])
        if is_not_found_response(lowered):
            raise AnalyzerException(ErrorType.NOT_FOUND, 'Domain not found in WHOIS database')
