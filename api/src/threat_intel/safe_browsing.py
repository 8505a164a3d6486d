import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional

import requests

from analyze.base import AnalysisError, AnalysisOutcome, AnalyzerException, ErrorType, ReputationAnalyzer
from config.default import Config
from utils.cache import CacheManager
from utils.logger import setup_logger
from validation.url_validator import ParsedURL

logger = setup_logger('safe_browsing')

THREAT_TYPES = ['MALWARE', 'SOCIAL_ENGINEERING', 'UNWANTED_SOFTWARE', 'POTENTIALLY_HARMFUL_APPLICATION']
PLATFORM_TYPES = ['ANY_PLATFORM', 'WINDOWS', 'LINUX', 'ANDROID', 'OSX', 'IOS', 'CHROME']

THREAT_SCORES = {
    'MALWARE': 100,
    'SOCIAL_ENGINEERING': 95,
    'UNWANTED_SOFTWARE': 80,
    'POTENTIALLY_HARMFUL_APPLICATION': 60,
}

PLATFORM_MULTIPLIERS = {
    'ANY_PLATFORM': 1.0,
    'ALL_PLATFORMS': 1.0,
    'WINDOWS': 0.9,
    'ANDROID': 0.8,
    'CHROME': 0.7,
    'LINUX': 0.6,
    'OSX': 0.6,
    'IOS': 0.5,
}

THREAT_DESCRIPTIONS = {
    'MALWARE': 'Known malware distribution',
    'SOCIAL_ENGINEERING': 'Phishing or deceptive content',
    'UNWANTED_SOFTWARE': 'Unwanted software distribution',
    'POTENTIALLY_HARMFUL_APPLICATION': 'Potentially harmful application',
}

HIGH_RISK_MIN = 70
MEDIUM_RISK_MIN = 30


@dataclass(frozen=True)
class ThreatMatch:
    threat_type: str
    platform_type: str
    threat_entry_type: str
    url: str
    cache_duration: Optional[str] = None


@dataclass(frozen=True)
class ReputationRiskFactor:
    type: str
    score: int
    description: str


@dataclass(frozen=True)
class ReputationAnalysis:
    url: str
    is_clean: bool
    threat_matches: List[ThreatMatch] = field(default_factory=list)
    risk_factors: List[ReputationRiskFactor] = field(default_factory=list)
    score: int = 0
    risk_level: str = 'low'
    confidence: float = 0.95
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


def reputation_cache_key(parsed_url: ParsedURL) -> str:
    query = f'?{parsed_url.query}' if parsed_url.query else ''
    return f'{parsed_url.protocol}://{parsed_url.hostname}{parsed_url.path}{query}'


def score_matches(matches: List[ThreatMatch]) -> List[ReputationRiskFactor]:
    factors = []
    for match in matches:
        base = THREAT_SCORES.get(match.threat_type, 50)
        multiplier = PLATFORM_MULTIPLIERS.get(match.platform_type, 0.8)
        factors.append(ReputationRiskFactor(
            type=match.threat_type,
            score=min(round(base * multiplier), 100),
            description=f"{THREAT_DESCRIPTIONS.get(match.threat_type, 'Unknown threat')} "
                        f"({match.platform_type.lower()})",
        ))
    return factors


def build_analysis(url: str, matches: List[ThreatMatch]) -> ReputationAnalysis:
    factors = score_matches(matches)
    score = max((factor.score for factor in factors), default=0)
    if score >= HIGH_RISK_MIN:
        risk_level = 'high'
    elif score >= MEDIUM_RISK_MIN:
        risk_level = 'medium'
    else:
        risk_level = 'low'
    return ReputationAnalysis(
        url=url,
        is_clean=not matches,
        threat_matches=matches,
        risk_factors=factors,
        score=score,
        risk_level=risk_level,
        confidence=0.98 if matches else 0.95,
    )


def parse_matches(payload: Dict) -> List[ThreatMatch]:
    return [
        ThreatMatch(
            threat_type=match.get('threatType', 'THREAT_TYPE_UNSPECIFIED'),
            platform_type=match.get('platformType', 'PLATFORM_TYPE_UNSPECIFIED'),
            threat_entry_type=match.get('threatEntryType', 'URL'),
            url=match.get('threat', {}).get('url', ''),
            cache_duration=match.get('cacheDuration'),
        )
        for match in payload.get('matches', []) or []
    ]


class SafeBrowsingAnalyzer(ReputationAnalyzer):
    """URL reputation via the Google Safe Browsing v4 Lookup API."""

    def __init__(self, cache: CacheManager, api_key: str = None, session: requests.Session = None,
                 base_url: str = None, timeout: float = None):
        self.cache = cache
        self.api_key = Config.GOOGLE_SAFE_BROWSING_API_KEY if api_key is None else api_key
        self.session = session or requests.Session()
        self.base_url = base_url or Config.SAFE_BROWSING_URL
        self.timeout = timeout or Config.SAFE_BROWSING_TIMEOUT
        self.stats = {'requests': 0, 'cache_hits': 0, 'errors': 0, 'threats_found': 0}

    def build_request(self, urls: List[str]) -> Dict:
        return {
            'client': {
                'clientId': Config.SAFE_BROWSING_CLIENT_ID,
                'clientVersion': Config.SAFE_BROWSING_CLIENT_VERSION,
            },
            'threatInfo': {
                'threatTypes': THREAT_TYPES,
                'platformTypes': PLATFORM_TYPES,
                'threatEntryTypes': ['URL'],
                'threatEntries': [{'url': url} for url in urls],
            },
        }

    def _lookup(self, urls: List[str]) -> List[ThreatMatch]:
        if not self.api_key:
            raise AnalyzerException(ErrorType.API_KEY_MISSING, 'Safe Browsing API key is not configured')

        try:
            response = self.session.post(
                f'{self.base_url}/threatMatches:find',
                params={'key': self.api_key},
                json=self.build_request(urls),
                timeout=self.timeout,
            )
        except requests.Timeout as e:
            raise AnalyzerException(ErrorType.TIMEOUT, f'Safe Browsing request timed out: {str(e)}')
        except requests.RequestException as e:
            raise AnalyzerException(ErrorType.NETWORK, f'Safe Browsing request failed: {str(e)}')

        if response.status_code == 429:
            raise AnalyzerException(ErrorType.RATE_LIMIT, 'Safe Browsing rate limit exceeded')
        if response.status_code in (401, 403):
            raise AnalyzerException(ErrorType.API_KEY_INVALID, 'Safe Browsing rejected the API key')
        if response.status_code >= 400:
            raise AnalyzerException(ErrorType.API_ERROR,
                                    f'Safe Browsing API error {response.status_code}: {response.text[:200]}',
                                    retryable=response.status_code >= 500)

        try:
            payload = response.json() or {}
        except ValueError as e:
            raise AnalyzerException(ErrorType.INVALID_RESPONSE, f'Malformed Safe Browsing response: {str(e)}')
        return parse_matches(payload)

    async def analyze(self, parsed_url: ParsedURL, force_refresh: bool = False) -> AnalysisOutcome:
        started = time.perf_counter()
        cache_key = reputation_cache_key(parsed_url)

        if not force_refresh:
            lookup = await self.cache.get_async(cache_key)
            if lookup.hit:
                self.stats['cache_hits'] += 1
                return AnalysisOutcome.ok(lookup.value, started, from_cache=True)

        loop = asyncio.get_running_loop()
        self.stats['requests'] += 1
        try:
            matches = await loop.run_in_executor(None, self._lookup, [parsed_url.normalized])
        except AnalyzerException as e:
            self.stats['errors'] += 1
            logger.warning(f"Reputation check failed for {cache_key}: [{e.error_type}] {str(e)}")
            return AnalysisOutcome.failed(e.to_error(), started)
        except Exception as e:
            self.stats['errors'] += 1
            logger.error(f"Unexpected reputation failure for {cache_key}: {str(e)}")
            return AnalysisOutcome.failed(AnalysisError(type=ErrorType.UNKNOWN, message=str(e)), started)

        analysis = build_analysis(parsed_url.normalized, matches)
        if matches:
            self.stats['threats_found'] += 1
            logger.warning(f"Threats found for {cache_key}: {[m.threat_type for m in matches]}")
        await self.cache.set_async(cache_key, analysis)
        return AnalysisOutcome.ok(analysis, started)

    async def check_urls(self, parsed_urls: List[ParsedURL]) -> Dict[str, AnalysisOutcome]:
        """Check several URLs concurrently, keyed by normalized URL."""
        outcomes = await asyncio.gather(*(self.analyze(parsed) for parsed in parsed_urls))
        return {parsed.normalized: outcome for parsed, outcome in zip(parsed_urls, outcomes)}

    def get_stats(self) -> Dict:
        return dict(self.stats)
