import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from analyze.ai_client import AIClient, TokenUsage
from analyze.base import AnalysisError, AnalysisOutcome, AnalyzerException, ContentAnalyzer, ErrorType
from analyze.pattern_detector import URLPatternAnalysis, URLPatternDetector
from analyze.prompts import (URL_ANALYSIS_PROMPT_VERSION, create_url_analysis_prompt, generate_cache_key,
                             validate_ai_response)
from config.default import Config
from utils.cache import CacheManager
from utils.logger import setup_logger
from validation.url_validator import ParsedURL

logger = setup_logger('ai_analyzer')


@dataclass(frozen=True)
class AIAnalysisResult:
    risk_score: int
    confidence: float  # 0-1
    scam_category: str
    primary_risks: List[str] = field(default_factory=list)
    indicators: List[str] = field(default_factory=list)
    explanation: str = ''
    pattern_analysis: Optional[URLPatternAnalysis] = None
    model: Optional[str] = None
    token_usage: Optional[TokenUsage] = None
    cost: float = 0.0
    prompt_version: str = URL_ANALYSIS_PROMPT_VERSION


def build_url_structure(parsed_url: ParsedURL) -> Dict[str, Any]:
    return {
        'is_ip': parsed_url.is_ip,
        'subdomain': parsed_url.subdomain,
        'path_depth': len(parsed_url.path_parts),
        'query_param_count': len(parsed_url.query_params),
        'has_https': parsed_url.is_https,
    }


def merge_indicators(indicators: List[str], detected_patterns: List[str]) -> List[str]:
    merged = list(indicators)
    for pattern in detected_patterns:
        if pattern != 'analysis_failed' and pattern not in merged:
            merged.append(pattern)
    return merged


class AIURLAnalyzer(ContentAnalyzer):
    """LLM-based URL assessment enriched with lexical pattern signals."""

    def __init__(self, client: AIClient, cache: CacheManager, detector: URLPatternDetector = None,
                 enabled: bool = None):
        self.client = client
        self.cache = cache
        self.detector = detector or URLPatternDetector()
        self.enabled = Config.AI_ENABLED if enabled is None else enabled

    async def analyze(self, parsed_url: ParsedURL, context: Dict[str, Any] = None,
                      force_refresh: bool = False) -> AnalysisOutcome:
        started = time.perf_counter()
        if not self.enabled:
            return AnalysisOutcome.failed(
                AnalysisError(type=ErrorType.AI_DISABLED, message='AI analysis is disabled'), started)

        patterns = self.detector.analyze(parsed_url.normalized, parsed_url.hostname, parsed_url.path)
        context = dict(context or {})
        context.setdefault('url_structure', build_url_structure(parsed_url))
        context['detected_patterns'] = patterns.detected_patterns

        cache_key = generate_cache_key(parsed_url.normalized, context)
        if not force_refresh:
            lookup = await self.cache.get_async(cache_key)
            if lookup.hit:
                return AnalysisOutcome.ok(lookup.value, started, from_cache=True)

        prompt = create_url_analysis_prompt(
            url=parsed_url.normalized,
            domain=parsed_url.hostname,
            path=parsed_url.path,
            parameters=parsed_url.params,
            context=context,
        )

        loop = asyncio.get_running_loop()
        try:
            completion = await loop.run_in_executor(None, self.client.complete, prompt)
            parsed, error = validate_ai_response(completion.content)
            if error:
                raise AnalyzerException(ErrorType.INVALID_RESPONSE, error, retryable=False)
        except AnalyzerException as e:
            logger.warning(f"AI analysis failed for {parsed_url.hostname}: [{e.error_type}] {str(e)}")
            return AnalysisOutcome.failed(e.to_error(), started)
        except Exception as e:
            logger.error(f"Unexpected AI analysis failure for {parsed_url.hostname}: {str(e)}")
            return AnalysisOutcome.failed(AnalysisError(type=ErrorType.UNKNOWN, message=str(e)), started)

        result = AIAnalysisResult(
            risk_score=int(round(parsed['risk_score'])),
            confidence=round(parsed['confidence'] / 100, 4),
            scam_category=parsed['scam_category'],
            primary_risks=[str(risk) for risk in parsed['primary_risks']],
            indicators=merge_indicators([str(i) for i in parsed['indicators']], patterns.detected_patterns),
            explanation=parsed['explanation'],
            pattern_analysis=patterns,
            model=completion.model,
            token_usage=completion.token_usage,
            cost=completion.cost,
        )
        await self.cache.set_async(cache_key, result)
        logger.info(
            f"AI analysis for {parsed_url.hostname}: score={result.risk_score} "
            f"category={result.scam_category} cost=${result.cost:.4f}"
        )
        return AnalysisOutcome.ok(result, started)
