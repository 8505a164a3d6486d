import asyncio
import time
from collections import deque
from typing import Any, Dict, List, Optional, Tuple

from config.default import Config
from scoring.config_manager import ScoringConfigManager, config_hash
from scoring.confidence import ConfidenceCalculator
from scoring.models import (SCORED_FACTORS, FactorInput, MissingDataStrategy, RiskFactor, RiskFactorType,
                            RiskLevel, RiskThresholds, ScoringBreakdown, ScoringConfig, ScoringInput,
                            ScoringMetadata, ScoringResult)
from scoring.normalizer import ScoreNormalizer
from utils.logger import setup_logger

logger = setup_logger('scoring_calculator')

NEUTRAL_SCORE = 50.0
MISSING_FACTOR_CONFIDENCE = 0.3

AI_CATEGORY_SCORES = {
    'legitimate': 10,
    'financial': 80,
    'phishing': 90,
    'ecommerce': 70,
    'social_engineering': 85,
}

FACTOR_LABELS = {
    RiskFactorType.REPUTATION: 'Reputation',
    RiskFactorType.DOMAIN_AGE: 'Domain age',
    RiskFactorType.SSL_CERTIFICATE: 'SSL certificate',
    RiskFactorType.AI_ANALYSIS: 'AI',
}


def classify_risk(score: float, thresholds: RiskThresholds) -> str:
    if score <= thresholds.low_risk_max:
        return RiskLevel.LOW.value
    if score >= thresholds.high_risk_min:
        return RiskLevel.HIGH.value
    return RiskLevel.MEDIUM.value


def raw_score(factor: RiskFactorType, analysis: Any) -> float:
    if factor == RiskFactorType.AI_ANALYSIS:
        if getattr(analysis, 'risk_score', None) is not None:
            return float(analysis.risk_score)
        return float(AI_CATEGORY_SCORES.get(getattr(analysis, 'scam_category', None), NEUTRAL_SCORE))
    return float(analysis.score)


def describe(factor: RiskFactorType, analysis: Any) -> str:
    if factor == RiskFactorType.REPUTATION:
        if analysis.is_clean:
            return 'Clean reputation according to Google Safe Browsing'
        threat_types = sorted({match.threat_type for match in analysis.threat_matches})
        count = len(analysis.threat_matches)
        return f"{count} threat{'s' if count != 1 else ''} detected: {', '.join(threat_types)}"

    if factor == RiskFactorType.DOMAIN_AGE:
        age = analysis.age_in_days
        if age is None:
            return 'Domain age could not be determined'
        if age < 30:
            return f'Very new domain ({age} days old)'
        if age < 90:
            return f'New domain ({age} days old)'
        if age < 365:
            return f'Recent domain ({age} days old)'
        return f'Established domain ({round(age / 365, 1)} years old)'

    if factor == RiskFactorType.SSL_CERTIFICATE:
        validation = analysis.validation
        if validation.is_expired:
            return 'Expired SSL certificate'
        if validation.is_self_signed:
            return 'Self-signed SSL certificate'
        if analysis.security.has_weak_crypto:
            return 'SSL certificate uses weak cryptography'
        if not validation.domain_match:
            return 'SSL certificate does not match the domain'
        return f'Valid {analysis.certificate_type} certificate from {analysis.certificate_authority.name}'

    if factor == RiskFactorType.AI_ANALYSIS:
        return f'AI analysis: {analysis.scam_category} category (score: {round(raw_score(factor, analysis))})'

    return f'{factor.value} analysis'


def apply_weights(config: ScoringConfig, available: List[RiskFactorType]) -> Dict[RiskFactorType, float]:
    """Weight actually applied to each scored factor under the missing-data strategy."""
    strategy = config.missing_data_strategy
    if strategy == MissingDataStrategy.DEFAULT.value:
        return {factor: config.weight(factor) for factor in SCORED_FACTORS}

    applied = {factor: 0.0 for factor in SCORED_FACTORS}
    if not available:
        return applied

    if strategy == MissingDataStrategy.PENALTY.value:
        for factor in available:
            applied[factor] = config.weight(factor)
        return applied

    available_weight = sum(config.weight(factor) for factor in available)
    for factor in available:
        if available_weight > 0:
            applied[factor] = config.weight(factor) / available_weight
        else:
            applied[factor] = 1.0 / len(available)
    return applied


class ScoringCalculator:
    """Aggregates per-source analyses into a single weighted risk score."""

    def __init__(self, config_manager: ScoringConfigManager = None, history_size: int = None):
        self.config_manager = config_manager or ScoringConfigManager()
        self._history = deque(maxlen=history_size or Config.SCORING_HISTORY_SIZE)

    @property
    def config(self) -> ScoringConfig:
        return self.config_manager.config

    async def calculate_score(self, scoring_input: ScoringInput, experiment_id: str = None,
                              user_id: str = None) -> ScoringResult:
        config, active_experiment = self.config_manager.select_config(experiment_id, user_id)
        loop = asyncio.get_running_loop()
        result = await loop.run_in_executor(None, self.compute, scoring_input, config, active_experiment)
        self._history.append(result)
        logger.info(
            f"Scored {scoring_input.url}: {result.final_score} ({result.risk_level}), "
            f"confidence={result.confidence}, missing={result.metadata.missing_factors}"
        )
        return result

    def compute(self, scoring_input: ScoringInput, config: ScoringConfig,
                experiment_id: Optional[str] = None) -> ScoringResult:
        started = time.perf_counter()
        normalizer = ScoreNormalizer(config.normalization)
        confidence_calculator = ConfidenceCalculator(config.confidence_adjustment)

        inputs: Dict[RiskFactorType, FactorInput] = {
            factor: scoring_input.for_factor(factor)
            for factor in SCORED_FACTORS
            if scoring_input.for_factor(factor) is not None
        }
        available = [factor for factor in SCORED_FACTORS if factor in inputs]
        missing = [factor for factor in SCORED_FACTORS if factor not in inputs]
        applied = apply_weights(config, available)
        use_defaults = config.missing_data_strategy == MissingDataStrategy.DEFAULT.value

        raw_scores, normalized_scores, weighted_scores = {}, {}, {}
        risk_factors: List[RiskFactor] = []
        weighted_confidences: List[Tuple[float, float]] = []

        for factor in SCORED_FACTORS:
            factor_input = inputs.get(factor)
            if factor_input is not None:
                raw = raw_score(factor, factor_input.analysis)
                normalized = normalizer.normalize_factor(factor, raw)
                confidence = confidence_calculator.factor_confidence(
                    factor,
                    float(getattr(factor_input.analysis, 'confidence', MISSING_FACTOR_CONFIDENCE)),
                    factor_input.processing_time_ms,
                    factor_input.from_cache,
                )
                weighted_confidences.append((confidence, applied[factor]))
                risk_factors.append(RiskFactor(
                    type=factor.value,
                    score=normalized,
                    confidence=confidence,
                    weight=config.weight(factor),
                    description=describe(factor, factor_input.analysis),
                    available=True,
                    processing_time_ms=factor_input.processing_time_ms,
                    from_cache=factor_input.from_cache,
                ))
            else:
                raw = normalized = config.missing_data_default_score
                risk_factors.append(RiskFactor(
                    type=factor.value,
                    score=normalized,
                    confidence=MISSING_FACTOR_CONFIDENCE,
                    weight=config.weight(factor),
                    description=f'{FACTOR_LABELS[factor]} analysis not available',
                    available=False,
                ))
                if not use_defaults:
                    continue

            raw_scores[factor.value] = raw
            normalized_scores[factor.value] = normalized
            weighted_scores[factor.value] = round(normalized * applied[factor], 4)

        if available:
            final_score = min(max(sum(weighted_scores.values()), 0.0), 100.0)
        else:
            final_score = NEUTRAL_SCORE
        final_score = round(final_score, 2)

        confidence = confidence_calculator.overall_confidence(weighted_confidences, len(missing))
        contributing = [factor for factor in SCORED_FACTORS if factor.value in weighted_scores]

        return ScoringResult(
            url=scoring_input.url,
            final_score=final_score,
            risk_level=classify_risk(final_score, config.thresholds),
            confidence=confidence,
            risk_factors=risk_factors,
            metadata=ScoringMetadata(
                total_processing_time_ms=round((time.perf_counter() - started) * 1000, 2),
                config_used=config.to_dict(),
                config_hash=config_hash(config),
                missing_factors=[factor.value for factor in missing],
                redistributed_weights={factor.value: round(weight, 4) for factor, weight in applied.items()},
                normalization_method=config.normalization.method,
                experiment_id=experiment_id,
            ),
            breakdown=ScoringBreakdown(
                weighted_scores=weighted_scores,
                normalized_scores=normalized_scores,
                raw_scores=raw_scores,
                total_weight=round(sum(applied[factor] for factor in contributing), 4),
            ),
        )

    def get_history(self) -> List[ScoringResult]:
        return list(self._history)

    def clear_history(self) -> None:
        self._history.clear()

    def get_statistics(self) -> Dict[str, Any]:
        history = list(self._history)
        if not history:
            return {
                'total_scores': 0,
                'average_score': 0.0,
                'average_processing_time_ms': 0.0,
                'risk_level_distribution': {level.value: 0 for level in RiskLevel},
                'factor_availability': {factor.value: 0.0 for factor in SCORED_FACTORS},
                'confidence_distribution': {'high': 0, 'medium': 0, 'low': 0},
            }

        total = len(history)
        availability = {factor.value: 0 for factor in SCORED_FACTORS}
        confidence_distribution = {'high': 0, 'medium': 0, 'low': 0}
        risk_levels = {level.value: 0 for level in RiskLevel}
        for result in history:
            risk_levels[result.risk_level] += 1
            for factor in result.risk_factors:
                if factor.available:
                    availability[factor.type] += 1
            if result.confidence >= 0.8:
                confidence_distribution['high'] += 1
            elif result.confidence >= 0.6:
                confidence_distribution['medium'] += 1
            else:
                confidence_distribution['low'] += 1

        return {
            'total_scores': total,
            'average_score': round(sum(r.final_score for r in history) / total, 2),
            'average_processing_time_ms': round(
                sum(r.metadata.total_processing_time_ms for r in history) / total, 2),
            'risk_level_distribution': risk_levels,
            'factor_availability': {key: round(count / total * 100, 1) for key, count in availability.items()},
            'confidence_distribution': confidence_distribution,
        }
