from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from config.default import Config


class RiskFactorType(str, Enum):
    REPUTATION = 'reputation'
    DOMAIN_AGE = 'domain_age'
    SSL_CERTIFICATE = 'ssl_certificate'
    AI_ANALYSIS = 'ai_analysis'
    TECHNICAL_INDICATORS = 'technical_indicators'


# Scored factors, in the order they appear in a result
SCORED_FACTORS = (
    RiskFactorType.REPUTATION,
    RiskFactorType.DOMAIN_AGE,
    RiskFactorType.SSL_CERTIFICATE,
    RiskFactorType.AI_ANALYSIS,
)


# Top-level keys accepted by ScoringConfig.merged
CONFIG_SECTIONS = frozenset({
    'weights', 'thresholds', 'missing_data_strategy', 'missing_data_default_score',
    'confidence_adjustment', 'normalization',
})


class RiskLevel(str, Enum):
    LOW = 'low'
    MEDIUM = 'medium'
    HIGH = 'high'


class MissingDataStrategy(str, Enum):
    REDISTRIBUTE = 'redistribute'
    PENALTY = 'penalty'
    DEFAULT = 'default'


class NormalizationMethod(str, Enum):
    LINEAR = 'linear'
    LOGARITHMIC = 'logarithmic'
    SIGMOID = 'sigmoid'


@dataclass(frozen=True)
class RiskThresholds:
    low_risk_max: float = 30.0
    medium_risk_max: float = 65.0
    high_risk_min: float = 70.0


@dataclass(frozen=True)
class ConfidenceAdjustment:
    missing_factor_penalty: float = 0.1
    minimum_confidence: float = 0.5


@dataclass(frozen=True)
class NormalizationSettings:
    method: str = NormalizationMethod.LINEAR.value
    sigmoid_steepness: float = 0.1
    sigmoid_midpoint: float = 50.0


@dataclass(frozen=True)
class ScoringConfig:
    weights: Dict[str, float]
    thresholds: RiskThresholds = field(default_factory=RiskThresholds)
    missing_data_strategy: str = MissingDataStrategy.REDISTRIBUTE.value
    missing_data_default_score: float = 50.0
    confidence_adjustment: ConfidenceAdjustment = field(default_factory=ConfidenceAdjustment)
    normalization: NormalizationSettings = field(default_factory=NormalizationSettings)

    @classmethod
    def default(cls) -> 'ScoringConfig':
        return cls(
            weights=dict(Config.RISK_WEIGHTS),
            thresholds=RiskThresholds(**Config.RISK_THRESHOLDS),
            missing_data_strategy=Config.MISSING_DATA_STRATEGY,
            missing_data_default_score=Config.MISSING_DATA_DEFAULT_SCORE,
            confidence_adjustment=ConfidenceAdjustment(
                missing_factor_penalty=Config.MISSING_FACTOR_PENALTY,
                minimum_confidence=Config.MINIMUM_CONFIDENCE,
            ),
            normalization=NormalizationSettings(method=Config.NORMALIZATION_METHOD),
        )

    def weight(self, factor: RiskFactorType) -> float:
        return float(self.weights.get(factor.value, 0.0))

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def merged(self, overrides: Dict[str, Any]) -> 'ScoringConfig':
        """Return a copy with ``overrides`` (a partial ``to_dict`` shape) applied."""
        overrides = overrides or {}
        unknown = sorted(set(overrides) - CONFIG_SECTIONS)
        if unknown:
            raise ValueError(f"Unknown configuration keys: {', '.join(unknown)}")
        return replace(
            self,
            weights={**self.weights, **overrides.get('weights', {})},
            thresholds=replace(self.thresholds, **overrides.get('thresholds', {})),
            missing_data_strategy=overrides.get('missing_data_strategy', self.missing_data_strategy),
            missing_data_default_score=overrides.get('missing_data_default_score',
                                                     self.missing_data_default_score),
            confidence_adjustment=replace(self.confidence_adjustment,
                                          **overrides.get('confidence_adjustment', {})),
            normalization=replace(self.normalization, **overrides.get('normalization', {})),
        )


@dataclass(frozen=True)
class FactorInput:
    analysis: Any
    processing_time_ms: float = 0.0
    from_cache: bool = False


@dataclass(frozen=True)
class ScoringInput:
    url: str
    reputation: Optional[FactorInput] = None
    whois: Optional[FactorInput] = None
    ssl: Optional[FactorInput] = None
    ai: Optional[FactorInput] = None

    def for_factor(self, factor: RiskFactorType) -> Optional[FactorInput]:
        return {
            RiskFactorType.REPUTATION: self.reputation,
            RiskFactorType.DOMAIN_AGE: self.whois,
            RiskFactorType.SSL_CERTIFICATE: self.ssl,
            RiskFactorType.AI_ANALYSIS: self.ai,
        }.get(factor)


@dataclass(frozen=True)
class RiskFactor:
    type: str
    score: float
    confidence: float
    weight: float
    description: str
    available: bool
    processing_time_ms: float = 0.0
    from_cache: bool = False


@dataclass(frozen=True)
class ScoringMetadata:
    total_processing_time_ms: float
    config_used: Dict[str, Any]
    config_hash: str
    missing_factors: List[str]
    redistributed_weights: Dict[str, float]
    normalization_method: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    experiment_id: Optional[str] = None


@dataclass(frozen=True)
class ScoringBreakdown:
    weighted_scores: Dict[str, float]
    normalized_scores: Dict[str, float]
    raw_scores: Dict[str, float]
    total_weight: float


@dataclass(frozen=True)
class ScoringResult:
    url: str
    final_score: float
    risk_level: str
    confidence: float
    risk_factors: List[RiskFactor]
    metadata: ScoringMetadata
    breakdown: ScoringBreakdown
