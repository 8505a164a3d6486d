import math
from typing import Dict, Tuple

from scoring.models import NormalizationMethod, NormalizationSettings, RiskFactorType

# Native score range of each analysis
FACTOR_RANGES: Dict[RiskFactorType, Tuple[float, float]] = {
    RiskFactorType.REPUTATION: (0.0, 100.0),
    RiskFactorType.DOMAIN_AGE: (0.0, 1.0),
    RiskFactorType.SSL_CERTIFICATE: (0.0, 100.0),
    RiskFactorType.AI_ANALYSIS: (0.0, 100.0),
    RiskFactorType.TECHNICAL_INDICATORS: (0.0, 100.0),
}


class ScoreNormalizer:
    """Maps native factor scores onto the common 0-100 risk scale."""

    def __init__(self, settings: NormalizationSettings = None):
        self.settings = settings or NormalizationSettings()

    @staticmethod
    def linear(value: float, low: float, high: float) -> float:
        if high == low:
            return 50.0
        clamped = min(max(value, low), high)
        return (clamped - low) / (high - low) * 100

    @staticmethod
    def logarithmic(scaled: float) -> float:
        return math.log1p(scaled / 10) / math.log(11) * 100

    @staticmethod
    def sigmoid(scaled: float, steepness: float, midpoint: float) -> float:
        return 100 / (1 + math.exp(-steepness * (scaled - midpoint)))

    def normalize(self, value: float, low: float = 0.0, high: float = 100.0) -> float:
        scaled = self.linear(value, low, high)
        method = self.settings.method
        if method == NormalizationMethod.LOGARITHMIC.value:
            scaled = self.logarithmic(scaled)
        elif method == NormalizationMethod.SIGMOID.value:
            scaled = self.sigmoid(scaled, self.settings.sigmoid_steepness, self.settings.sigmoid_midpoint)
        return round(min(max(scaled, 0.0), 100.0), 2)

    def normalize_factor(self, factor: RiskFactorType, value: float) -> float:
        low, high = FACTOR_RANGES[factor]
        return self.normalize(value, low, high)
