from typing import Iterable, Tuple

from scoring.models import ConfidenceAdjustment, RiskFactorType

MIN_FACTOR_CONFIDENCE = 0.1

# (optimal, maximum) expected processing time in ms
EXPECTED_PROCESSING_MS = {
    RiskFactorType.REPUTATION: (1000, 5000),
    RiskFactorType.DOMAIN_AGE: (2000, 10000),
    RiskFactorType.SSL_CERTIFICATE: (3000, 15000),
    RiskFactorType.AI_ANALYSIS: (5000, 30000),
}


class ConfidenceCalculator:
    def __init__(self, adjustment: ConfidenceAdjustment = None):
        self.adjustment = adjustment or ConfidenceAdjustment()

    @staticmethod
    def factor_confidence(factor: RiskFactorType, base_confidence: float,
                          processing_time_ms: float = 0.0, from_cache: bool = False) -> float:
        """Confidence of one factor, nudged by how long its analysis took.

        Fast answers gain a little, answers slower than the expected maximum
        lose up to 0.15. Cached results are taken as-is.
        """
        confidence = base_confidence
        expected = EXPECTED_PROCESSING_MS.get(factor)
        if expected and not from_cache:
            optimal, maximum = expected
            if processing_time_ms <= optimal:
                confidence += 0.02
            elif processing_time_ms > maximum:
                confidence -= 0.05 * min(processing_time_ms / maximum, 3)
        return round(min(max(confidence, MIN_FACTOR_CONFIDENCE), 1.0), 4)

    def overall_confidence(self, weighted_confidences: Iterable[Tuple[float, float]],
                           missing_count: int) -> float:
        """Weighted mean of ``(confidence, weight)`` pairs, penalised per missing factor."""
        pairs = list(weighted_confidences)
        floor = self.adjustment.minimum_confidence
        if not pairs:
            return round(floor, 4)

        total_weight = sum(weight for _, weight in pairs)
        if total_weight > 0:
            mean = sum(confidence * weight for confidence, weight in pairs) / total_weight
        else:
            mean = sum(confidence for confidence, _ in pairs) / len(pairs)

        confidence = mean - self.adjustment.missing_factor_penalty * missing_count
        return round(min(max(confidence, floor), 1.0), 4)
