import json
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple, Union

from scoring.models import (SCORED_FACTORS, MissingDataStrategy, NormalizationMethod, ScoringConfig)
from utils.logger import setup_logger

logger = setup_logger('scoring_config')

WEIGHT_TOLERANCE = 0.01
MIN_WEIGHT, MAX_WEIGHT = 0.0, 1.0
HIGH_WEIGHT_WARNING, LOW_WEIGHT_WARNING = 0.6, 0.05
MIN_SCORE, MAX_SCORE = 0.0, 100.0
MIN_THRESHOLD_SEPARATION = 5.0
CONFIG_HISTORY_SIZE = 10


class ScoringConfigError(ValueError):
    def __init__(self, errors: List[str]):
        super().__init__('; '.join(errors))
        self.errors = errors


@dataclass(frozen=True)
class ValidationReport:
    is_valid: bool
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class ConfigChange:
    timestamp: datetime
    config_hash: str
    reason: str


@dataclass(frozen=True)
class ScoringExperiment:
    id: str
    name: str
    config: ScoringConfig
    traffic_allocation: float
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None

    def is_active(self, now: datetime) -> bool:
        if self.start_date and now < self.start_date:
            return False
        if self.end_date and now > self.end_date:
            return False
        return True


def fnv1a_hash(text: str) -> str:
    value = 0x811c9dc5
    for byte in text.encode('utf-8'):
        value ^= byte
        value = (value * 0x01000193) & 0xffffffff
    return f'{value:08x}'


def config_hash(config: ScoringConfig) -> str:
    return fnv1a_hash(json.dumps(config.to_dict(), sort_keys=True))


def validate_config(config: ScoringConfig) -> ValidationReport:
    errors, warnings = [], []

    # weights
    missing = [factor.value for factor in SCORED_FACTORS if factor.value not in config.weights]
    if missing:
        errors.append(f"Missing weights for: {', '.join(missing)}")
    unexpected = sorted(set(config.weights) - {factor.value for factor in SCORED_FACTORS})
    if unexpected:
        errors.append(f"Unknown weights: {', '.join(unexpected)}")
    weights = [float(config.weights.get(factor.value, 0.0)) for factor in SCORED_FACTORS]
    for factor, weight in zip(SCORED_FACTORS, weights):
        if not MIN_WEIGHT <= weight <= MAX_WEIGHT:
            errors.append(f'Weight for {factor.value} must be between {MIN_WEIGHT} and {MAX_WEIGHT}')
    total = sum(weights)
    if abs(total - 1.0) > WEIGHT_TOLERANCE:
        errors.append(f'Total weights ({total:.3f}) must equal 1.0 ± {WEIGHT_TOLERANCE}')
    if weights and max(weights) > HIGH_WEIGHT_WARNING:
        warnings.append(f'Very high weight detected ({max(weights):.2f}) - may cause scoring bias')
    if weights and min(weights) < LOW_WEIGHT_WARNING:
        warnings.append(f'Very low weight detected ({min(weights):.2f}) - factor may be ignored')

    # thresholds
    thresholds = config.thresholds
    for name in ('low_risk_max', 'medium_risk_max', 'high_risk_min'):
        value = getattr(thresholds, name)
        if not MIN_SCORE <= value <= MAX_SCORE:
            errors.append(f'{name} must be between {MIN_SCORE:.0f} and {MAX_SCORE:.0f}')
    if not thresholds.low_risk_max < thresholds.medium_risk_max < thresholds.high_risk_min:
        errors.append('Thresholds must satisfy low_risk_max < medium_risk_max < high_risk_min')
    else:
        if thresholds.medium_risk_max - thresholds.low_risk_max < MIN_THRESHOLD_SEPARATION:
            errors.append(f'low_risk_max and medium_risk_max must be at least '
                          f'{MIN_THRESHOLD_SEPARATION:.0f} points apart')
        if thresholds.high_risk_min - thresholds.medium_risk_max < MIN_THRESHOLD_SEPARATION:
            errors.append(f'medium_risk_max and high_risk_min must be at least '
                          f'{MIN_THRESHOLD_SEPARATION:.0f} points apart')

    # missing data handling
    strategies = [strategy.value for strategy in MissingDataStrategy]
    if config.missing_data_strategy not in strategies:
        errors.append(f"Missing data strategy must be one of: {', '.join(strategies)}")
    if not MIN_SCORE <= config.missing_data_default_score <= MAX_SCORE:
        errors.append('Default score for missing data must be between 0 and 100')

    adjustment = config.confidence_adjustment
    if not 0 <= adjustment.missing_factor_penalty <= 1:
        errors.append('Missing factor penalty must be between 0 and 1')
    if not 0 <= adjustment.minimum_confidence <= 1:
        errors.append('Minimum confidence must be between 0 and 1')
    if adjustment.missing_factor_penalty > 0.3:
        warnings.append('High missing factor penalty may result in very low confidence scores')
    if adjustment.minimum_confidence < 0.3:
        warnings.append('Low minimum confidence threshold may indicate unreliable scoring')

    # normalization
    methods = [method.value for method in NormalizationMethod]
    normalization = config.normalization
    if normalization.method not in methods:
        errors.append(f"Normalization method must be one of: {', '.join(methods)}")
    if normalization.method == NormalizationMethod.SIGMOID.value:
        if not 0 < normalization.sigmoid_steepness <= 10:
            errors.append('Sigmoid steepness parameter must be between 0 and 10')
        if not MIN_SCORE <= normalization.sigmoid_midpoint <= MAX_SCORE:
            errors.append('Sigmoid midpoint parameter must be between 0 and 100')

    return ValidationReport(is_valid=not errors, errors=errors, warnings=warnings)


class ScoringConfigManager:
    """Holds the active scoring configuration, its history and A/B experiments."""

    def __init__(self, config: ScoringConfig = None):
        config = config or ScoringConfig.default()
        report = validate_config(config)
        if not report.is_valid:
            raise ScoringConfigError(report.errors)
        self._config = config
        self._history = deque(maxlen=CONFIG_HISTORY_SIZE)
        self._experiments: Dict[str, ScoringExperiment] = {}
        self._record_change(config, 'initial configuration')

    @property
    def config(self) -> ScoringConfig:
        return self._config

    def validate(self, config: ScoringConfig) -> ValidationReport:
        return validate_config(config)

    def update_config(self, update: Union[ScoringConfig, Dict[str, Any]],
                      reason: str = 'configuration update') -> ValidationReport:
        """Apply a full config or a partial override dict. Invalid configs are rejected."""
        try:
            candidate = update if isinstance(update, ScoringConfig) else self._config.merged(update)
            report = validate_config(candidate)
        except (TypeError, ValueError) as e:
            return ValidationReport(is_valid=False, errors=[f'Malformed configuration: {str(e)}'])

        if not report.is_valid:
            logger.warning(f"Rejected scoring configuration: {report.errors}")
            return report
        if report.warnings:
            logger.warning(f"Scoring configuration warnings: {report.warnings}")

        self._config = candidate
        self._record_change(candidate, reason)
        logger.info(f"Scoring configuration updated ({config_hash(candidate)}): {reason}")
        return report

    def reset(self) -> None:
        self._config = ScoringConfig.default()
        self._record_change(self._config, 'reset to defaults')

    def get_history(self) -> List[ConfigChange]:
        return list(self._history)

    def _record_change(self, config: ScoringConfig, reason: str) -> None:
        self._history.append(ConfigChange(datetime.now(timezone.utc), config_hash(config), reason))

    # experiments

    def register_experiment(self, experiment: ScoringExperiment) -> ValidationReport:
        report = validate_config(experiment.config)
        if not 0 <= experiment.traffic_allocation <= 1:
            report = ValidationReport(False, report.errors + ['traffic_allocation must be between 0 and 1'],
                                      report.warnings)
        if report.is_valid:
            self._experiments[experiment.id] = experiment
            logger.info(f"Registered scoring experiment {experiment.id} "
                        f"({experiment.traffic_allocation:.0%} of traffic)")
        return report

    def remove_experiment(self, experiment_id: str) -> bool:
        return self._experiments.pop(experiment_id, None) is not None

    def get_experiment_config(self, experiment_id: str, now: datetime = None) -> Optional[ScoringConfig]:
        experiment = self._experiments.get(experiment_id)
        if experiment is None:
            return None
        if not experiment.is_active(now or datetime.now(timezone.utc)):
            logger.warning(f"Experiment {experiment_id} is not active")
            return None
        return experiment.config

    @staticmethod
    def in_experiment(user_id: str, experiment: ScoringExperiment) -> bool:
        if experiment.traffic_allocation <= 0:
            return False
        if experiment.traffic_allocation >= 1:
            return True
        bucket = int(fnv1a_hash(user_id + experiment.id), 16) / 0xffffffff
        return bucket < experiment.traffic_allocation

    def select_config(self, experiment_id: str = None,
                      user_id: str = None) -> Tuple[ScoringConfig, Optional[str]]:
        """Pick the configuration for a request: explicit experiment, user bucket, or the active config."""
        if experiment_id:
            config = self.get_experiment_config(experiment_id)
            if config is not None:
                return config, experiment_id

        if user_id:
            now = datetime.now(timezone.utc)
            for experiment in self._experiments.values():
                if experiment.is_active(now) and self.in_experiment(user_id, experiment):
                    return experiment.config, experiment.id

        return self._config, None
