import asyncio
import itertools
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest

from scoring.calculator import ScoringCalculator, apply_weights, classify_risk, raw_score
from scoring.config_manager import (ScoringConfigError, ScoringConfigManager, ScoringExperiment, config_hash,
                                    validate_config)
from scoring.confidence import ConfidenceCalculator
from scoring.models import (SCORED_FACTORS, ConfidenceAdjustment, FactorInput, NormalizationSettings, RiskFactorType,
                            RiskThresholds, ScoringConfig, ScoringInput)
from scoring.normalizer import ScoreNormalizer

WEIGHTS = {'reputation': 0.40, 'domain_age': 0.25, 'ssl_certificate': 0.20, 'ai_analysis': 0.15}


def base_config(**changes):
    config = ScoringConfig(weights=dict(WEIGHTS))
    return config.merged(changes) if changes else config


def clean_reputation():
    return SimpleNamespace(score=0, confidence=0.95, is_clean=True, threat_matches=[])


def young_domain():
    return SimpleNamespace(score=0.8, confidence=0.9, age_in_days=10)


def calculator(config=None):
    return ScoringCalculator(ScoringConfigManager(config or base_config()), history_size=50)


def new_domain_input():
    return ScoringInput(
        url='https://new-shop.example/',
        reputation=FactorInput(clean_reputation(), processing_time_ms=200),
        whois=FactorInput(young_domain(), processing_time_ms=800),
    )


# configuration

def test_default_config_is_valid():
    report = validate_config(base_config())
    assert report.is_valid == True
    assert report.errors == []


def test_weights_must_sum_to_one():
    report = validate_config(base_config(weights={'reputation': 0.6}))
    assert report.is_valid == False
    assert any('Total weights' in error for error in report.errors)


def test_thresholds_need_order_and_separation():
    report = validate_config(base_config(thresholds={'medium_risk_max': 69.0}))
    assert any('at least 5 points apart' in error for error in report.errors)

    report = validate_config(base_config(thresholds={'low_risk_max': 80.0}))
    assert any('low_risk_max < medium_risk_max' in error for error in report.errors)


def test_unknown_strategy_and_method():
    report = validate_config(base_config(missing_data_strategy='ignore', normalization={'method': 'cubic'}))
    assert len(report.errors) == 2


def test_warnings_do_not_invalidate():
    config = base_config(weights={'reputation': 0.65, 'domain_age': 0.2, 'ssl_certificate': 0.12,
                                  'ai_analysis': 0.03})
    report = validate_config(config)
    assert report.is_valid == True
    assert len(report.warnings) == 2


def test_manager_rejects_invalid_initial_config():
    with pytest.raises(ScoringConfigError):
        ScoringConfigManager(base_config(weights={'reputation': 0.9}))


def test_update_config_keeps_old_config_on_failure():
    manager = ScoringConfigManager(base_config())
    before = manager.config

    report = manager.update_config({'weights': {'reputation': 0.9}})
    assert report.is_valid == False
    assert manager.config == before

    report = manager.update_config({'thresholds': {'nonsense': 1}})
    assert report.is_valid == False
    assert report.errors[0].startswith('Malformed configuration')

    report = manager.update_config({'thresholds': {'low_risk_max': 25.0}}, reason='tighten low band')
    assert report.is_valid == True
    assert manager.config.thresholds.low_risk_max == 25.0
    history = manager.get_history()
    assert [change.reason for change in history] == ['initial configuration', 'tighten low band']
    assert history[-1].config_hash == config_hash(manager.config)


def test_update_config_rejects_unknown_keys():
    manager = ScoringConfigManager(base_config())
    before = manager.config

    report = manager.update_config({'missing_strategy': 'penalty'})
    assert report.is_valid == False
    assert 'missing_strategy' in report.errors[0]
    assert manager.config == before

    report = manager.update_config({'weights': {'reputaton': 0.4}})
    assert report.is_valid == False
    assert 'Unknown weights: reputaton' in report.errors
    assert manager.config == before
    assert len(manager.get_history()) == 1


def test_config_hash_is_stable():
    assert config_hash(base_config()) == config_hash(base_config())
    assert config_hash(base_config()) != config_hash(base_config(missing_data_strategy='penalty'))


def test_experiments():
    manager = ScoringConfigManager(base_config())
    experiment_config = base_config(missing_data_strategy='penalty')
    everyone = ScoringExperiment('strict', 'Penalty strategy', experiment_config, traffic_allocation=1.0)
    assert manager.register_experiment(everyone).is_valid == True

    assert manager.select_config('strict') == (experiment_config, 'strict')
    assert manager.select_config(user_id='user-1') == (experiment_config, 'strict')
    assert manager.select_config() == (manager.config, None)

    ended = ScoringExperiment('old', 'Old', experiment_config, traffic_allocation=1.0,
                              end_date=datetime.now(timezone.utc) - timedelta(days=1))
    manager.register_experiment(ended)
    assert manager.get_experiment_config('old') is None

    bad = ScoringExperiment('bad', 'Bad', experiment_config, traffic_allocation=1.5)
    assert manager.register_experiment(bad).is_valid == False
    assert manager.remove_experiment('strict') == True
    assert manager.remove_experiment('strict') == False


def test_experiment_bucketing_is_deterministic():
    experiment = ScoringExperiment('half', 'Half', base_config(), traffic_allocation=0.5)
    decisions = [ScoringConfigManager.in_experiment(f'user-{i}', experiment) for i in range(200)]
    assert decisions == [ScoringConfigManager.in_experiment(f'user-{i}', experiment) for i in range(200)]
    assert 0 < sum(decisions) < 200


# normalization and confidence

def test_normalization_methods():
    assert ScoreNormalizer().normalize(0.5, 0, 1) == 50.0
    assert ScoreNormalizer().normalize(150) == 100.0
    assert ScoreNormalizer().normalize(10, 5, 5) == 50.0
    assert ScoreNormalizer(NormalizationSettings(method='logarithmic')).normalize(50) == pytest.approx(74.72, abs=0.01)
    assert ScoreNormalizer(NormalizationSettings(method='sigmoid')).normalize(50) == 50.0
    assert ScoreNormalizer().normalize_factor(RiskFactorType.DOMAIN_AGE, 0.8) == 80.0


def test_factor_confidence_tracks_processing_time():
    fast = ConfidenceCalculator.factor_confidence(RiskFactorType.REPUTATION, 0.9, 500)
    slow = ConfidenceCalculator.factor_confidence(RiskFactorType.REPUTATION, 0.9, 6000)
    cached = ConfidenceCalculator.factor_confidence(RiskFactorType.REPUTATION, 0.9, 6000, from_cache=True)
    assert fast == pytest.approx(0.92)
    assert slow == pytest.approx(0.84)
    assert cached == 0.9


def test_overall_confidence_floor():
    confidence = ConfidenceCalculator(ConfidenceAdjustment(missing_factor_penalty=0.1, minimum_confidence=0.3))
    assert confidence.overall_confidence([(0.9, 0.5), (0.5, 0.5)], missing_count=0) == pytest.approx(0.7)
    assert confidence.overall_confidence([(0.9, 0.5), (0.5, 0.5)], missing_count=2) == pytest.approx(0.5)
    assert confidence.overall_confidence([(0.4, 1.0)], missing_count=3) == 0.3
    assert confidence.overall_confidence([], missing_count=4) == 0.3


# calculator

def test_classify_risk_bands():
    thresholds = RiskThresholds()
    assert classify_risk(30, thresholds) == 'low'
    assert classify_risk(30.01, thresholds) == 'medium'
    assert classify_risk(69.99, thresholds) == 'medium'
    assert classify_risk(70, thresholds) == 'high'


def test_redistributed_weights_sum_to_one():
    for count in range(1, len(SCORED_FACTORS) + 1):
        for available in itertools.combinations(SCORED_FACTORS, count):
            applied = apply_weights(base_config(), list(available))
            assert sum(applied.values()) == pytest.approx(1.0, abs=0.01)
            assert all(applied[factor] == 0.0 for factor in SCORED_FACTORS if factor not in available)


def test_new_domain_with_clean_reputation_is_medium():
    result = asyncio.run(calculator().calculate_score(new_domain_input()))

    assert result.final_score == pytest.approx(30.77)
    assert result.risk_level == 'medium'
    assert result.metadata.missing_factors == ['ssl_certificate', 'ai_analysis']
    assert result.breakdown.total_weight == pytest.approx(1.0)
    assert set(result.breakdown.weighted_scores) == {'reputation', 'domain_age'}
    assert [factor.available for factor in result.risk_factors] == [True, True, False, False]
    assert result.risk_factors[1].description == 'Very new domain (10 days old)'
    assert result.risk_factors[2].description == 'SSL certificate analysis not available'
    assert 0 <= result.confidence <= 1


def test_no_factors_is_neutral():
    result = calculator().compute(ScoringInput(url='https://example.com/'), base_config())
    assert result.final_score == 50.0
    assert result.risk_level == 'medium'
    assert result.confidence == 0.5
    assert result.breakdown.total_weight == 0
    assert all(not factor.available for factor in result.risk_factors)


def test_penalty_strategy_keeps_original_weights():
    config = base_config(missing_data_strategy='penalty')
    scoring_input = ScoringInput(url='https://new-shop.example/', whois=FactorInput(young_domain()))
    result = calculator(config).compute(scoring_input, config)
    assert result.final_score == 20.0
    assert result.risk_level == 'low'


def test_default_strategy_scores_missing_factors():
    config = base_config(missing_data_strategy='default')
    scoring_input = ScoringInput(url='https://new-shop.example/', whois=FactorInput(young_domain()))
    result = calculator(config).compute(scoring_input, config)
    assert result.final_score == 57.5
    assert result.breakdown.raw_scores['reputation'] == 50.0
    assert len(result.breakdown.weighted_scores) == 4


def test_ai_category_fallback():
    analysis = SimpleNamespace(risk_score=None, scam_category='phishing', confidence=0.8)
    assert raw_score(RiskFactorType.AI_ANALYSIS, analysis) == 90.0
    scored = SimpleNamespace(risk_score=12, scam_category='phishing', confidence=0.8)
    assert raw_score(RiskFactorType.AI_ANALYSIS, scored) == 12.0


def test_experiment_id_is_recorded():
    manager = ScoringConfigManager(base_config())
    manager.register_experiment(ScoringExperiment('exp', 'Exp', base_config(), traffic_allocation=1.0))
    result = asyncio.run(ScoringCalculator(manager).calculate_score(new_domain_input(), experiment_id='exp'))
    assert result.metadata.experiment_id == 'exp'


def test_statistics_and_history():
    scoring = calculator()
    assert scoring.get_statistics()['total_scores'] == 0

    asyncio.run(scoring.calculate_score(new_domain_input()))
    asyncio.run(scoring.calculate_score(ScoringInput(url='https://example.com/')))
    stats = scoring.get_statistics()

    assert stats['total_scores'] == 2
    assert stats['risk_level_distribution'] == {'low': 0, 'medium': 2, 'high': 0}
    assert stats['factor_availability']['reputation'] == 50.0
    assert stats['factor_availability']['ssl_certificate'] == 0.0
    assert sum(stats['confidence_distribution'].values()) == 2

    scoring.clear_history()
    assert scoring.get_history() == []
