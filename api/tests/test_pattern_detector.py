import pytest

from analyze.pattern_detector import (URLPatternDetector, homograph_similarity, is_typosquat_pattern,
                                      levenshtein_distance, levenshtein_similarity)


@pytest.fixture
def detector():
    return URLPatternDetector()


def test_exact_brand_domain_is_not_typosquatting(detector):
    result = detector.analyze('https://paypal.com/', 'paypal.com', '/')
    assert result.is_typosquat == False
    assert result.brand_impersonation is None
    assert result.suspicious_score == 0
    assert result.detected_patterns == []


def test_www_prefix_is_ignored_for_brand_match(detector):
    result = detector.analyze('https://www.paypal.com/', 'www.paypal.com', '/')
    assert result.is_typosquat == False
    assert result.brand_impersonation is None


def test_single_character_substitution(detector):
    result = detector.analyze('https://paypa1.com/', 'paypa1.com', '/')
    assert result.is_typosquat == True
    assert result.brand_impersonation.likely_target == 'paypal'
    assert result.brand_impersonation.confidence > 0.8
    assert result.suspicious_score == 65
    assert 'typosquatting' in result.detected_patterns
    assert 'brand_impersonation:paypal' in result.detected_patterns


def test_brand_concatenation(detector):
    result = detector.analyze('https://paypal-secure.com/', 'paypal-secure.com', '/')
    assert result.is_typosquat == True
    assert result.brand_impersonation.confidence == 0.95


def test_cyrillic_homograph(detector):
    result = detector.analyze('https://pаypal.com/', 'pаypal.com', '/')
    assert result.is_homograph == True
    assert result.suspicious_score == 100


def test_suspicious_tld(detector):
    result = detector.analyze('https://free-prizes.tk/', 'free-prizes.tk', '/')
    assert result.has_suspicious_tld == True
    assert 'suspicious_tld:.tk' in result.detected_patterns


def test_phishing_path_and_params(detector):
    path_hit = detector.analyze('https://example.com/login-verify.php', 'example.com', '/login-verify.php')
    assert path_hit.has_phishing_patterns == True

    param_hit = detector.analyze('https://example.com/?redirect=http://evil.com', 'example.com', '/')
    assert param_hit.has_phishing_patterns == True

    clean = detector.analyze('https://example.com/about', 'example.com', '/about')
    assert clean.has_phishing_patterns == False


def test_obfuscation(detector):
    assert detector.analyze('http://bit.ly/abc', 'bit.ly', '/abc').has_obfuscation == True
    assert detector.analyze('http://93.184.216.34/', '93.184.216.34', '/').has_obfuscation == True


def test_internal_failure_degrades_to_empty_result(detector):
    result = detector.analyze('https://example.com/', None, '/')
    assert result.detected_patterns == ['analysis_failed']
    assert result.suspicious_score == 0
    assert result.is_typosquat == False


def test_string_similarity_helpers():
    assert levenshtein_distance('kitten', 'sitting') == 3
    assert levenshtein_similarity('', '') == 1.0
    assert homograph_similarity('g00gle', 'google') == pytest.approx((4 + 0.8 * 2) / 6)
    assert is_typosquat_pattern('gogle', 'google') == True
    assert is_typosquat_pattern('googgle', 'google') == True
    assert is_typosquat_pattern('google', 'google') == False
