import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional
from urllib.parse import parse_qsl, urlsplit

from utils.logger import setup_logger
from validation.url_validator import registrable_label

logger = setup_logger('pattern_detector')

SUSPICIOUS_TLDS = frozenset({
    '.tk', '.ml', '.ga', '.cf', '.gq',  # Freenom
    '.top', '.click', '.download', '.stream', '.science',
    '.racing', '.review', '.party', '.trade', '.webcam',
})

HIGH_VALUE_BRANDS = [
    'paypal', 'amazon', 'microsoft', 'apple', 'google', 'facebook', 'instagram',
    'twitter', 'linkedin', 'github', 'dropbox', 'netflix', 'spotify',
    'banking', 'chase', 'wellsfargo', 'bankofamerica', 'citibank',
]

# Latin letter -> look-alike characters
HOMOGRAPH_MAPPINGS: Dict[str, List[str]] = {
    'a': ['а', 'ɑ', 'α', '@', '4'],
    'e': ['е', 'é', 'è', '3'],
    'i': ['і', 'í', 'ì', '1', 'l'],
    'o': ['о', 'ο', '0', 'ө'],
    'p': ['р', 'ρ'],
    'c': ['с', 'ϲ'],
    'y': ['у', 'ý'],
    'x': ['х', 'χ'],
    'n': ['η', 'ñ'],
    'm': ['м', 'ɱ'],
    'h': ['н', 'ћ'],
    'b': ['Ь', 'β'],
    'd': ['ԁ', 'δ'],
    'g': ['ց', 'γ'],
    's': ['ѕ', 'š', '$'],
    't': ['τ', '7'],
    'u': ['υ', 'ü'],
    'v': ['ν', 'ѵ'],
    'w': ['ω', 'ա'],
    'z': ['ᴢ', '2'],
}

_HOMOGRAPH_CHARS = frozenset(
    char for chars in HOMOGRAPH_MAPPINGS.values() for char in chars if ord(char) > 127
)

PHISHING_PATH_PATTERNS = [
    re.compile(r'/(login|signin|sign-in|log-in)[\w\-]*\.(php|html|asp|aspx)', re.I),
    re.compile(r'/(verify|verification|validate|confirm|secure)[\w\-]*\.(php|html)', re.I),
    re.compile(r'/(update|renewal|suspended|locked|blocked)[\w\-]*\.(php|html)', re.I),
    re.compile(r'/(account|billing|security|profile)[\w\-]*\.(php|html)', re.I),
    re.compile(r'/(urgent|immediate|action|required)[\w\-]*\.(php|html)', re.I),
]

SUSPICIOUS_PARAM_PATTERNS = [
    re.compile(r'^(redirect|continue|return|next|goto|url)=https?://[^&]+', re.I),
    re.compile(r'^(token|session|auth|key)=[a-zA-Z0-9+/=]{20,}', re.I),
    re.compile(r'^(user|username|email|login)=[^&]+', re.I),
]

OBFUSCATION_PATTERNS = [
    re.compile(r'(%[0-9A-Fa-f]{2}){5,}'),                            # excessive percent-encoding
    re.compile(r'\d{1,3}\.\d{1,3}\.\d{1,3}\.\d{1,3}'),               # IP literal
    re.compile(r"[a-zA-Z0-9\-._~:/?#\[\]@!$&'()*+,;=]{100,}"),        # very long URL
    re.compile(r'\b(bit\.ly|tinyurl|short|goo\.gl|t\.co|ow\.ly)'),   # shorteners
]

SCORE_WEIGHTS = {
    'homograph': 40,
    'typosquat': 35,
    'suspicious_tld': 20,
    'phishing_patterns': 25,
    'obfuscation': 15,
    'brand_impersonation': 30,
}

BRAND_REPORT_THRESHOLD = 0.6
BRAND_SCORE_THRESHOLD = 0.8


@dataclass(frozen=True)
class BrandImpersonation:
    likely_target: str
    confidence: float


@dataclass(frozen=True)
class URLPatternAnalysis:
    is_homograph: bool = False
    is_typosquat: bool = False
    has_suspicious_tld: bool = False
    has_phishing_patterns: bool = False
    has_obfuscation: bool = False
    suspicious_score: int = 0
    detected_patterns: List[str] = field(default_factory=list)
    brand_impersonation: Optional[BrandImpersonation] = None


def levenshtein_distance(first: str, second: str) -> int:
    previous = list(range(len(second) + 1))
    for i, char_a in enumerate(first, 1):
        current = [i]
        for j, char_b in enumerate(second, 1):
            current.append(min(
                previous[j] + 1,
                current[j - 1] + 1,
                previous[j - 1] + (char_a != char_b),
            ))
        previous = current
    return previous[-1]


def levenshtein_similarity(first: str, second: str) -> float:
    longest = max(len(first), len(second))
    if longest == 0:
        return 1.0
    return 1 - levenshtein_distance(first, second) / longest


def homograph_similarity(label: str, brand: str) -> float:
    """Position-wise match ratio where a known look-alike counts 0.8."""
    if len(label) != len(brand) or not label:
        return 0.0
    matches = 0.0
    for char, brand_char in zip(label, brand):
        if char == brand_char:
            matches += 1
        elif char in HOMOGRAPH_MAPPINGS.get(brand_char, ()):
            matches += 0.8
    return matches / len(label)


def has_character_substitution(label: str, brand: str) -> bool:
    if len(label) != len(brand):
        return False
    return sum(1 for a, b in zip(label, brand) if a != b) == 1


def has_character_insertion(label: str, brand: str) -> bool:
    if len(label) != len(brand) + 1:
        return False
    return any(label[:i] + label[i + 1:] == brand for i in range(len(label)))


def has_character_deletion(label: str, brand: str) -> bool:
    if len(label) != len(brand) - 1:
        return False
    return any(brand[:i] + brand[i + 1:] == label for i in range(len(brand)))


def is_typosquat_pattern(label: str, brand: str) -> bool:
    return (
        has_character_substitution(label, brand)
        or has_character_insertion(label, brand)
        or has_character_deletion(label, brand)
        or (brand in label and label != brand)
    )


def decode_hostname(hostname: str) -> str:
    """Decode punycode labels so look-alike characters become visible."""
    if 'xn--' not in hostname:
        return hostname
    try:
        return hostname.encode('ascii').decode('idna')
    except UnicodeError:
        return hostname


def _tld(hostname: str) -> str:
    return hostname[hostname.rfind('.'):] if '.' in hostname else ''


class URLPatternDetector:
    """Lexical heuristics over a URL and its host. Performs no I/O."""

    def __init__(self, brands: List[str] = None, suspicious_tlds=None):
        self.brands = brands or HIGH_VALUE_BRANDS
        self.suspicious_tlds = suspicious_tlds or SUSPICIOUS_TLDS

    def analyze(self, url: str, domain: str, pathname: str) -> URLPatternAnalysis:
        try:
            hostname = decode_hostname(domain.lower().rstrip('.'))
            label = self._brand_label(hostname)

            flags = {
                'is_homograph': self.detect_homographs(hostname),
                'is_typosquat': self.detect_typosquatting(label),
                'has_suspicious_tld': self.detect_suspicious_tld(hostname),
                'has_phishing_patterns': self.detect_phishing_patterns(pathname, url),
                'has_obfuscation': self.detect_obfuscation(url),
            }
            brand = self.detect_brand_impersonation(label)
            score = self._suspicious_score(flags, brand)
            patterns = self._collect_patterns(flags, brand, hostname)

            logger.debug(f"Pattern analysis for {hostname}: score={score} patterns={patterns}")
            return URLPatternAnalysis(
                suspicious_score=score,
                detected_patterns=patterns,
                brand_impersonation=brand,
                **flags
            )
        except Exception as e:
            logger.error(f"URL pattern analysis failed for {domain}: {str(e)}")
            return URLPatternAnalysis(detected_patterns=['analysis_failed'])

    @staticmethod
    def _brand_label(hostname: str) -> str:
        if hostname.startswith('www.'):
            hostname = hostname[4:]
        return registrable_label(hostname)

    def detect_homographs(self, hostname: str) -> bool:
        return any(char in _HOMOGRAPH_CHARS for char in hostname)

    def detect_typosquatting(self, label: str) -> bool:
        for brand in self.brands:
            # the brand's own domain is legitimate
            if label == brand:
                continue
            similarity = levenshtein_similarity(label, brand)
            if 0.7 < similarity < 1.0:
                return True
            if is_typosquat_pattern(label, brand):
                return True
        return False

    def detect_suspicious_tld(self, hostname: str) -> bool:
        return _tld(hostname) in self.suspicious_tlds

    def detect_phishing_patterns(self, pathname: str, url: str) -> bool:
        if any(pattern.search(pathname or '') for pattern in PHISHING_PATH_PATTERNS):
            return True
        for key, value in parse_qsl(urlsplit(url).query, keep_blank_values=True):
            param = f'{key}={value}'
            if any(pattern.search(param) for pattern in SUSPICIOUS_PARAM_PATTERNS):
                return True
        return False

    def detect_obfuscation(self, url: str) -> bool:
        return any(pattern.search(url) for pattern in OBFUSCATION_PATTERNS)

    def detect_brand_impersonation(self, label: str) -> Optional[BrandImpersonation]:
        best_brand, best_confidence = None, 0.0
        for brand in self.brands:
            if label == brand:
                continue
            confidence = self.brand_similarity(label, brand)
            if confidence > best_confidence and confidence > BRAND_REPORT_THRESHOLD:
                best_brand, best_confidence = brand, confidence
        if best_brand is None:
            return None
        return BrandImpersonation(likely_target=best_brand, confidence=round(best_confidence, 4))

    @staticmethod
    def brand_similarity(label: str, brand: str) -> float:
        if brand in label:
            return 0.95
        levenshtein = levenshtein_similarity(label, brand)
        homograph = homograph_similarity(label, brand)
        # non-exact matches never exceed 0.85
        return min(0.85, max(levenshtein * 0.7 + homograph * 0.3, levenshtein, homograph))

    @staticmethod
    def _suspicious_score(flags: Dict[str, bool], brand: Optional[BrandImpersonation]) -> int:
        score = 0
        if flags['is_homograph']:
            score += SCORE_WEIGHTS['homograph']
        if flags['is_typosquat']:
            score += SCORE_WEIGHTS['typosquat']
        if flags['has_suspicious_tld']:
            score += SCORE_WEIGHTS['suspicious_tld']
        if flags['has_phishing_patterns']:
            score += SCORE_WEIGHTS['phishing_patterns']
        if flags['has_obfuscation']:
            score += SCORE_WEIGHTS['obfuscation']
        if brand and brand.confidence > BRAND_SCORE_THRESHOLD:
            score += SCORE_WEIGHTS['brand_impersonation']
        return min(score, 100)

    def _collect_patterns(self, flags: Dict[str, bool], brand: Optional[BrandImpersonation],
                          hostname: str) -> List[str]:
        patterns = []
        if flags['is_homograph']:
            patterns.append('homograph_attack')
        if flags['is_typosquat']:
            patterns.append('typosquatting')
        if flags['has_suspicious_tld']:
            patterns.append('suspicious_tld')
        if flags['has_phishing_patterns']:
            patterns.append('phishing_patterns')
        if flags['has_obfuscation']:
            patterns.append('url_obfuscation')
        if brand:
            patterns.append(f'brand_impersonation:{brand.likely_target}')
        if flags['has_suspicious_tld']:
            patterns.append(f'suspicious_tld:{_tld(hostname)}')
        return patterns
