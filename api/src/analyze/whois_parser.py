"""Heuristic parser for free-text WHOIS responses.

Registries answer in loosely labelled ``key: value`` lines whose labels and
date formats vary. The parser scans line by line for known labels and leaves
anything it cannot recognise as ``None``. Everything here is a pure function
of the raw text (plus the reference time), so parsing the same response twice
yields equal results.
"""
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional

CREATION_FIELDS = ('creation date', 'created', 'registered', 'domain registration date', 'registration time')
EXPIRY_FIELDS = ('registry expiry date', 'registrar registration expiration date', 'expiry date',
                 'expiration date', 'expires', 'paid-till')
UPDATED_FIELDS = ('updated date', 'modified', 'last modified', 'last updated', 'changed')
REGISTRAR_FIELDS = ('registrar:', 'sponsoring registrar:', 'registrar name:')
NAMESERVER_FIELDS = ('name server:', 'nameserver:', 'nserver:')
STATUS_FIELDS = ('status:', 'domain status:')
CONTACT_ROLES = ('registrant', 'admin', 'tech')

PRIVACY_INDICATORS = (
    'privacy',
    'redacted',
    'whoisguard',
    'whoisprotect',
    'domains by proxy',
    'contact privacy',
    'private registration',
    'redacted for privacy',
    'data protected',
    'not disclosed',
)

NOT_FOUND_PATTERNS = (
    'no match for',
    'domain not found',
    'not found:',
    'no matching record',
    'no data found',
    'no entries found',
    'status: available',
    'status: free',
)

# name fragment -> (display name, trust score)
KNOWN_REGISTRARS = {
    'godaddy': ('GoDaddy', 0.8),
    'namecheap': ('Namecheap', 0.9),
    'cloudflare': ('Cloudflare', 0.95),
    'google': ('Google Domains', 0.95),
    'amazon registrar': ('Amazon Registrar', 0.9),
    'markmonitor': ('MarkMonitor', 0.95),
}

SUSPICIOUS_STATUSES = ('clienthold', 'serverhold', 'redemptionperiod', 'pendingdelete')

UNKNOWN_REGISTRAR_SCORE = 0.2
PRIVACY_SCORE = 0.3
SUSPICIOUS_STATUS_SCORE = 0.7

_MONTHS = {name: index for index, name in enumerate(
    ('jan', 'feb', 'mar', 'apr', 'may', 'jun', 'jul', 'aug', 'sep', 'oct', 'nov', 'dec'), 1)}

_ISO = re.compile(r'(\d{4})-(\d{2})-(\d{2})[T ](\d{2}):(\d{2}):(\d{2})')
_DASH = re.compile(r'(\d{4})[-./](\d{2})[-./](\d{2})')
_TEXT = re.compile(r'(\d{1,2})-([A-Za-z]{3})-(\d{4})')
_DOT = re.compile(r'(\d{1,2})\.(\d{1,2})\.(\d{4})')
_US = re.compile(r'(\d{1,2})/(\d{1,2})/(\d{4})')


@dataclass(frozen=True)
class DomainRiskFactor:
    type: str
    description: str
    score: float


@dataclass(frozen=True)
class ContactInfo:
    organization: Optional[str] = None
    country: Optional[str] = None


@dataclass(frozen=True)
class DomainAgeAnalysis:
    domain: str
    age_in_days: Optional[int]
    registration_date: Optional[datetime]
    expiration_date: Optional[datetime]
    updated_date: Optional[datetime]
    registrar: Optional[str]
    nameservers: List[str] = field(default_factory=list)
    status: List[str] = field(default_factory=list)
    score: float = 0.0
    confidence: float = 0.5
    privacy_protected: bool = False
    registrant_country: Optional[str] = None
    contacts: Dict[str, ContactInfo] = field(default_factory=dict)
    risk_factors: List[DomainRiskFactor] = field(default_factory=list)

    @property
    def age_category(self) -> str:
        return age_category(self.age_in_days)


def age_category(age_in_days: Optional[int]) -> str:
    if age_in_days is None:
        return 'unknown'
    if age_in_days < 30:
        return 'very_new'
    if age_in_days < 90:
        return 'new'
    if age_in_days < 365:
        return 'recent'
    if age_in_days < 730:
        return 'established'
    return 'mature'


def is_not_found_response(raw_text: str) -> bool:
    lowered = raw_text.lower()
    return any(pattern in lowered for pattern in NOT_FOUND_PATTERNS)


def parse_date(value: str) -> Optional[datetime]:
    """Parse the first recognisable date in ``value`` as a UTC datetime."""
    if not value:
        return None
    try:
        match = _ISO.search(value)
        if match:
            return datetime(*map(int, match.groups()), tzinfo=timezone.utc)
        match = _DASH.search(value)
        if match:
            year, month, day = map(int, match.groups())
            return datetime(year, month, day, tzinfo=timezone.utc)
        match = _TEXT.search(value)
        if match and match.group(2).lower() in _MONTHS:
            return datetime(int(match.group(3)), _MONTHS[match.group(2).lower()],
                            int(match.group(1)), tzinfo=timezone.utc)
        match = _DOT.search(value)
        if match:
            day, month, year = map(int, match.groups())
            return datetime(year, month, day, tzinfo=timezone.utc)
        match = _US.search(value)
        if match:
            month, day, year = map(int, match.groups())
            return datetime(year, month, day, tzinfo=timezone.utc)
    except ValueError:
        return None
    return None


def _labelled_values(lines: List[str], labels: Iterable[str]):
    for line in lines:
        stripped = line.strip()
        lowered = stripped.lower()
        for label in labels:
            if lowered.startswith(label) and ':' in stripped:
                value = stripped.split(':', 1)[1].strip()
                if value:
                    yield value
                break


def _first(lines: List[str], labels: Iterable[str]) -> Optional[str]:
    return next(_labelled_values(lines, labels), None)


def _unique(values: Iterable[str]) -> List[str]:
    seen = []
    for value in values:
        if value not in seen:
            seen.append(value)
    return seen


def extract_nameservers(lines: List[str]) -> List[str]:
    return _unique(value.split()[0].lower().rstrip('.')
                   for value in _labelled_values(lines, NAMESERVER_FIELDS))


def extract_statuses(lines: List[str]) -> List[str]:
    # "clientTransferProhibited https://icann.org/epp#..." keeps only the code
    return _unique(value.split()[0] for value in _labelled_values(lines, STATUS_FIELDS))


def extract_contacts(lines: List[str]) -> Dict[str, ContactInfo]:
    contacts = {}
    for role in CONTACT_ROLES:
        organization = _first(lines, (f'{role} organization:', f'{role} organisation:'))
        country = _first(lines, (f'{role} country:',))
        if organization or country:
            contacts[role] = ContactInfo(organization=organization, country=country)
    return contacts


def detect_privacy_protection(raw_text: str) -> bool:
    lowered = raw_text.lower()
    return any(indicator in lowered for indicator in PRIVACY_INDICATORS)


def registrar_factor(registrar: str) -> DomainRiskFactor:
    lowered = registrar.lower()
    for fragment, (name, trust) in KNOWN_REGISTRARS.items():
        if fragment in lowered:
            return DomainRiskFactor(
                type='registrar',
                description=f'Registered with {name} (trust score: {trust})',
                score=round((1 - trust) * 0.2, 4),
            )
    return DomainRiskFactor(type='registrar', description='Unknown or less common registrar',
                            score=UNKNOWN_REGISTRAR_SCORE)


def age_factor(age_in_days: int) -> DomainRiskFactor:
    years = round(age_in_days / 365, 1)
    if age_in_days < 30:
        return DomainRiskFactor('age', f'Domain is very new ({age_in_days} days old)', 0.8)
    if age_in_days < 90:
        return DomainRiskFactor('age', f'Domain is new ({age_in_days} days old)', 0.6)
    if age_in_days < 365:
        return DomainRiskFactor('age', f'Domain is recent ({age_in_days} days old)', 0.4)
    if age_in_days < 730:
        return DomainRiskFactor('age', f'Domain is established ({years} years old)', 0.2)
    return DomainRiskFactor('age', f'Domain is mature ({years} years old)', 0.1)


def calculate_risk_factors(age_in_days: Optional[int], registrar: Optional[str],
                           privacy_protected: bool, statuses: List[str]) -> List[DomainRiskFactor]:
    factors = []
    if age_in_days is not None:
        factors.append(age_factor(age_in_days))
    if privacy_protected:
        factors.append(DomainRiskFactor('privacy', 'Domain registration uses privacy protection',
                                        PRIVACY_SCORE))
    if registrar:
        factors.append(registrar_factor(registrar))
    lowered = [status.lower() for status in statuses]
    if any(suspicious in status for status in lowered for suspicious in SUSPICIOUS_STATUSES):
        factors.append(DomainRiskFactor('status', 'Domain has suspicious status flags',
                                        SUSPICIOUS_STATUS_SCORE))
    return factors


def score_and_confidence(factors: List[DomainRiskFactor], has_age: bool):
    score = min(max(sum(factor.score for factor in factors), 0.0), 1.0)
    confidence = 0.5
    if has_age:
        confidence += 0.3
    if any(factor.type == 'registrar' for factor in factors):
        confidence += 0.1
    if any(factor.type == 'privacy' for factor in factors):
        confidence += 0.1
    return round(score, 4), round(min(confidence, 1.0), 4)


def parse_whois_response(domain: str, raw_text: str, now: datetime = None) -> DomainAgeAnalysis:
    """Turn a raw WHOIS response into a scored DomainAgeAnalysis.

    ``now`` is the reference time for the age calculation; pass it explicitly
    to get reproducible results.
    """
    now = now or datetime.now(timezone.utc)
    lines = raw_text.splitlines()

    registration_date = parse_date(_first(lines, CREATION_FIELDS))
    expiration_date = parse_date(_first(lines, EXPIRY_FIELDS))
    updated_date = parse_date(_first(lines, UPDATED_FIELDS))
    registrar = _first(lines, REGISTRAR_FIELDS)
    nameservers = extract_nameservers(lines)
    statuses = extract_statuses(lines)
    contacts = extract_contacts(lines)

    age_in_days = None
    if registration_date is not None:
        age_in_days = max((now - registration_date).days, 0)

    privacy_protected = detect_privacy_protection(raw_text)
    registrant = contacts.get('registrant')
    factors = calculate_risk_factors(age_in_days, registrar, privacy_protected, statuses)
    score, confidence = score_and_confidence(factors, age_in_days is not None)

    return DomainAgeAnalysis(
        domain=domain,
        age_in_days=age_in_days,
        registration_date=registration_date,
        expiration_date=expiration_date,
        updated_date=updated_date,
        registrar=registrar,
        nameservers=nameservers,
        status=statuses,
        score=score,
        confidence=confidence,
        privacy_protected=privacy_protected,
        registrant_country=registrant.country if registrant else None,
        contacts=contacts,
        risk_factors=factors,
    )
