import asyncio
import socket
import ssl
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, List, Optional, Tuple

from cryptography import x509
from cryptography.hazmat.primitives.asymmetric import dsa, ec, rsa
from cryptography.x509.oid import NameOID

from analyze.base import AnalysisError, AnalysisOutcome, AnalyzerException, CertificateAnalyzer, ErrorType
from config.default import Config
from utils.cache import CacheManager
from utils.logger import setup_logger
from validation.url_validator import ParsedURL

logger = setup_logger('ssl_analyzer')

WELL_KNOWN_CAS = (
    'digicert', 'symantec', 'verisign', 'thawte', 'geotrust', 'rapidssl',
    'comodo', 'sectigo', 'godaddy', "let's encrypt", 'letsencrypt', 'amazon',
    'microsoft', 'google', 'cloudflare', 'globalsign',
)

WEAK_SIGNATURE_HASHES = ('sha1', 'md5')

# Risk factor scores
NEW_CERTIFICATE_SCORE = 25
EXPIRED_SCORE = 40
EXPIRING_SOON_SCORE = 20
SELF_SIGNED_SCORE = 50
LOW_CA_TRUST_SCORE = 15
WEAK_CRYPTO_SCORE = 30
DOMAIN_MISMATCH_SCORE = 35
MIN_SCORE = 5


@dataclass(frozen=True)
class CertificateAuthorityInfo:
    name: str
    organization: Optional[str]
    is_well_known: bool
    trust_score: float
    validation_level: str  # DV, OV or EV


@dataclass(frozen=True)
class SecurityAssessment:
    key_algorithm: str
    key_size: Optional[int]
    signature_hash: Optional[str]
    encryption_strength: str  # weak, moderate or strong
    has_weak_crypto: bool


@dataclass(frozen=True)
class CertificateValidation:
    is_valid: bool
    is_expired: bool
    is_self_signed: bool
    chain_valid: bool
    domain_match: bool
    errors: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class SSLRiskFactor:
    type: str
    description: str
    score: int


@dataclass(frozen=True)
class SSLCertificateAnalysis:
    domain: str
    port: int
    common_name: Optional[str]
    subject_alt_names: List[str]
    issued_date: datetime
    expiration_date: datetime
    days_until_expiry: int
    certificate_age: int
    certificate_type: str  # self-signed, DV, OV or EV
    certificate_authority: CertificateAuthorityInfo
    security: SecurityAssessment
    validation: CertificateValidation
    score: int
    confidence: float
    risk_factors: List[SSLRiskFactor] = field(default_factory=list)


@dataclass(frozen=True)
class FetchedCertificate:
    der: bytes
    chain_valid: bool
    verify_message: Optional[str] = None
    protocol: Optional[str] = None


def fetch_certificate(hostname: str, port: int, timeout: float) -> FetchedCertificate:
    """Blocking TLS handshake with SNI, returning the leaf certificate.

    The first attempt verifies against the system trust store. When
    verification fails the certificate is fetched again without
    verification so it can still be inspected, and the chain is reported
    as invalid.
    """
    context = ssl.create_default_context()
    try:
        with socket.create_connection((hostname, port), timeout=timeout) as sock:
            with context.wrap_socket(sock, server_hostname=hostname) as ssock:
                return FetchedCertificate(der=ssock.getpeercert(binary_form=True), chain_valid=True,
                                          protocol=ssock.version())
    except ssl.SSLCertVerificationError as e:
        verify_message = e.verify_message or str(e)

    insecure = ssl.create_default_context()
    insecure.check_hostname = False
    insecure.verify_mode = ssl.CERT_NONE
    with socket.create_connection((hostname, port), timeout=timeout) as sock:
        with insecure.wrap_socket(sock, server_hostname=hostname) as ssock:
            return FetchedCertificate(der=ssock.getpeercert(binary_form=True), chain_valid=False,
                                      verify_message=verify_message, protocol=ssock.version())


def classify_ssl_error(error: Exception) -> AnalyzerException:
    if isinstance(error, AnalyzerException):
        return error
    message = str(error)
    if isinstance(error, socket.gaierror):
        return AnalyzerException(ErrorType.NETWORK, f'DNS resolution failed: {message}', retryable=False)
    if isinstance(error, (socket.timeout, TimeoutError)):
        return AnalyzerException(ErrorType.TIMEOUT, f'TLS connection timed out: {message}')
    if isinstance(error, ssl.SSLError):
        return AnalyzerException(ErrorType.CERTIFICATE, f'TLS handshake failed: {message}', retryable=False)
    if isinstance(error, (ConnectionError, OSError)):
        return AnalyzerException(ErrorType.CONNECTION, f'TLS connection failed: {message}')
    return AnalyzerException(ErrorType.UNKNOWN, f'Certificate analysis failed: {message}', retryable=False)


def _name_attribute(name: x509.Name, oid) -> Optional[str]:
    attributes = name.get_attributes_for_oid(oid)
    return str(attributes[0].value) if attributes else None


def _subject_alt_names(cert: x509.Certificate) -> List[str]:
    try:
        extension = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName)
    except x509.ExtensionNotFound:
        return []
    return [name.lower() for name in extension.value.get_values_for_type(x509.DNSName)]


def hostname_matches(hostname: str, pattern: str) -> bool:
    """Match a hostname against a certificate name, allowing one leftmost wildcard label."""
    hostname, pattern = hostname.lower().rstrip('.'), pattern.lower().rstrip('.')
    if pattern == hostname:
        return True
    if pattern.startswith('*.'):
        suffix = pattern[1:]
        head = hostname[:-len(suffix)] if hostname.endswith(suffix) else ''
        return bool(head) and '.' not in head
    return False


def _key_details(cert: x509.Certificate) -> Tuple[str, Optional[int]]:
    key = cert.public_key()
    if isinstance(key, rsa.RSAPublicKey):
        return 'RSA', key.key_size
    if isinstance(key, ec.EllipticCurvePublicKey):
        return 'EC', key.curve.key_size
    if isinstance(key, dsa.DSAPublicKey):
        return 'DSA', key.key_size
    return type(key).__name__.replace('PublicKey', ''), None


def assess_security(cert: x509.Certificate) -> SecurityAssessment:
    algorithm, key_size = _key_details(cert)
    hash_algorithm = cert.signature_hash_algorithm
    signature_hash = hash_algorithm.name.lower() if hash_algorithm else None

    # EC keys are compared by their RSA-equivalent strength
    effective_size = key_size * 8 if algorithm == 'EC' and key_size else key_size
    if effective_size is None:
        strength = 'strong'
    elif effective_size < 1024:
        strength = 'weak'
    elif effective_size < 2048:
        strength = 'moderate'
    else:
        strength = 'strong'

    weak = strength != 'strong' or signature_hash in WEAK_SIGNATURE_HASHES
    return SecurityAssessment(
        key_algorithm=algorithm,
        key_size=key_size,
        signature_hash=signature_hash,
        encryption_strength=strength,
        has_weak_crypto=weak,
    )


def assess_authority(cert: x509.Certificate, self_signed: bool) -> CertificateAuthorityInfo:
    issuer_cn = _name_attribute(cert.issuer, NameOID.COMMON_NAME)
    issuer_org = _name_attribute(cert.issuer, NameOID.ORGANIZATION_NAME)
    issuer = f'{issuer_org or ""} {issuer_cn or ""}'.lower()
    well_known = not self_signed and any(ca in issuer for ca in WELL_KNOWN_CAS)

    subject_org = _name_attribute(cert.subject, NameOID.ORGANIZATION_NAME)
    subject_location = (_name_attribute(cert.subject, NameOID.LOCALITY_NAME)
                        or _name_attribute(cert.subject, NameOID.STATE_OR_PROVINCE_NAME))
    if subject_org and subject_location:
        level = 'EV'
    elif subject_org:
        level = 'OV'
    else:
        level = 'DV'

    return CertificateAuthorityInfo(
        name=issuer_cn or issuer_org or 'Unknown',
        organization=issuer_org,
        is_well_known=well_known,
        trust_score=0.9 if well_known else 0.5,
        validation_level=level,
    )


def analyze_certificate(domain: str, der: bytes, chain_valid: bool = True,
                        verify_message: str = None, port: int = 443,
                        now: datetime = None) -> SSLCertificateAnalysis:
    """Score a DER encoded leaf certificate for ``domain``."""
    now = now or datetime.now(timezone.utc)
    cert = x509.load_der_x509_certificate(der)

    issued = cert.not_valid_before_utc
    expires = cert.not_valid_after_utc
    days_until_expiry = (expires - now).days
    certificate_age = max((now - issued).days, 0)

    common_name = _name_attribute(cert.subject, NameOID.COMMON_NAME)
    alt_names = _subject_alt_names(cert)
    names = alt_names or ([common_name.lower()] if common_name else [])
    domain_match = any(hostname_matches(domain, name) for name in names)

    self_signed = cert.issuer == cert.subject
    expired = expires <= now
    authority = assess_authority(cert, self_signed)
    security = assess_security(cert)

    errors = []
    if expired:
        errors.append('Certificate has expired')
    if now < issued:
        errors.append('Certificate is not yet valid')
    if self_signed:
        errors.append('Certificate is self-signed')
    if not chain_valid:
        errors.append(f'Certificate chain could not be verified: {verify_message or "unknown reason"}')
    if not domain_match:
        errors.append(f'Certificate does not cover {domain}')

    validation = CertificateValidation(
        is_valid=not errors,
        is_expired=expired,
        is_self_signed=self_signed,
        chain_valid=chain_valid,
        domain_match=domain_match,
        errors=errors,
    )

    factors = calculate_risk_factors(certificate_age, days_until_expiry, validation, authority, security)
    score = min(max(sum(factor.score for factor in factors), MIN_SCORE), 100)

    confidence = 0.8
    if chain_valid:
        confidence += 0.1
    if domain_match:
        confidence += 0.1

    return SSLCertificateAnalysis(
        domain=domain,
        port=port,
        common_name=common_name,
        subject_alt_names=alt_names,
        issued_date=issued,
        expiration_date=expires,
        days_until_expiry=days_until_expiry,
        certificate_age=certificate_age,
        certificate_type='self-signed' if self_signed else authority.validation_level,
        certificate_authority=authority,
        security=security,
        validation=validation,
        score=score,
        confidence=round(min(confidence, 1.0), 2),
        risk_factors=factors,
    )


def calculate_risk_factors(certificate_age: int, days_until_expiry: int,
                           validation: CertificateValidation, authority: CertificateAuthorityInfo,
                           security: SecurityAssessment) -> List[SSLRiskFactor]:
    factors = []
    if certificate_age <= 30:
        factors.append(SSLRiskFactor('certificate_age', f'Certificate issued {certificate_age} days ago',
                                     NEW_CERTIFICATE_SCORE))
    if validation.is_expired:
        factors.append(SSLRiskFactor('expiration', 'Certificate has expired', EXPIRED_SCORE))
    elif days_until_expiry <= 30:
        factors.append(SSLRiskFactor('expiration', f'Certificate expires in {days_until_expiry} days',
                                     EXPIRING_SOON_SCORE))
    if validation.is_self_signed:
        factors.append(SSLRiskFactor('self_signed', 'Self-signed certificate', SELF_SIGNED_SCORE))
    if authority.trust_score < 0.6:
        factors.append(SSLRiskFactor('ca_trust', f'Less recognised certificate authority: {authority.name}',
                                     LOW_CA_TRUST_SCORE))
    if security.has_weak_crypto:
        factors.append(SSLRiskFactor('weak_crypto', 'Weak cryptographic parameters', WEAK_CRYPTO_SCORE))
    if not validation.domain_match:
        factors.append(SSLRiskFactor('domain_mismatch', 'Certificate domain mismatch', DOMAIN_MISMATCH_SCORE))
    return factors


class SSLAnalyzer(CertificateAnalyzer):
    def __init__(self, cache: CacheManager,
                 fetcher: Callable[[str, int, float], FetchedCertificate] = fetch_certificate,
                 port: int = None, timeout: float = None):
        self.cache = cache
        self.fetcher = fetcher
        self.port = port or Config.SSL_PORT
        self.timeout = timeout or Config.SSL_TIMEOUT

    async def analyze(self, parsed_url: ParsedURL, force_refresh: bool = False) -> AnalysisOutcome:
        return await self.analyze_certificate(parsed_url.hostname, port=parsed_url.port or self.port,
                                              force_refresh=force_refresh)

    async def analyze_certificate(self, hostname: str, port: int = None,
                                  force_refresh: bool = False) -> AnalysisOutcome:
        started = time.perf_counter()
        port = port or self.port
        cache_key = f'{hostname}:{port}'

        if not force_refresh:
            lookup = await self.cache.get_async(cache_key)
            if lookup.hit:
                return AnalysisOutcome.ok(lookup.value, started, from_cache=True)

        loop = asyncio.get_running_loop()
        try:
            fetched = await loop.run_in_executor(None, self.fetcher, hostname, port, self.timeout)
            analysis = analyze_certificate(hostname, fetched.der, fetched.chain_valid,
                                           fetched.verify_message, port=port)
        except ValueError as e:
            logger.warning(f"Unparseable certificate for {cache_key}: {str(e)}")
            return AnalysisOutcome.failed(
                AnalysisError(type=ErrorType.CERTIFICATE, message=f'Invalid certificate: {str(e)}'), started)
        except Exception as e:
            error = classify_ssl_error(e)
            logger.warning(f"SSL analysis failed for {cache_key}: [{error.error_type}] {str(error)}")
            return AnalysisOutcome.failed(error.to_error(), started)

        await self.cache.set_async(cache_key, analysis)
        logger.info(f"SSL analysis for {cache_key}: type={analysis.certificate_type} score={analysis.score}")
        return AnalysisOutcome.ok(analysis, started)
