import ipaddress
import re
from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple
from urllib.parse import parse_qsl, urlsplit, urlunsplit

import tldextract
import validators

# Validation error classes
MALFORMED = 'malformed'
DISALLOWED_SCHEME = 'disallowed_scheme'
DISALLOWED_HOST = 'disallowed_host'
EXCESSIVE_LENGTH = 'excessive_length'

MAX_URL_LENGTH = 2083
MAX_HOSTNAME_LENGTH = 253
ALLOWED_SCHEMES = ('http', 'https')
DANGEROUS_SCHEMES = ('javascript:', 'data:', 'vbscript:', 'file:')
DEFAULT_PORTS = {'http': 80, 'https': 443}

_CONTROL_CHARS = re.compile(r'[\x00-\x1f\x7f]')
_SCHEME = re.compile(r'^[a-zA-Z][a-zA-Z0-9+.\-]*://')
_OPAQUE_SCHEME = re.compile(r'^[a-zA-Z][a-zA-Z0-9+.\-]*:(?!\d)')

# Offline suffix list snapshot bundled with tldextract, no network fetch
_extract = tldextract.TLDExtract(suffix_list_urls=())


@dataclass(frozen=True)
class ParsedURL:
    original: str
    normalized: str
    protocol: str
    hostname: str
    domain: str
    subdomain: str
    port: Optional[int]
    path: str
    query: str
    query_params: Tuple[Tuple[str, str], ...] = ()
    path_parts: Tuple[str, ...] = ()
    is_ip: bool = False
    is_ipv4: bool = False
    is_ipv6: bool = False

    @property
    def is_https(self) -> bool:
        return self.protocol == 'https'

    @property
    def params(self) -> Dict[str, str]:
        return dict(self.query_params)

    @property
    def domain_parts(self) -> Tuple[str, ...]:
        return tuple(self.hostname.split('.')) if not self.is_ip else (self.hostname,)


@dataclass(frozen=True)
class URLValidationResult:
    is_valid: bool
    parsed: Optional[ParsedURL] = None
    error_type: Optional[str] = None
    error: Optional[str] = None
    warnings: Tuple[str, ...] = field(default_factory=tuple)


def _invalid(error_type: str, message: str) -> URLValidationResult:
    return URLValidationResult(is_valid=False, error_type=error_type, error=message)


def _ip_literal(hostname: str):
    try:
        return ipaddress.ip_address(hostname)
    except ValueError:
        return None


def _is_restricted_ip(ip) -> bool:
    return (ip.is_private or ip.is_loopback or ip.is_link_local or ip.is_multicast
            or ip.is_reserved or ip.is_unspecified)


def to_ascii_hostname(hostname: str) -> Optional[str]:
    try:
        return hostname.encode('idna').decode('ascii')
    except UnicodeError:
        return None


def split_domain(hostname: str) -> Tuple[str, str]:
    """Return ``(root_domain, subdomain)`` for a hostname using the public suffix list."""
    extracted = _extract(hostname)
    if extracted.domain and extracted.suffix:
        return f'{extracted.domain}.{extracted.suffix}', extracted.subdomain
    return hostname, ''


def registrable_label(hostname: str) -> str:
    """The label directly left of the public suffix (``paypal`` for ``www.paypal.co.uk``)."""
    extracted = _extract(hostname)
    return extracted.domain or hostname


def parse_url(raw_url: str) -> ParsedURL:
    """Split a URL that has already passed validation into a ParsedURL."""
    url = raw_url.strip()
    if not _SCHEME.match(url):
        url = f'https://{url}'
    parts = urlsplit(url)
    protocol = parts.scheme.lower()
    hostname = (parts.hostname or '').lower().rstrip('.')
    port = parts.port
    if port == DEFAULT_PORTS.get(protocol):
        port = None

    ip = _ip_literal(hostname)
    if ip is not None:
        domain, subdomain = hostname, ''
    else:
        domain, subdomain = split_domain(hostname)

    path = parts.path or '/'
    netloc = f'[{hostname}]' if ip is not None and ip.version == 6 else hostname
    if port is not None:
        netloc = f'{netloc}:{port}'

    return ParsedURL(
        original=raw_url,
        normalized=urlunsplit((protocol, netloc, path, parts.query, '')),
        protocol=protocol,
        hostname=hostname,
        domain=domain,
        subdomain=subdomain,
        port=port,
        path=path,
        query=parts.query,
        query_params=tuple(parse_qsl(parts.query, keep_blank_values=True)),
        path_parts=tuple(part for part in path.split('/') if part),
        is_ip=ip is not None,
        is_ipv4=ip is not None and ip.version == 4,
        is_ipv6=ip is not None and ip.version == 6,
    )


def validate_url(raw_url, allow_private: bool = False, allow_localhost: bool = False,
                 max_length: int = MAX_URL_LENGTH) -> URLValidationResult:
    """Validate a candidate URL and parse it.

    Never raises: every problem is reported through ``error_type``
    (malformed, disallowed_scheme, disallowed_host, excessive_length).
    """
    if not isinstance(raw_url, str) or not raw_url.strip():
        return _invalid(MALFORMED, 'URL must be a non-empty string')

    url = raw_url.strip()
    if len(url) > max_length:
        return _invalid(EXCESSIVE_LENGTH, f'URL exceeds maximum length of {max_length} characters')
    if _CONTROL_CHARS.search(url):
        return _invalid(DISALLOWED_SCHEME, 'URL contains control characters')
    if url.lower().startswith(DANGEROUS_SCHEMES):
        return _invalid(DISALLOWED_SCHEME, 'Dangerous URL scheme')

    if _SCHEME.match(url):
        candidate = url
    elif _OPAQUE_SCHEME.match(url):
        return _invalid(DISALLOWED_SCHEME, f"Unsupported protocol: {url.split(':', 1)[0].lower()}")
    else:
        candidate = f'https://{url}'

    try:
        parts = urlsplit(candidate)
        port = parts.port
    except ValueError as e:
        return _invalid(MALFORMED, f'Unable to parse URL: {str(e)}')

    scheme = parts.scheme.lower()
    if scheme not in ALLOWED_SCHEMES:
        return _invalid(DISALLOWED_SCHEME, f'Unsupported protocol: {scheme}')
    if port is not None and not 0 < port <= 65535:
        return _invalid(MALFORMED, f'Invalid port: {port}')

    hostname = (parts.hostname or '').lower().rstrip('.')
    if not hostname:
        return _invalid(MALFORMED, 'URL has no hostname')
    if len(hostname) > MAX_HOSTNAME_LENGTH:
        return _invalid(EXCESSIVE_LENGTH, 'Hostname is too long')
    if '//' in parts.path:
        return _invalid(MALFORMED, 'URL contains repeated slashes in path')

    ip = _ip_literal(hostname)
    if ip is not None:
        if ip.is_loopback:
            if not (allow_localhost or allow_private):
                return _invalid(DISALLOWED_HOST, 'Loopback addresses are not allowed')
        elif _is_restricted_ip(ip) and not allow_private:
            return _invalid(DISALLOWED_HOST, 'Private or reserved IP addresses are not allowed')
    else:
        if hostname == 'localhost' or hostname.endswith('.localhost'):
            if not allow_localhost:
                return _invalid(DISALLOWED_HOST, 'Localhost is not allowed')
        else:
            ascii_host = to_ascii_hostname(hostname)
            if not ascii_host or '.' not in ascii_host or not validators.domain(ascii_host):
                return _invalid(MALFORMED, f'Invalid domain: {hostname}')

    warnings = ()
    if scheme == 'http':
        warnings = ('URL does not use HTTPS',)

    return URLValidationResult(is_valid=True, parsed=parse_url(candidate), warnings=warnings)
