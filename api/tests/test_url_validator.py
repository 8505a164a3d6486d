from validation.url_validator import (DISALLOWED_HOST, DISALLOWED_SCHEME, EXCESSIVE_LENGTH, MALFORMED,
                                      parse_url, registrable_label, split_domain, validate_url)


def test_valid_url():
    result = validate_url('https://www.example.com/login?next=/home&x=1')
    assert result.is_valid == True
    parsed = result.parsed
    assert parsed.protocol == 'https'
    assert parsed.hostname == 'www.example.com'
    assert parsed.domain == 'example.com'
    assert parsed.subdomain == 'www'
    assert parsed.path_parts == ('login',)
    assert parsed.params == {'next': '/home', 'x': '1'}
    assert parsed.is_ip == False


def test_missing_scheme_defaults_to_https():
    result = validate_url('example.com')
    assert result.is_valid
    assert result.parsed.normalized == 'https://example.com/'


def test_normalization_lowercases_host_and_drops_default_port():
    parsed = parse_url('HTTPS://Example.COM:443/Path?q=1#frag')
    assert parsed.normalized == 'https://example.com/Path?q=1'
    assert parsed.port is None


def test_http_warns():
    result = validate_url('http://example.com')
    assert result.is_valid
    assert result.warnings == ('URL does not use HTTPS',)


def test_disallowed_schemes():
    assert validate_url('ftp://example.com').error_type == DISALLOWED_SCHEME
    assert validate_url('javascript:alert(1)').error_type == DISALLOWED_SCHEME
    assert validate_url('mailto:someone@example.com').error_type == DISALLOWED_SCHEME


def test_empty_and_garbage_input():
    assert validate_url('').error_type == MALFORMED
    assert validate_url(None).error_type == MALFORMED
    assert validate_url('not a url').error_type == MALFORMED
    assert validate_url('https://nodot').error_type == MALFORMED


def test_excessive_length():
    result = validate_url('https://example.com/' + 'a' * 3000)
    assert result.is_valid == False
    assert result.error_type == EXCESSIVE_LENGTH


def test_private_and_loopback_hosts():
    assert validate_url('http://192.168.1.10/admin').error_type == DISALLOWED_HOST
    assert validate_url('http://127.0.0.1').error_type == DISALLOWED_HOST
    assert validate_url('http://localhost:8080').error_type == DISALLOWED_HOST

    assert validate_url('http://192.168.1.10/admin', allow_private=True).is_valid
    assert validate_url('http://127.0.0.1', allow_localhost=True).is_valid
    assert validate_url('http://localhost:8080', allow_localhost=True).is_valid


def test_public_ip_is_allowed():
    result = validate_url('http://8.8.8.8/path')
    assert result.is_valid
    assert result.parsed.is_ipv4
    assert result.parsed.domain == '8.8.8.8'


def test_invalid_port_is_malformed():
    assert validate_url('https://example.com:99999').error_type == MALFORMED


def test_validate_never_raises():
    for raw in ['http://[::1', 'https://exa mple.com', 'http://', '://', 'https://example.com//etc']:
        result = validate_url(raw)
        assert result.is_valid == False
        assert result.error_type is not None


def test_domain_helpers():
    assert split_domain('login.secure.paypal.co.uk') == ('paypal.co.uk', 'login.secure')
    assert registrable_label('www.paypal.co.uk') == 'paypal'
