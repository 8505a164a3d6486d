import asyncio
import json

import pytest

from analyze.ai_analyzer import AIURLAnalyzer, merge_indicators
from analyze.ai_client import AIClient, AIClientSettings, estimate_request_cost, estimate_tokens
from analyze.base import ErrorType
from analyze.prompts import create_url_analysis_prompt, generate_cache_key, validate_ai_response
from utils.cache import CacheManager, MemoryCache
from validation.url_validator import parse_url

VALID_ANSWER = {
    'risk_score': 82,
    'confidence': 90,
    'primary_risks': ['brand impersonation'],
    'scam_category': 'phishing',
    'indicators': ['login form on new domain'],
    'explanation': 'The domain imitates PayPal and asks for credentials.',
}


class FakeResponse:
    def __init__(self, status_code=200, payload=None, text=''):
        self.status_code = status_code
        self._payload = payload
        self.text = text

    def json(self):
        if self._payload is None:
            raise ValueError('not json')
        return self._payload


class FakeSession:
    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []

    def post(self, url, headers=None, json=None, timeout=None):
        self.calls.append({'url': url, 'headers': headers, 'json': json})
        return self.responses.pop(0)


def openai_response(content, prompt_tokens=100, completion_tokens=50):
    return FakeResponse(payload={
        'choices': [{'message': {'content': content}}],
        'usage': {'prompt_tokens': prompt_tokens, 'completion_tokens': completion_tokens},
    })


def make_client(session, sleeps=None, **overrides):
    settings = AIClientSettings(**{'provider': 'openai', 'api_key': 'sk-test', 'model': 'gpt-4',
                                   'cost_threshold': 0.05, **overrides})
    return AIClient(settings, session=session, sleep=(sleeps.append if sleeps is not None else lambda _: None))


def make_analyzer(session, **overrides):
    return AIURLAnalyzer(make_client(session, **overrides), CacheManager(MemoryCache(), 'ai', 60), enabled=True)


def test_cost_estimates():
    assert estimate_tokens('abcd' * 10) == 10
    assert estimate_tokens('abcde') == 2
    assert estimate_request_cost('gpt-4', 100, 50) == pytest.approx(0.006)
    assert estimate_request_cost('some-unknown-model', 100) == 0.01


def test_openai_completion():
    session = FakeSession(openai_response(json.dumps(VALID_ANSWER)))
    client = make_client(session)
    completion = client.complete('Is this URL safe?')

    assert json.loads(completion.content) == VALID_ANSWER
    assert completion.token_usage.total_tokens == 150
    assert completion.cost == pytest.approx(0.006)
    assert session.calls[0]['json']['response_format'] == {'type': 'json_object'}
    assert session.calls[0]['headers']['Authorization'] == 'Bearer sk-test'
    assert client.get_usage_stats()['successful'] == 1


def test_claude_completion():
    session = FakeSession(FakeResponse(payload={
        'content': [{'type': 'text', 'text': json.dumps(VALID_ANSWER)}],
        'usage': {'input_tokens': 120, 'output_tokens': 40},
    }))
    client = make_client(session, provider='claude', model='claude-3-haiku-20240307')
    completion = client.complete('Is this URL safe?')

    assert json.loads(completion.content)['scam_category'] == 'phishing'
    assert completion.token_usage.prompt_tokens == 120
    assert session.calls[0]['headers']['x-api-key'] == 'sk-test'


def test_missing_api_key():
    session = FakeSession()
    with pytest.raises(Exception) as excinfo:
        make_client(session, api_key='').complete('prompt')
    assert excinfo.value.error_type == ErrorType.API_KEY_MISSING
    assert session.calls == []


def test_cost_ceiling_refuses_without_request():
    session = FakeSession()
    client = make_client(session, cost_threshold=0.001)
    with pytest.raises(Exception) as excinfo:
        client.complete('x' * 4000)
    assert excinfo.value.error_type == ErrorType.COST_THRESHOLD_EXCEEDED
    assert excinfo.value.retryable == False
    assert session.calls == []
    assert client.get_usage_stats()['refused_for_cost'] == 1


def test_server_errors_are_retried_with_backoff():
    sleeps = []
    session = FakeSession(
        FakeResponse(status_code=502, payload={'error': {'message': 'bad gateway'}}),
        FakeResponse(status_code=503, payload={'error': {'message': 'overloaded'}}),
        openai_response(json.dumps(VALID_ANSWER)),
    )
    completion = make_client(session, sleeps=sleeps, retry_attempts=2).complete('prompt')
    assert completion.attempts == 3
    assert sleeps == [1.0, 2.0]


def test_quota_exhaustion_is_not_retried():
    session = FakeSession(
        FakeResponse(status_code=429, payload={'error': {'message': 'You exceeded your current quota'}}),
        openai_response(json.dumps(VALID_ANSWER)),
    )
    with pytest.raises(Exception) as excinfo:
        make_client(session).complete('prompt')
    assert excinfo.value.error_type == ErrorType.RATE_LIMIT
    assert len(session.calls) == 1


def test_invalid_key_is_not_retried():
    session = FakeSession(FakeResponse(status_code=401, payload={'error': {'message': 'Incorrect API key'}}))
    with pytest.raises(Exception) as excinfo:
        make_client(session).complete('prompt')
    assert excinfo.value.error_type == ErrorType.API_KEY_INVALID
    assert len(session.calls) == 1


def test_settings_validation():
    assert AIClientSettings(api_key='k').validate() == []
    errors = AIClientSettings(provider='other', temperature=3, cost_threshold=0).validate()
    assert len(errors) == 3


def test_validate_ai_response():
    parsed, error = validate_ai_response(json.dumps(VALID_ANSWER))
    assert error is None
    assert parsed['risk_score'] == 82

    assert validate_ai_response('not json')[1].startswith('Invalid JSON')
    assert validate_ai_response('[]')[1] == 'Response must be a JSON object'
    assert validate_ai_response(json.dumps({**VALID_ANSWER, 'risk_score': 150}))[1] is not None
    assert validate_ai_response(json.dumps({**VALID_ANSWER, 'risk_score': True}))[1] is not None
    assert validate_ai_response(json.dumps({**VALID_ANSWER, 'scam_category': 'other'}))[1] is not None
    assert validate_ai_response(json.dumps({**VALID_ANSWER, 'explanation': 'short'}))[1] is not None
    missing = dict(VALID_ANSWER)
    del missing['indicators']
    assert validate_ai_response(json.dumps(missing))[1] == 'Missing required field: indicators'


def test_prompt_contains_url_and_context():
    prompt = create_url_analysis_prompt(
        url='https://paypa1.com/login',
        domain='paypa1.com',
        path='/login',
        parameters={'next': '/home'},
        context={
            'url_structure': {'is_ip': False, 'has_https': True, 'path_depth': 1, 'query_param_count': 1},
            'domain_age': {'age_in_days': 3, 'registrar': 'NameCheap, Inc.'},
            'detected_patterns': ['typosquatting'],
        },
    )
    assert 'https://paypa1.com/login' in prompt
    assert 'Domain Age: 3 days' in prompt
    assert 'Pattern Signals: typosquatting' in prompt
    assert '"next": "/home"' in prompt


def test_cache_key_depends_on_context():
    first = generate_cache_key('https://example.com/', {'url_structure': {'is_ip': False}})
    second = generate_cache_key('https://example.com/', {'url_structure': {'is_ip': True}})
    assert first != second
    assert first.endswith(':v2.0')


def test_merge_indicators():
    assert merge_indicators(['a'], ['a', 'typosquatting', 'analysis_failed']) == ['a', 'typosquatting']


def test_analyzer_success_and_cache():
    session = FakeSession(openai_response(json.dumps(VALID_ANSWER)))
    analyzer = make_analyzer(session)
    parsed = parse_url('https://paypa1.com/login')

    outcome = asyncio.run(analyzer.analyze(parsed))
    assert outcome.success == True
    result = outcome.data
    assert result.risk_score == 82
    assert result.confidence == 0.9
    assert result.scam_category == 'phishing'
    assert 'typosquatting' in result.indicators
    assert result.pattern_analysis.is_typosquat == True
    assert result.cost == pytest.approx(0.006)

    cached = asyncio.run(analyzer.analyze(parsed))
    assert cached.from_cache == True
    assert len(session.calls) == 1


def test_analyzer_rejects_malformed_answer():
    session = FakeSession(openai_response('{"risk_score": 50}'))
    outcome = asyncio.run(make_analyzer(session).analyze(parse_url('https://example.com/')))
    assert outcome.success == False
    assert outcome.error.type == ErrorType.INVALID_RESPONSE


def test_analyzer_cost_ceiling_outcome():
    session = FakeSession()
    outcome = asyncio.run(make_analyzer(session, cost_threshold=0.0001).analyze(parse_url('https://example.com/')))
    assert outcome.success == False
    assert outcome.error.code == 'cost_threshold_exceeded'
    assert session.calls == []


def test_disabled_analyzer():
    analyzer = AIURLAnalyzer(make_client(FakeSession()), CacheManager(MemoryCache(), 'ai', 60), enabled=False)
    outcome = asyncio.run(analyzer.analyze(parse_url('https://example.com/')))
    assert outcome.error.type == ErrorType.AI_DISABLED
