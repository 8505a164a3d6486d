import pytest

from app import create_app
from fakes import failing_services, make_orchestrator


@pytest.fixture
def client():
    app = create_app(make_orchestrator())
    app.config['TESTING'] = True
    return app.test_client()


def test_analyze_requires_url(client):
    response = client.post('/api/analyze', json={})
    assert response.status_code == 400
    assert response.get_json()['error'] == 'No URL provided'


def test_analyze_rejects_invalid_url(client):
    response = client.post('/api/analyze', json={'url': 'javascript:alert(1)'})
    body = response.get_json()
    assert response.status_code == 400
    assert body['status'] == 'error'
    assert body['error_type'] == 'disallowed_scheme'


def test_analyze_url(client):
    response = client.post('/api/analyze', json={'url': 'https://example.com/login'})
    body = response.get_json()

    assert response.status_code == 200
    assert body['status'] == 'success'
    scoring = body['data']['scoring_result']
    assert scoring['risk_level'] == 'low'
    assert scoring['url'] == 'https://example.com/login'
    assert len(scoring['risk_factors']) == 4
    assert body['data']['metrics']['services_succeeded'] == 4
    assert body['data']['from_cache'] == False

    cached = client.post('/api/analyze', json={'url': 'https://example.com/login'}).get_json()
    assert cached['data']['from_cache'] == True


def test_analyze_degrades_to_fallback():
    client = create_app(make_orchestrator(failing_services())).test_client()
    response = client.post('/api/analyze', json={'url': 'https://example.com/'})
    body = response.get_json()
    assert response.status_code == 200
    assert body['data']['error']['type'] == 'insufficient_services'
    assert body['data']['scoring_result']['final_score'] == 50.0


def test_health(client):
    body = client.get('/api/health').get_json()
    assert body['status'] == 'healthy'
    assert body['components']['cache'] == 'MemoryCache'
    assert body['components']['services'] == ['ai', 'reputation', 'ssl', 'whois']


def test_statistics(client):
    client.post('/api/analyze', json={'url': 'https://example.com/'})
    body = client.get('/api/statistics').get_json()
    assert body['data']['total_analyses'] == 1
    assert set(body['data']['cache']) == {'orchestration', 'whois'}
    assert body['data']['recent_analyses'][0]['url'] == 'https://example.com/'


def test_cache_routes(client):
    client.post('/api/analyze', json={'url': 'https://example.com/'})

    assert client.post('/api/cache/invalidate', json={}).status_code == 400
    response = client.post('/api/cache/invalidate', json={'pattern': '*example.com*'})
    assert response.get_json()['data']['removed'] == 1

    assert client.post('/api/cache/warm', json={'urls': 'https://example.com/'}).status_code == 400
    report = client.post('/api/cache/warm', json={'urls': ['https://example.com/']}).get_json()['data']
    assert report['warmed'] == 1

    assert client.post('/api/cache/clear').get_json()['data']['removed'] == 1


def test_scoring_config(client):
    body = client.get('/api/config/scoring').get_json()
    assert body['data']['config']['weights']['reputation'] == 0.4
    assert body['data']['history'][0]['reason'] == 'initial configuration'

    rejected = client.put('/api/config/scoring', json={'weights': {'reputation': 0.9}})
    assert rejected.status_code == 400
    assert rejected.get_json()['errors']

    misspelled = client.put('/api/config/scoring', json={'missing_strategy': 'penalty'})
    assert misspelled.status_code == 400
    assert 'missing_strategy' in misspelled.get_json()['errors'][0]

    accepted = client.put('/api/config/scoring', json={'thresholds': {'low_risk_max': 25}, 'reason': 'tune'})
    assert accepted.status_code == 200
    assert accepted.get_json()['data']['config']['thresholds']['low_risk_max'] == 25

    history = client.get('/api/config/scoring').get_json()['data']['history']
    assert history[-1]['reason'] == 'tune'
