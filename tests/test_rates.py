import httpx
import pytest

import rates


@pytest.fixture(autouse=True)
def fresh_cache(monkeypatch):
    monkeypatch.delenv('EXCHANGE_RATE_API_KEY', raising=False)
    rates.clear_cache()
    yield
    rates.clear_cache()


def mock_client(handler):
    return httpx.Client(transport=httpx.MockTransport(handler))


def test_without_key_uses_builtin_table():
    table = rates.get_exchange_rates(None)
    assert table['USD'] == 1
    assert table['EUR'] == rates.FALLBACK_RATES['EUR']


def test_fetch_success():
    def handler(request):
        assert request.url.path == '/v6/secret/latest/USD'
        return httpx.Response(200, json={'result': 'success', 'conversion_rates': {'USD': 1, 'EUR': 0.9}})

    with mock_client(handler) as client:
        assert rates.fetch_exchange_rates('secret', client=client) == {'USD': 1, 'EUR': 0.9}


def test_provider_error_returns_none():
    def handler(request):
        return httpx.Response(200, json={'result': 'error', 'error-type': 'invalid-key'})

    with mock_client(handler) as client:
        assert rates.fetch_exchange_rates('bad', client=client) is None


def test_http_failure_returns_none():
    def handler(request):
        return httpx.Response(503)

    with mock_client(handler) as client:
        assert rates.get_exchange_rates('secret', client=client) is None


def test_network_error_returns_none():
    def handler(request):
        raise httpx.ConnectError("unreachable", request=request)

    with mock_client(handler) as client:
        assert rates.fetch_exchange_rates('secret', client=client) is None


def test_successful_table_is_cached():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(200, json={'result': 'success', 'conversion_rates': {'USD': 1}})

    with mock_client(handler) as client:
        rates.get_exchange_rates('secret', client=client)
        rates.get_exchange_rates('secret', client=client)
        assert len(calls) == 1
        rates.get_exchange_rates('other-key', client=client)
        assert len(calls) == 2

def test_each_key_keeps_its_own_table():
    calls = []

    def handler(request):
        calls.append(request.url.path)
        rate = 0.9 if '/secret/' in request.url.path else 0.8
        return httpx.Response(200, json={'result': 'success', 'conversion_rates': {'USD': 1, 'EUR': rate}})

    with mock_client(handler) as client:
        assert rates.get_exchange_rates('secret', client=client)['EUR'] == 0.9
        assert rates.get_exchange_rates('other-key', client=client)['EUR'] == 0.8
        assert rates.get_exchange_rates('secret', client=client)['EUR'] == 0.9
        assert rates.get_exchange_rates('other-key', client=client)['EUR'] == 0.8
    assert len(calls) == 2


def test_failure_is_not_retried_right_away(monkeypatch):
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(503)

    with mock_client(handler) as client:
        assert rates.get_exchange_rates('secret', client=client) is None
        assert rates.get_exchange_rates('secret', client=client) is None
        assert len(calls) == 1

        monkeypatch.setattr(rates, 'RETRY_SECONDS', 0)
        assert rates.get_exchange_rates('secret', client=client) is None
        assert len(calls) == 2
