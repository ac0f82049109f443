"""
Me Inc. Finance - Exchange Rate Provider

Fetches a currency -> rate table quoted against USD from exchangerate-api.com
and keeps one in-memory cache entry per API key (24h by default). A failed
fetch is remembered for a few minutes so an outage is not retried on every
request.

Degraded behaviour:
- No API key configured: an approximate built-in table is used.
- Provider unreachable or answering an error: returns None. Callers build an
  identity converter from None (see valuation.make_converter), so reports are
  still produced, only without conversion.
"""

import os
import time

import httpx


RATE_API_URL = "https://v6.exchangerate-api.com/v6/{api_key}/latest/USD"
CACHE_SECONDS = int(os.getenv('RATE_CACHE_SECONDS', 24 * 60 * 60))
RETRY_SECONDS = int(os.getenv('RATE_RETRY_SECONDS', 5 * 60))
REQUEST_TIMEOUT = 10.0

# Approximate rates for installs without an API key
FALLBACK_RATES = {
    'USD': 1,
    'CNY': 7.25,
    'EUR': 0.92,
    'GBP': 0.79,
    'JPY': 149.5,
    'CAD': 1.36,
    'AUD': 1.53,
    'HKD': 7.82,
    'SGD': 1.34,
    'KRW': 1320,
}

# api_key -> (rates or None, fetched_at)
_cache = {}


def clear_cache():
    _cache.clear()


def _cached(api_key):
    """(hit, rates) for a key; a hit may carry None for a recent failure."""
    entry = _cache.get(api_key)
    if entry is None:
        return False, None
    rates, fetched_at = entry
    ttl = CACHE_SECONDS if rates else RETRY_SECONDS
    if time.time() - fetched_at >= ttl:
        return False, None
    return True, rates


def fetch_exchange_rates(api_key, client=None):
    """
    Ask the provider for the latest table.

    Returns the `conversion_rates` mapping, or None when the request fails or
    the provider reports an error.
    """
    owns_client = client is None
    if owns_client:
        client = httpx.Client(timeout=REQUEST_TIMEOUT, headers={'Accept': 'application/json'})
    try:
        response = client.get(RATE_API_URL.format(api_key=api_key))
        if response.status_code != 200:
            print(f"[RATES] Exchange rate API error: HTTP {response.status_code}")
            return None
        data = response.json()
        if data.get('result') != 'success':
            print(f"[RATES] Exchange rate API returned: {data.get('error-type', data.get('result'))}")
            return None
        return data.get('conversion_rates')
    except (httpx.HTTPError, ValueError) as e:
        print(f"[RATES] Failed to fetch exchange rates: {e}")
        return None
    finally:
        if owns_client:
            client.close()


def get_exchange_rates(api_key=None, client=None):
    """
    Rate table for conversions: cached, fetched, built-in, or None.

    `api_key` falls back to the EXCHANGE_RATE_API_KEY environment variable.
    """
    api_key = api_key or os.getenv('EXCHANGE_RATE_API_KEY')
    if not api_key:
        return dict(FALLBACK_RATES)

    hit, rates = _cached(api_key)
    if hit:
        return rates

    rates = fetch_exchange_rates(api_key, client=client)
    _cache[api_key] = (rates, time.time())
    return rates
