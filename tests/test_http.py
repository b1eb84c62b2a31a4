"""Tests for the shared HTTP transport and the RxNorm resolver."""

from unittest.mock import AsyncMock, patch

import httpx
import pytest

from ddiminer.api.http import SourceHTTPClient, parse_retry_after
from ddiminer.api.rxnorm import RxNormClient
from ddiminer.errors import RateLimitedError, SourceUnavailableError

URL = "https://example.org/api"


def make_client(responses, **kwargs):
    """Client whose transport replays the given responses (or exceptions) in order."""
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        outcome = responses[min(len(calls), len(responses)) - 1]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    options = {
        "max_attempts": 3,
        "backoff_min": 0,
        "backoff_max": 0,
        "rate_limit_backoff": 30,
        "rate_limit_attempts": 2,
        "sleep": AsyncMock(),
    }
    options.update(kwargs)
    client = SourceHTTPClient("clinical_trial", transport=httpx.MockTransport(handler), **options)
    return client, calls


class TestSourceHTTPClient:
    """Tests for retry, throttling and error mapping."""

    @pytest.mark.asyncio
    async def test_transient_failure_retried(self):
        client, calls = make_client([httpx.Response(503), httpx.Response(200, json={"ok": True})])
        async with client:
            assert await client.get_json(URL) == {"ok": True}
        assert len(calls) == 2
        client._sleep.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_exhausted_retries_raise_unavailable(self):
        client, calls = make_client([httpx.Response(502)])
        async with client:
            with pytest.raises(SourceUnavailableError) as exc_info:
                await client.get_json(URL)
        assert len(calls) == 3
        assert exc_info.value.source_type == "clinical_trial"
        assert "HTTP 502 after 3 attempt(s)" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_transport_error_retried_then_unavailable(self):
        client, calls = make_client([httpx.ConnectError("connection refused")])
        async with client:
            with pytest.raises(SourceUnavailableError):
                await client.get_json(URL)
        assert len(calls) == 3

    @pytest.mark.asyncio
    async def test_rate_limit_honours_retry_after(self):
        client, calls = make_client([httpx.Response(429, headers={"Retry-After": "7"})])
        async with client:
            with pytest.raises(RateLimitedError) as exc_info:
                await client.get_json(URL)
        assert len(calls) == 2
        assert exc_info.value.retry_after == 7.0
        client._sleep.assert_awaited_once_with(7.0)

    @pytest.mark.asyncio
    async def test_rate_limit_without_header_uses_source_backoff(self):
        client, _ = make_client([httpx.Response(429), httpx.Response(200, json=[])])
        async with client:
            assert await client.get_json(URL) == []
        client._sleep.assert_awaited_once_with(30)

    @pytest.mark.asyncio
    async def test_throttled_attempts_do_not_use_up_transient_retries(self):
        client, calls = make_client(
            [
                httpx.Response(429, headers={"Retry-After": "1"}),
                httpx.Response(429, headers={"Retry-After": "1"}),
                httpx.Response(503),
                httpx.Response(503),
                httpx.Response(200, json={"ok": True}),
            ],
            rate_limit_attempts=3,
        )
        async with client:
            assert await client.get_json(URL) == {"ok": True}
        assert len(calls) == 5

    @pytest.mark.asyncio
    async def test_not_found_is_empty(self):
        client, _ = make_client([httpx.Response(404)])
        async with client:
            assert await client.get_json(URL) is None
            assert await client.get_text(URL) is None

    @pytest.mark.asyncio
    async def test_client_error_not_retried(self):
        client, calls = make_client([httpx.Response(400)])
        async with client:
            with pytest.raises(SourceUnavailableError):
                await client.get_json(URL)
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_malformed_json(self):
        client, _ = make_client([httpx.Response(200, text="<html>oops</html>")])
        async with client:
            with pytest.raises(SourceUnavailableError, match="Malformed JSON"):
                await client.get_json(URL)

    @pytest.mark.asyncio
    async def test_query_params_and_user_agent_sent(self):
        client, calls = make_client([httpx.Response(200, text="<xml/>")])
        async with client:
            assert await client.get_text(URL, params={"db": "pubmed"}) == "<xml/>"
        assert calls[0].url.params["db"] == "pubmed"
        assert calls[0].headers["User-Agent"].startswith("ddiminer")

    def test_parse_retry_after(self):
        assert parse_retry_after("12") == 12.0
        assert parse_retry_after("-3") == 0.0
        assert parse_retry_after(None) is None
        assert parse_retry_after("soon") is None
        assert parse_retry_after("Wed, 21 Oct 2015 07:28:00 GMT") == 0.0


class TestRxNormClient:
    """Tests for drug name resolution."""

    @pytest.mark.asyncio
    async def test_resolve_uses_approximate_match(self):
        client = RxNormClient(base_url="https://rxnav.test/REST", http=SourceHTTPClient("rxnorm"))
        payload = {"approximateGroup": {"candidate": [{"rxcui": "3639", "name": "DOXOrubicin"}]}}

        with patch.object(client.http, "get_json", new=AsyncMock(return_value=payload)) as mock_get:
            resolved = await client.resolve("  Adriamycin ")
            again = await client.resolve("adriamycin")

        assert resolved.code == "3639"
        assert resolved.canonical_name == "doxorubicin"
        assert again == resolved
        mock_get.assert_awaited_once()
        assert mock_get.await_args.kwargs["params"] == {"term": "adriamycin", "maxEntries": 1}

    @pytest.mark.asyncio
    async def test_missing_name_falls_back_to_properties(self):
        client = RxNormClient(http=SourceHTTPClient("rxnorm"))
        responses = [
            {"approximateGroup": {"candidate": [{"rxcui": "2555"}]}},
            {"properties": {"rxcui": "2555", "name": "Cisplatin"}},
        ]

        with patch.object(client.http, "get_json", new=AsyncMock(side_effect=responses)) as mock_get:
            resolved = await client.resolve("cisplatin")

        assert resolved.canonical_name == "cisplatin"
        assert mock_get.await_args.args[0].endswith("/rxcui/2555/properties.json")

    @pytest.mark.asyncio
    async def test_unknown_drug(self):
        client = RxNormClient(http=SourceHTTPClient("rxnorm"))
        with patch.object(client.http, "get_json", new=AsyncMock(return_value={"approximateGroup": {}})):
            assert await client.resolve("notadrug") is None

    @pytest.mark.asyncio
    async def test_failures_are_not_cached(self):
        client = RxNormClient(http=SourceHTTPClient("rxnorm"))
        payload = {"approximateGroup": {"candidate": [{"rxcui": "11289", "name": "warfarin"}]}}
        side_effect = [SourceUnavailableError("rxnorm", "HTTP 503 after 3 attempt(s)"), payload]

        with patch.object(client.http, "get_json", new=AsyncMock(side_effect=side_effect)):
            assert await client.resolve("warfarin") is None
            resolved = await client.resolve("warfarin")

        assert resolved.code == "11289"
