"""Tests for StravaClient paging, rate limiting and error mapping.

HTTP is served by httpx.MockTransport; no real network calls are made.
"""
from unittest.mock import AsyncMock

import httpx
import pytest

from runsync.strava.client import StravaClient, to_epoch
from runsync.sync.errors import AuthenticationError, CircuitOpenError, NetworkError, RateLimitError
from runsync.sync.resilience import CircuitBreaker, RetryPolicy


def make_auth():
    auth = AsyncMock()
    auth.get_valid_access_token.return_value = "access-token"
    return auth


def make_client(settings, handler, **kwargs) -> StravaClient:
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    kwargs.setdefault("sleep", AsyncMock())
    return StravaClient(make_auth(), settings=settings, http=http, **kwargs)


def paged_handler(pages, requests, headers=None):
    """Serve pages[n-1] for ?page=n and record every request."""

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        page = int(request.url.params["page"])
        body = pages[page - 1] if page <= len(pages) else []
        return httpx.Response(200, json=body, headers=headers or {"X-RateLimit-Usage": "5,50"})

    return handler


class TestFetchPage:
    async def test_passes_params_and_bearer_token(self, settings, make_raw):
        requests = []
        client = make_client(settings, paged_handler([[make_raw(1)]], requests))

        page = await client.fetch_page("u1", page=1, page_size=50, after=1000, before=2000)

        req = requests[0]
        assert req.url.path == "/api/v3/athlete/activities"
        assert req.url.params["per_page"] == "50"
        assert req.url.params["after"] == "1000"
        assert req.url.params["before"] == "2000"
        assert req.headers["Authorization"] == "Bearer access-token"
        assert [r["id"] for r in page.records] == [1]
        assert page.has_more is False

    async def test_page_size_capped_at_200(self, settings):
        requests = []
        client = make_client(settings, paged_handler([[]], requests))
        await client.fetch_page("u1", page_size=500)
        assert requests[0].url.params["per_page"] == "200"

    async def test_skips_invalid_filters_types_and_dedupes(self, settings, make_raw):
        body = [
            make_raw(1),
            make_raw(1),
            make_raw(2, distance=-5),
            make_raw(3, type="Ride"),
            make_raw(4),
        ]
        client = make_client(settings, paged_handler([body], []))
        page = await client.fetch_page("u1", page_size=5)

        assert [r["id"] for r in page.records] == [1, 4]
        assert page.duplicates == 1
        assert page.filtered == 1
        assert page.skipped[0]["id"] == 2
        assert page.has_more is True  # raw length equals per_page

    async def test_usage_headers_update_ledger(self, settings):
        client = make_client(
            settings,
            paged_handler([[]], [], headers={"X-RateLimit-Usage": "12,340", "X-RateLimit-Limit": "200,2000"}),
        )
        await client.fetch_page("u1")
        usage = client.rate_limit_status()
        assert usage["short_term"]["used"] == 12
        assert usage["daily"]["limit"] == 2000

    @pytest.mark.parametrize("status", [401, 403])
    async def test_auth_failure(self, settings, status):
        client = make_client(settings, lambda r: httpx.Response(status, json={"message": "Authorization Error"}))
        with pytest.raises(AuthenticationError):
            await client.fetch_page("u1")

    async def test_429_carries_retry_after(self, settings):
        client = make_client(settings, lambda r: httpx.Response(429, headers={"Retry-After": "42"}))
        with pytest.raises(RateLimitError) as info:
            await client.fetch_page("u1")
        assert info.value.retry_after == 42
        assert info.value.retryable is True

    async def test_daily_budget_exhausted_makes_no_request(self, settings):
        requests = []
        client = make_client(settings, paged_handler([[]], requests))
        client.ledger.update_from_headers("10,950", "100,1000")
        with pytest.raises(RateLimitError) as info:
            await client.fetch_page("u1")
        assert info.value.retryable is False
        assert requests == []

    async def test_transport_error_is_network(self, settings):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        client = make_client(settings, handler)
        with pytest.raises(NetworkError):
            await client.fetch_page("u1")


class TestCircuitBreaker:
    async def test_opens_after_five_failures_and_recovers(self, settings):
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(503)

        now = [0.0]
        client = make_client(
            settings,
            handler,
            breaker_factory=lambda user: CircuitBreaker(user, failure_threshold=5, recovery_timeout=60, clock=lambda: now[0]),
            retry_policy=RetryPolicy(max_retries=0),
        )

        for _ in range(5):
            with pytest.raises(NetworkError):
                await client.fetch_page("u1")
        with pytest.raises(CircuitOpenError):
            await client.fetch_page("u1")
        assert len(requests) == 5

        now[0] += 61
        with pytest.raises(NetworkError):
            await client.fetch_page("u1")
        assert len(requests) == 6

    async def test_one_users_failures_leave_other_users_alone(self, settings, make_raw):
        requests = []

        def handler(request):
            requests.append(request)
            if request.headers["Authorization"] == "Bearer alice-token":
                return httpx.Response(503)
            return httpx.Response(200, json=[make_raw(1)])

        client = make_client(settings, handler, retry_policy=RetryPolicy(max_retries=0))
        client.auth.get_valid_access_token.side_effect = lambda user: f"{user}-token"

        for _ in range(5):
            with pytest.raises(NetworkError):
                await client.fetch_page("alice")
        with pytest.raises(CircuitOpenError):
            await client.fetch_page("alice")

        page = await client.fetch_page("bob")
        assert [r["id"] for r in page.records] == [1]
        assert len(requests) == 6
        status = client.circuit_breaker_status()
        assert status["alice"]["state"] == "open"
        assert status["bob"]["state"] == "closed"

    async def test_revoked_token_does_not_trip_breaker(self, settings):
        requests = []
        client = make_client(
            settings,
            lambda r: requests.append(r) or httpx.Response(401),
            retry_policy=RetryPolicy(max_retries=0),
        )
        for _ in range(settings.breaker_failure_threshold + 2):
            with pytest.raises(AuthenticationError):
                await client.fetch_page("alice")

        assert len(requests) == settings.breaker_failure_threshold + 2
        assert client.circuit_breaker_status("alice")["failures"] == 0


class TestFetchAll:
    async def test_three_pages_of_50_50_10(self, settings, make_raw):
        pages = [
            [make_raw(i) for i in range(1, 51)],
            [make_raw(i) for i in range(51, 101)],
            [make_raw(i) for i in range(101, 111)],
        ]
        requests = []
        client = make_client(settings, paged_handler(pages, requests))

        result = await client.fetch_all("u1", page_size=50)

        assert len(result.records) == 110
        assert len(requests) == 3
        assert result.pages == 3
        assert [int(r.url.params["page"]) for r in requests] == [1, 2, 3]

    async def test_on_page_called_with_running_total(self, settings, make_raw):
        pages = [[make_raw(1), make_raw(2)], [make_raw(3)]]
        client = make_client(settings, paged_handler(pages, []))
        seen = []

        async def on_page(page, total):
            seen.append((page.page, total, page.last_id))

        await client.fetch_all("u1", page_size=2, on_page=on_page)
        assert seen == [(1, 2, 2), (2, 3, 3)]

    async def test_retries_failing_page_then_continues(self, settings, make_raw):
        calls = {"n": 0}

        def handler(request):
            calls["n"] += 1
            if calls["n"] == 1:
                return httpx.Response(500)
            return httpx.Response(200, json=[make_raw(1)])

        sleep = AsyncMock()
        client = make_client(settings, handler, sleep=sleep)
        result = await client.fetch_all("u1", page_size=10)

        assert len(result.records) == 1
        assert calls["n"] == 2
        sleep.assert_any_await(1.0)

    async def test_auth_error_not_retried(self, settings):
        calls = []
        client = make_client(settings, lambda r: calls.append(r) or httpx.Response(401))
        with pytest.raises(AuthenticationError):
            await client.fetch_all("u1")
        assert len(calls) == 1

    async def test_429_waits_for_retry_after(self, settings, make_raw):
        responses = [httpx.Response(429, headers={"Retry-After": "20"}), httpx.Response(200, json=[make_raw(1)])]
        sleep = AsyncMock()
        client = make_client(settings, lambda r: responses.pop(0), sleep=sleep)
        result = await client.fetch_all("u1", page_size=10)
        assert len(result.records) == 1
        sleep.assert_any_await(20.0)

    async def test_gives_up_after_retry_policy(self, settings):
        calls = []
        client = make_client(
            settings,
            lambda r: calls.append(r) or httpx.Response(502),
            retry_policy=RetryPolicy(max_retries=2),
        )
        with pytest.raises(NetworkError):
            await client.fetch_all("u1")
        assert len(calls) == 3

    async def test_stops_at_max_pages(self, settings, make_raw):
        requests = []

        def handler(request):
            requests.append(request)
            page = int(request.url.params["page"])
            return httpx.Response(200, json=[make_raw(page * 10 + i) for i in range(2)])

        client = make_client(settings, handler)
        result = await client.fetch_all("u1", page_size=2, max_pages=3)
        assert len(requests) == 3
        assert result.truncated is True

    async def test_starts_from_given_page(self, settings, make_raw):
        pages = [[make_raw(1), make_raw(2)], [make_raw(3), make_raw(4)], [make_raw(5)]]
        requests = []
        client = make_client(settings, paged_handler(pages, requests))

        result = await client.fetch_all("u1", page_size=2, start_page=2)

        assert [int(r.url.params["page"]) for r in requests] == [2, 3]
        assert [r["id"] for r in result.records] == [3, 4, 5]
        assert result.pages == 2

    async def test_dedupes_across_pages(self, settings, make_raw):
        pages = [[make_raw(1), make_raw(2)], [make_raw(2)]]
        client = make_client(settings, paged_handler(pages, []))
        result = await client.fetch_all("u1", page_size=2)
        assert [r["id"] for r in result.records] == [1, 2]


def test_to_epoch_treats_naive_as_utc():
    from datetime import datetime

    assert to_epoch(datetime(1970, 1, 2)) == 86400
    assert to_epoch(None) is None
