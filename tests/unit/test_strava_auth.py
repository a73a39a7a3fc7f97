"""Tests for StravaAuth token storage and refresh."""
from urllib.parse import parse_qs

import httpx
import pytest
from sqlmodel import select

from runsync.models.token import StravaToken
from runsync.strava.auth import StravaAuth
from runsync.sync.errors import AuthenticationError, NetworkError

NOW = 1_700_000_000


def make_auth(engine, settings, handler=None, now=NOW):
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler)) if handler else None
    return StravaAuth(engine, settings=settings, http=http, clock=lambda: now)


def token_handler(calls, status=200, body=None):
    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(
            status,
            json=body
            or {"access_token": "new-access", "refresh_token": "new-refresh", "expires_at": NOW + 21600},
        )

    return handler


class TestGetValidAccessToken:
    async def test_no_credentials(self, engine, settings):
        with pytest.raises(AuthenticationError) as info:
            await make_auth(engine, settings).get_valid_access_token("u1")
        assert info.value.code == "NO_CREDENTIALS"
        assert info.value.retryable is False

    async def test_fresh_token_used_without_refresh(self, engine, settings):
        calls = []
        auth = make_auth(engine, settings, token_handler(calls))
        auth.save_tokens("u1", {"access_token": "a", "refresh_token": "r", "expires_at": NOW + 3600})

        assert await auth.get_valid_access_token("u1") == "a"
        assert calls == []

    async def test_refreshes_within_five_minutes_of_expiry(self, engine, settings, test_session):
        calls = []
        auth = make_auth(engine, settings, token_handler(calls))
        auth.save_tokens("u1", {"access_token": "a", "refresh_token": "r", "expires_at": NOW + 299})

        assert await auth.get_valid_access_token("u1") == "new-access"

        form = parse_qs(calls[0].content.decode())
        assert form["grant_type"] == ["refresh_token"]
        assert form["refresh_token"] == ["r"]
        assert form["client_id"] == ["12345"]
        stored = test_session.exec(select(StravaToken)).one()
        assert stored.refresh_token == "new-refresh"
        assert stored.expires_at == NOW + 21600

    async def test_refresh_rejected_is_auth_error(self, engine, settings):
        auth = make_auth(engine, settings, token_handler([], status=400, body={"message": "Bad Request"}))
        auth.save_tokens("u1", {"access_token": "", "refresh_token": "r", "expires_at": 0})
        with pytest.raises(AuthenticationError) as info:
            await auth.get_valid_access_token("u1")
        assert info.value.code == "TOKEN_REFRESH_FAILED"

    async def test_refresh_server_error_is_retryable(self, engine, settings):
        auth = make_auth(engine, settings, token_handler([], status=503, body={"message": "down"}))
        auth.save_tokens("u1", {"access_token": "", "refresh_token": "r", "expires_at": 0})
        with pytest.raises(NetworkError) as info:
            await auth.get_valid_access_token("u1")
        assert info.value.retryable is True

    async def test_unreachable_token_endpoint(self, engine, settings):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        auth = make_auth(engine, settings, handler)
        auth.save_tokens("u1", {"access_token": "", "refresh_token": "r", "expires_at": 0})
        with pytest.raises(NetworkError) as info:
            await auth.get_valid_access_token("u1")
        assert info.value.code == "TOKEN_REFRESH_UNREACHABLE"


class TestTokenStorage:
    def test_save_updates_in_place(self, engine, settings, test_session):
        auth = make_auth(engine, settings)
        auth.save_tokens(
            "u1",
            {"access_token": "a", "refresh_token": "r", "expires_at": 1, "athlete": {"id": 42}},
            scope="activity:read_all",
        )
        auth.save_tokens("u1", {"access_token": "b", "refresh_token": "r2", "expires_at": 2})

        token = test_session.exec(select(StravaToken)).one()
        assert token.access_token == "b"
        assert token.athlete_id == 42
        assert token.scope == "activity:read_all"

    def test_delete(self, engine, settings):
        auth = make_auth(engine, settings)
        auth.save_tokens("u1", {"access_token": "a", "refresh_token": "r", "expires_at": 1})
        assert auth.delete_tokens("u1") is True
        assert auth.delete_tokens("u1") is False
