"""Tests for token validity checks and single-flight refresh."""

import asyncio

import pytest

from authpipe.service.errors import NetworkError, TokenExpiredError
from authpipe.storage.models import Token

USER = {"id": "u-1", "username": "ada"}


@pytest.fixture
def tokens(client):
    return client.tokens


class TestIsExpired:
    def test_missing_token_is_expired(self, tokens):
        assert tokens.is_expired(None)

    def test_token_outside_buffer_is_valid(self, tokens, make_jwt):
        assert not tokens.is_expired(Token.from_value(make_jwt(600)))

    def test_token_inside_refresh_buffer_is_expired(self, tokens, make_jwt):
        # Default buffer is five minutes
        assert tokens.is_expired(Token.from_value(make_jwt(200)))

    def test_past_exp_is_expired(self, tokens, make_jwt):
        assert tokens.is_expired(Token.from_value(make_jwt(-10)))


class TestGetValidToken:
    @pytest.mark.asyncio
    async def test_returns_none_without_stored_token(self, tokens, transport):
        assert await tokens.get_valid_token() is None
        assert transport.calls == []

    @pytest.mark.asyncio
    async def test_returns_stored_token_when_fresh(self, tokens, transport, signed_in):
        stored = await signed_in(expires_in=3600)

        token = await tokens.get_valid_token()

        assert token.value == stored
        assert transport.calls == []

    @pytest.mark.asyncio
    async def test_refreshes_expired_token(
        self, tokens, client, transport, signed_in, make_jwt, respond
    ):
        await signed_in(expires_in=-60, refresh_token="refresh-1")
        new_token = make_jwt(3600)
        transport.route(
            "/api/auth/refresh",
            respond(200, {"access_token": new_token, "refresh_token": "refresh-2"}),
        )

        token = await tokens.get_valid_token()

        assert token.value == new_token
        (call,) = transport.calls_to("/api/auth/refresh")
        assert call.method == "POST"
        assert call.json() == {"refresh_token": "refresh-1"}
        assert "Authorization" not in call.headers
        assert await client.credentials.get_stored_token() == new_token
        assert await client.credentials.get_stored_refresh_token() == "refresh-2"
        stored = await client.get_stored_user_data()
        assert stored.user == {"id": "u-1", "username": "ada", "email": "ada@example.com"}

    @pytest.mark.asyncio
    async def test_keeps_refresh_token_when_not_rotated(
        self, tokens, client, transport, signed_in, make_jwt, respond
    ):
        await signed_in(expires_in=-60, refresh_token="refresh-1")
        transport.route("/api/auth/refresh", respond(200, {"token": make_jwt(3600)}))

        await tokens.get_valid_token()

        assert await client.credentials.get_stored_refresh_token() == "refresh-1"

    @pytest.mark.asyncio
    async def test_undecodable_token_triggers_refresh(
        self, tokens, client, transport, make_jwt, respond
    ):
        await client.store_auth_data(USER, "not-a-jwt", "refresh-1")
        new_token = make_jwt(3600)
        transport.route("/api/auth/refresh", respond(200, {"access_token": new_token}))

        token = await tokens.get_valid_token()

        assert token.value == new_token

    @pytest.mark.asyncio
    async def test_missing_refresh_token_clears_credentials(
        self, tokens, client, storage, transport, make_jwt
    ):
        await client.store_auth_data(USER, make_jwt(-60), None)

        assert await tokens.get_valid_token() is None
        assert transport.calls == []
        assert storage.data == {}

    @pytest.mark.asyncio
    async def test_rejected_refresh_clears_credentials(
        self, tokens, storage, transport, signed_in, respond
    ):
        await signed_in(expires_in=-60)
        transport.route("/api/auth/refresh", respond(401, {"message": "revoked"}))

        assert await tokens.get_valid_token() is None
        assert storage.data == {}
        assert not tokens.refresh_in_flight


class TestSingleFlightRefresh:
    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_refresh(
        self, tokens, transport, signed_in, make_jwt, respond
    ):
        await signed_in(expires_in=-60)
        new_token = make_jwt(3600)
        transport.delay = 0.01
        transport.route("/api/auth/refresh", respond(200, {"access_token": new_token}))

        results = await asyncio.gather(*(tokens.get_valid_token() for _ in range(8)))

        assert len(transport.calls_to("/api/auth/refresh")) == 1
        assert {token.value for token in results} == {new_token}
        assert not tokens.refresh_in_flight

    @pytest.mark.asyncio
    async def test_cancelled_waiter_does_not_abort_refresh(
        self, tokens, client, transport, signed_in, make_jwt, respond
    ):
        await signed_in(expires_in=-60)
        new_token = make_jwt(3600)
        transport.delay = 0.05
        transport.route("/api/auth/refresh", respond(200, {"access_token": new_token}))

        first = asyncio.ensure_future(tokens.get_valid_token())
        second = asyncio.ensure_future(tokens.get_valid_token())
        await asyncio.sleep(0.01)
        assert tokens.refresh_in_flight

        first.cancel()
        with pytest.raises(asyncio.CancelledError):
            await first

        token = await second

        assert token.value == new_token
        assert await client.credentials.get_stored_token() == new_token
        assert len(transport.calls_to("/api/auth/refresh")) == 1
        assert not tokens.refresh_in_flight

    @pytest.mark.asyncio
    async def test_sole_waiter_cancelled_refresh_still_commits(
        self, tokens, client, transport, signed_in, make_jwt, respond
    ):
        await signed_in(expires_in=-60)
        new_token = make_jwt(3600)
        transport.delay = 0.02
        transport.route("/api/auth/refresh", respond(200, {"access_token": new_token}))

        waiter = asyncio.ensure_future(tokens.get_valid_token())
        await asyncio.sleep(0.005)
        waiter.cancel()
        with pytest.raises(asyncio.CancelledError):
            await waiter

        await asyncio.sleep(0.05)

        assert await client.credentials.get_stored_token() == new_token
        assert not tokens.refresh_in_flight

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_failure(
        self, tokens, transport, signed_in, respond
    ):
        await signed_in(expires_in=-60)
        transport.delay = 0.01
        transport.route("/api/auth/refresh", respond(500))

        results = await asyncio.gather(*(tokens.get_valid_token() for _ in range(5)))

        assert results == [None] * 5
        assert len(transport.calls_to("/api/auth/refresh")) == 1

    @pytest.mark.asyncio
    async def test_failed_refresh_does_not_wedge_later_refreshes(
        self, tokens, transport, signed_in, make_jwt, respond
    ):
        await signed_in(expires_in=-60)
        transport.route("/api/auth/refresh", respond(500))

        with pytest.raises(TokenExpiredError):
            await tokens.refresh_if_needed()
        assert not tokens.refresh_in_flight

        await signed_in(expires_in=-60)
        new_token = make_jwt(3600)
        transport.routes["/api/auth/refresh"] = [
            respond(200, {"access_token": new_token})
        ]

        token = await tokens.refresh_if_needed()

        assert token.value == new_token
        assert len(transport.calls_to("/api/auth/refresh")) == 2

    @pytest.mark.asyncio
    async def test_transport_failure_surfaces_as_token_expired(
        self, tokens, storage, transport, signed_in
    ):
        await signed_in(expires_in=-60)
        transport.route("/api/auth/refresh", NetworkError("Request timed out"))

        with pytest.raises(TokenExpiredError) as exc_info:
            await tokens.refresh_if_needed()

        assert isinstance(exc_info.value.__cause__, NetworkError)
        assert storage.data == {}

    @pytest.mark.asyncio
    async def test_malformed_refresh_body_is_rejected(
        self, tokens, transport, signed_in, respond
    ):
        await signed_in(expires_in=-60)
        transport.route("/api/auth/refresh", respond(200, {"access_token": "opaque"}))

        with pytest.raises(TokenExpiredError):
            await tokens.refresh_if_needed()
