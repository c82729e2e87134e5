"""Tests for OAuth authorization-code delivery."""

from unittest.mock import AsyncMock
from unittest.mock import MagicMock

import pytest

from chatgate.errors import AuthenticationError
from chatgate.errors import ConfigurationError
from chatgate.schemas.schemas import ConnectionState
from chatgate.services.oauth_callback import OAuthCallbackHandler
from chatgate.services.oauth_callback import extract_oauth_params
from chatgate.services.oauth_callback import strip_oauth_params

MARKER = "chatgate-oauth"


@pytest.fixture
def connection():
    manager = MagicMock()
    manager.complete_authentication = AsyncMock(return_value=ConnectionState(is_connected=True))
    return manager


@pytest.fixture
def handler(connection):
    return OAuthCallbackHandler(connection, MARKER)


def test_extract_and_strip_params():
    url = "https://app.test/settings?tab=slack&code=abc&state=chatgate-oauth#top"

    assert extract_oauth_params(url) == ("abc", MARKER)
    assert strip_oauth_params(url) == "https://app.test/settings?tab=slack#top"
    assert extract_oauth_params("https://app.test/") == (None, None)


@pytest.mark.asyncio
async def test_code_is_exchanged_once(handler, connection):
    state = await handler.handle_code("abc", MARKER)

    assert state.is_connected
    connection.complete_authentication.assert_awaited_once_with("abc")

    with pytest.raises(AuthenticationError):
        await handler.handle_code("abc", MARKER)
    assert connection.complete_authentication.await_count == 1


@pytest.mark.asyncio
async def test_state_marker_is_required(handler, connection):
    with pytest.raises(AuthenticationError):
        await handler.handle_code("abc", "forged")
    with pytest.raises(AuthenticationError):
        await handler.handle_code("abc", None)
    connection.complete_authentication.assert_not_awaited()


@pytest.mark.asyncio
async def test_missing_code_is_a_configuration_error(handler):
    with pytest.raises(ConfigurationError):
        await handler.handle_code(None, MARKER)


@pytest.mark.asyncio
async def test_handle_url_returns_cleaned_url(handler):
    state, cleaned = await handler.handle_url(f"chatgate://oauth?code=xyz&state={MARKER}")

    assert state.is_connected
    assert "code" not in cleaned
    assert "state" not in cleaned


@pytest.mark.asyncio
async def test_native_event_duplicates_are_ignored(handler, connection):
    assert await handler.handle_native_event({"code": "n1", "state": MARKER}) is True
    assert await handler.handle_native_event({"code": "n1", "state": MARKER}) is False
    assert await handler.handle_native_event({"url": f"chatgate://oauth?code=n2&state={MARKER}"}) is True

    assert [c.args[0] for c in connection.complete_authentication.await_args_list] == ["n1", "n2"]


@pytest.mark.asyncio
async def test_failed_exchange_still_consumes_code(handler, connection):
    connection.complete_authentication.side_effect = AuthenticationError("invalid_code", code="invalid_code")

    with pytest.raises(AuthenticationError):
        await handler.handle_code("bad", MARKER)
    with pytest.raises(AuthenticationError) as info:
        await handler.handle_code("bad", MARKER)
    assert "already used" in str(info.value)
