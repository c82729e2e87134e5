"""Tests for the Slack connection state machine and health check."""

import asyncio
import json
from unittest.mock import AsyncMock
from unittest.mock import MagicMock

import pytest

from chatgate.crud import crud
from chatgate.errors import AuthenticationError
from chatgate.errors import ConfigurationError
from chatgate.errors import PreconditionError
from chatgate.events.event_bus import EventType
from chatgate.schemas.schemas import ConnectionPhase
from chatgate.schemas.schemas import ConnectionState
from chatgate.services.connection_manager import MAX_API_CALLS_PER_HOUR
from chatgate.services.connection_manager import OAUTH_REQUIRED_MESSAGE
from chatgate.services.connection_manager import STATE_SETTING_KEY
from chatgate.services.connection_manager import ConnectionManager
from chatgate.services.slack_api import AuthIdentity
from chatgate.services.slack_api import Conversation
from chatgate.services.slack_api import OAuthResult
from chatgate.services.vault import InMemoryVault
from chatgate.services.vault import VaultCredentials


@pytest.fixture
def slack():
    client = MagicMock()
    client.exchange_code = AsyncMock(return_value=OAuthResult(access_token="xoxb-acme", team_id="T1", team_name="Acme"))
    client.auth_test = AsyncMock(return_value=AuthIdentity(team_id="T1", team="Acme"))
    client.join_conversation = AsyncMock(return_value=Conversation(id="C1", name="general", is_member=True))
    return client


@pytest.fixture
def vault():
    return InMemoryVault()


@pytest.fixture
def manager(vault, slack, publisher, clock, settings):
    return ConnectionManager(vault, slack, publisher=publisher, clock=clock, settings=settings)


def _connected_vault():
    return InMemoryVault(
        VaultCredentials(client_id="cid", client_secret="secret", access_token="xoxb-acme", team_id="T1", team_name="Acme")
    )


@pytest.mark.asyncio
async def test_full_connection_flow(manager, slack, recorder, settings):
    assert manager.get_state().phase == ConnectionPhase.DISCONNECTED
    assert manager.get_status().next_step == "configure"

    state = await manager.configure("cid", "secret")
    assert state.is_configured
    assert manager.get_status().next_step == "authenticate"

    url = await manager.authenticate()
    assert "client_id=cid" in url
    assert f"state={settings.oauth_state_marker}" in url
    assert manager.get_state().is_authenticating

    state = await manager.complete_authentication("code-1")

    assert state.is_connected
    assert state.access_token_present
    assert not state.is_authenticating
    assert state.team_name == "Acme"
    assert state.last_connected is not None
    assert manager.is_ready()
    assert manager.get_status().message == "Connected to Acme"
    slack.exchange_code.assert_awaited_once()

    phases = [e["state"]["is_connected"] for e in recorder.of_type(EventType.CONNECTION_STATE_CHANGED)]
    assert phases[-1] is True


@pytest.mark.asyncio
async def test_configure_rejects_empty_input(manager):
    with pytest.raises(ConfigurationError):
        await manager.configure("", "secret")
    with pytest.raises(ConfigurationError):
        await manager.configure("cid", "   ")
    assert not manager.get_state().is_configured


@pytest.mark.asyncio
async def test_configure_vault_failure_leaves_state_unchanged(manager, vault, monkeypatch):
    monkeypatch.setattr(vault, "store", AsyncMock(side_effect=OSError("keychain locked")))

    with pytest.raises(ConfigurationError) as info:
        await manager.configure("cid", "secret")

    assert "keychain locked" in str(info.value)
    assert manager.get_state() == ConnectionState()


@pytest.mark.asyncio
async def test_reconfigure_with_new_client_drops_connection(slack, publisher, clock, settings):
    manager = ConnectionManager(_connected_vault(), slack, publisher=publisher, clock=clock, settings=settings)
    await manager.load_state()
    assert manager.get_state().is_connected

    state = await manager.configure("other-app", "secret")

    assert state.is_configured
    assert not state.is_connected
    assert not state.access_token_present
    assert state.team_id is None


@pytest.mark.asyncio
async def test_authenticate_requires_configuration(manager):
    with pytest.raises(PreconditionError):
        await manager.authenticate()
    with pytest.raises(PreconditionError):
        await manager.reconnect()


@pytest.mark.asyncio
async def test_failed_code_exchange_keeps_authenticating(manager, slack):
    slack.exchange_code.side_effect = AuthenticationError("oauth.v2.access failed: invalid_code", code="invalid_code")
    await manager.configure("cid", "secret")
    await manager.authenticate()

    with pytest.raises(AuthenticationError):
        await manager.complete_authentication("bad-code")

    state = manager.get_state()
    assert state.is_authenticating
    assert not state.is_connected
    assert "invalid_code" in state.error
    assert manager.get_status().status == "error"


def _gated_exchange(slack, outcome):
    entered = asyncio.Event()
    release = asyncio.Event()

    async def exchange(*args):
        entered.set()
        await release.wait()
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    slack.exchange_code.side_effect = exchange
    return entered, release


@pytest.mark.asyncio
async def test_only_one_code_exchange_in_flight(manager, slack):
    entered, release = _gated_exchange(slack, OAuthResult(access_token="xoxb-acme", team_id="T1", team_name="Acme"))
    await manager.configure("cid", "secret")
    await manager.authenticate()

    first = asyncio.create_task(manager.complete_authentication("code-1"))
    await asyncio.wait_for(entered.wait(), timeout=2)

    with pytest.raises(PreconditionError):
        await manager.complete_authentication("code-2")

    release.set()
    assert (await first).is_connected
    slack.exchange_code.assert_awaited_once()


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "outcome",
    [
        OAuthResult(access_token="xoxb-acme", team_id="T1", team_name="Acme"),
        AuthenticationError("oauth.v2.access failed: invalid_code", code="invalid_code"),
    ],
)
async def test_disconnect_aborts_code_exchange_in_flight(manager, slack, vault, outcome):
    entered, release = _gated_exchange(slack, outcome)
    await manager.configure("cid", "secret")
    await manager.authenticate()

    pending = asyncio.create_task(manager.complete_authentication("code-1"))
    await asyncio.wait_for(entered.wait(), timeout=2)
    await manager.disconnect()
    release.set()

    result = await pending

    assert result == ConnectionState()
    assert manager.get_state().phase == ConnectionPhase.DISCONNECTED
    assert not manager.get_state().is_authenticating
    assert await vault.get() is None

@pytest.mark.asyncio
async def test_disconnect_is_idempotent(slack, publisher, clock, settings):
    vault = _connected_vault()
    manager = ConnectionManager(vault, slack, publisher=publisher, clock=clock, settings=settings)
    await manager.load_state()

    first = await manager.disconnect()
    second = await manager.disconnect()

    assert first == second == ConnectionState()
    assert await vault.get() is None


@pytest.mark.asyncio
async def test_disconnect_survives_vault_failure(slack, publisher, clock, settings, monkeypatch):
    vault = _connected_vault()
    manager = ConnectionManager(vault, slack, publisher=publisher, clock=clock, settings=settings)
    await manager.load_state()
    monkeypatch.setattr(vault, "delete", AsyncMock(side_effect=OSError("gone")))

    state = await manager.disconnect()

    assert state == ConnectionState()


@pytest.mark.asyncio
async def test_load_state_vault_wins_over_snapshot(database, slack, clock, settings):
    stale = ConnectionState(is_configured=True, is_connected=True, access_token_present=True, client_id="cid",
                            team_id="T1")
    await database.write(lambda db: crud.set_setting(db, STATE_SETTING_KEY, stale.model_dump_json()))

    manager = ConnectionManager(InMemoryVault(), slack, database=database, clock=clock, settings=settings)
    state = await manager.load_state()

    assert state.phase == ConnectionPhase.DISCONNECTED
    assert not state.access_token_present


@pytest.mark.asyncio
async def test_load_state_restores_connection_from_vault(database, slack, clock, settings):
    manager = ConnectionManager(_connected_vault(), slack, database=database, clock=clock, settings=settings)
    state = await manager.load_state()

    assert state.is_connected
    assert state.team_name == "Acme"

    raw = await database.read(lambda db: crud.get_setting(db, STATE_SETTING_KEY))
    persisted = json.loads(raw)
    assert persisted["is_connected"] is True
    assert "is_authenticating" not in persisted
    assert "error" not in persisted


@pytest.mark.asyncio
async def test_configured_without_token_loads_as_configured(slack, clock, settings):
    vault = InMemoryVault(VaultCredentials(client_id="cid", client_secret="secret"))
    manager = ConnectionManager(vault, slack, clock=clock, settings=settings)

    state = await manager.load_state()

    assert state.phase == ConnectionPhase.CONFIGURED
    assert (await manager.check_credential_sync())["in_sync"] is True


@pytest.mark.asyncio
async def test_ensure_connected(manager, vault, slack, clock, settings):
    with pytest.raises(ConfigurationError):
        await manager.ensure_connected()

    await manager.configure("cid", "secret")
    with pytest.raises(AuthenticationError) as info:
        await manager.ensure_connected()
    assert str(info.value) == OAUTH_REQUIRED_MESSAGE

    await manager.authenticate()
    await manager.complete_authentication("code-1")
    assert await manager.ensure_connected() == ("xoxb-acme", "T1")


@pytest.mark.asyncio
async def test_subscribe_calls_listener_immediately_and_on_change(manager):
    seen = []
    unsubscribe = manager.subscribe(seen.append)
    assert seen == [ConnectionState()]

    await manager.configure("cid", "secret")
    assert seen[-1].is_configured

    unsubscribe()
    await manager.disconnect()
    assert seen[-1].is_configured


@pytest.mark.asyncio
async def test_join_channel(slack, clock, settings):
    manager = ConnectionManager(_connected_vault(), slack, clock=clock, settings=settings)
    await manager.load_state()

    conversation = await manager.join_channel("C1")

    assert conversation.is_member
    slack.join_conversation.assert_awaited_once_with("xoxb-acme", "T1", "C1")


@pytest.mark.asyncio
async def test_health_check_outcomes(slack, clock, settings):
    manager = ConnectionManager(_connected_vault(), slack, clock=clock, settings=settings)
    await manager.load_state()

    assert await manager.run_health_check() == "ok"
    # Second call inside the 30 s spacing never reaches Slack.
    assert await manager.run_health_check() == "throttled"
    assert slack.auth_test.await_count == 1

    clock.advance(31)
    slack.auth_test.side_effect = AuthenticationError("auth.test failed: token_revoked", code="token_revoked")
    assert await manager.run_health_check() == "failed"

    state = manager.get_state()
    assert not state.is_connected
    assert state.error == "Connection lost - please reconnect"
    assert await manager.run_health_check() == "skipped"


@pytest.mark.asyncio
async def test_breaker_opens_after_too_many_calls(slack, clock, settings):
    manager = ConnectionManager(_connected_vault(), slack, clock=clock, settings=settings)
    await manager.load_state()

    for _ in range(MAX_API_CALLS_PER_HOUR):
        assert await manager.verify_connection() == "ok"
        clock.advance(31)

    slack.auth_test.side_effect = AuthenticationError("auth.test failed: invalid_auth", code="invalid_auth")
    assert await manager.verify_connection() == "failed"

    clock.advance(31)
    assert await manager.verify_connection() == "suppressed"
    calls = slack.auth_test.await_count

    clock.advance(300)
    slack.auth_test.side_effect = None
    assert await manager.verify_connection() == "ok"
    assert slack.auth_test.await_count == calls + 1


@pytest.mark.asyncio
async def test_failure_below_call_threshold_does_not_open_breaker(slack, clock, settings):
    manager = ConnectionManager(_connected_vault(), slack, clock=clock, settings=settings)
    await manager.load_state()
    slack.auth_test.side_effect = AuthenticationError("auth.test failed: invalid_auth", code="invalid_auth")

    assert await manager.verify_connection() == "failed"
    clock.advance(31)
    assert await manager.verify_connection() == "failed"


@pytest.mark.asyncio
async def test_verify_without_token_reports_oauth_required(slack, clock, settings):
    vault = _connected_vault()
    manager = ConnectionManager(vault, slack, clock=clock, settings=settings)
    await manager.load_state()
    await vault.store("cid-2", "secret")

    assert await manager.verify_connection() == "credentials_missing"
    assert manager.get_state().error == OAUTH_REQUIRED_MESSAGE


@pytest.mark.asyncio
async def test_call_ceiling_counts_only_the_last_hour(slack, clock, settings):
    manager = ConnectionManager(_connected_vault(), slack, clock=clock, settings=settings)
    await manager.load_state()

    # Ten hours of ticks at the production 10 minute cadence.
    for _ in range(60):
        clock.advance(600)
        assert await manager.run_health_check() == "ok"

    clock.advance(600)
    slack.auth_test.side_effect = AuthenticationError("auth.test failed: invalid_auth", code="invalid_auth")
    assert await manager.run_health_check() == "failed"

    # Only six calls fell inside the hour, so the next check still reaches Slack.
    clock.advance(31)
    assert await manager.verify_connection() == "failed"
    assert slack.auth_test.await_count == 62
