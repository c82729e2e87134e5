"""Tests for a single discovery scan."""

from unittest.mock import AsyncMock
from unittest.mock import MagicMock

import pytest

from chatgate.errors import AccessError
from chatgate.errors import AuthenticationError
from chatgate.schemas.schemas import DiscoveryConfig
from chatgate.services.discovery import CHANNEL_BREAKER_COOLDOWN_SECONDS
from chatgate.services.discovery import DiscoveryService
from chatgate.services.discovery import conversation_types
from chatgate.services.discovery import is_relevant_message
from chatgate.services.slack_api import Conversation

HISTORY = {
    "C1": [
        {"user": "U1", "text": "Please review the deploy checklist", "ts": "1.0"},
        {"bot_id": "B1", "text": "Build passed", "ts": "2.0"},
        {"subtype": "channel_join", "user": "U3", "text": "joined", "ts": "3.0"},
        {"user": "slackbot", "text": "Reminder", "ts": "4.0"},
    ],
    "C2": [{"user": "U2", "text": "", "ts": "5.0"}],
}


@pytest.fixture
def connection():
    manager = MagicMock()
    manager.ensure_connected = AsyncMock(return_value=("xoxb-acme", "T1"))
    return manager


@pytest.fixture
def slack():
    client = MagicMock()
    client.list_conversations = AsyncMock(
        return_value=[
            Conversation(id="C1", name="general", is_channel=True, is_member=True),
            Conversation(id="C2", name="random", is_channel=True, is_member=True),
            Conversation(id="C3", name="secret", is_group=True, is_member=True),
            Conversation(id="C4", name="outside", is_channel=True, is_member=False),
        ]
    )

    async def history(token, team_id, channel, oldest=None, max_messages=None):
        if channel == "C3":
            raise AccessError("conversations.history failed: not_in_channel", code="not_in_channel")
        return HISTORY[channel]

    client.conversation_history = AsyncMock(side_effect=history)
    return client


@pytest.fixture
def orchestrator():
    jobs = MagicMock()
    jobs.analyze = AsyncMock(
        return_value={
            "analysis_type": "task_discovery",
            "tasks": [{"title": "Review checklist", "confidence": 0.9}, {"title": "Maybe", "confidence": 0.3}],
        }
    )
    return jobs


@pytest.fixture
def service(connection, slack, orchestrator, clock):
    return DiscoveryService(connection, slack, orchestrator, clock=clock)


def test_conversation_types():
    assert conversation_types(DiscoveryConfig()) == "public_channel,private_channel,mpim,im"
    assert conversation_types(DiscoveryConfig(include_dms=False, include_groups=False)) == "public_channel"
    assert conversation_types(DiscoveryConfig(include_channels=False, include_dms=False, include_groups=False)) == ""


def test_is_relevant_message():
    exclude = ["slackbot"]
    assert is_relevant_message({"user": "U1", "text": "hello"}, exclude)
    assert not is_relevant_message({"bot_id": "B1", "text": "beep"}, exclude)
    assert not is_relevant_message({"subtype": "bot_message", "text": "beep"}, exclude)
    assert not is_relevant_message({"user": "slackbot", "text": "hi"}, exclude)
    assert not is_relevant_message({"user": "U1", "text": "   "}, exclude)


@pytest.mark.asyncio
async def test_scan_filters_noise_and_counts_confident_suggestions(service, slack, orchestrator, clock):
    outcome = await service.scan(DiscoveryConfig(lookback_hours=2))

    assert outcome.conversations_scanned == 2
    assert outcome.messages_found == 1
    assert outcome.new_suggestions == 1
    assert set(outcome.skipped_conversations) == {"C3", "C4"}

    orchestrator.analyze.assert_awaited_once()
    args, kwargs = orchestrator.analyze.call_args
    assert args[0] == "global-discovery"
    assert [m["text"] for m in args[1]] == ["Please review the deploy checklist"]
    assert kwargs["channel_id"] == "C1"

    _, kwargs = slack.conversation_history.call_args_list[0]
    assert kwargs["oldest"] == clock.utc_now().timestamp() - 2 * 3600
    assert kwargs["max_messages"] == 200


@pytest.mark.asyncio
async def test_access_error_opens_channel_breaker(service, slack, clock):
    await service.scan(DiscoveryConfig())
    assert service.breakers.is_open("C3")
    calls = slack.conversation_history.await_count

    # While the breaker is open the channel is not requested again.
    await service.scan(DiscoveryConfig())
    assert slack.conversation_history.await_count == calls + 2

    clock.advance(CHANNEL_BREAKER_COOLDOWN_SECONDS)
    assert not service.breakers.is_open("C3")


@pytest.mark.asyncio
async def test_excluded_conversations_are_skipped(service, slack):
    outcome = await service.scan(DiscoveryConfig(exclude_conversations=["general", "C3"]))

    requested = [c.args[2] for c in slack.conversation_history.call_args_list]
    assert requested == ["C2"]
    assert outcome.new_suggestions == 0


@pytest.mark.asyncio
async def test_nothing_to_scan_skips_slack(service, connection, slack):
    outcome = await service.scan(DiscoveryConfig(include_channels=False, include_dms=False, include_groups=False))

    assert outcome.conversations_scanned == 0
    connection.ensure_connected.assert_not_awaited()
    slack.list_conversations.assert_not_awaited()


@pytest.mark.asyncio
async def test_cancelled_analysis_counts_nothing(service, orchestrator):
    orchestrator.analyze.return_value = None

    outcome = await service.scan(DiscoveryConfig())

    assert outcome.new_suggestions == 0
    assert outcome.messages_found == 1


@pytest.mark.asyncio
async def test_other_errors_fail_the_scan(service, connection):
    connection.ensure_connected.side_effect = AuthenticationError("Slack OAuth authentication required")

    with pytest.raises(AuthenticationError):
        await service.scan(DiscoveryConfig())
