"""One discovery scan: fetch recent Slack messages and analyze them.

A scan lists the conversations the bot is a member of, pulls history for the
lookback window through the rate-limited client, filters out bot and
excluded-user noise, and submits each non-empty batch to the analysis
orchestrator.  A channel that answers with an access error gets its circuit
breaker opened and is skipped for the cooldown; the scan carries on with the
other channels.  Any other error fails the scan.
"""

from __future__ import annotations

from dataclasses import dataclass
from dataclasses import field
from typing import Any
from typing import Dict
from typing import List
from typing import Optional

from chatgate.errors import AccessError
from chatgate.schemas.schemas import DiscoveryConfig
from chatgate.services.analysis_jobs import AnalysisJobOrchestrator
from chatgate.services.circuit_breaker import CircuitBreakerMap
from chatgate.services.connection_manager import ConnectionManager
from chatgate.services.slack_api import Conversation
from chatgate.services.slack_api import SlackClient
from chatgate.utils.log import log
from chatgate.utils.time import Clock

CHANNEL_BREAKER_COOLDOWN_SECONDS = 300.0

_IGNORED_SUBTYPES = frozenset({"bot_message", "channel_join", "channel_leave", "channel_topic", "channel_purpose"})


@dataclass
class ScanOutcome:
    conversations_scanned: int = 0
    messages_found: int = 0
    new_suggestions: int = 0
    skipped_conversations: List[str] = field(default_factory=list)


def conversation_types(config: DiscoveryConfig) -> str:
    types = []
    if config.include_channels:
        types.append("public_channel")
    if config.include_groups:
        types.extend(["private_channel", "mpim"])
    if config.include_dms:
        types.append("im")
    return ",".join(types)


def is_relevant_message(message: Dict[str, Any], exclude_users: List[str]) -> bool:
    if message.get("subtype") in _IGNORED_SUBTYPES or message.get("bot_id"):
        return False
    if message.get("user") in exclude_users or message.get("username") in exclude_users:
        return False
    return bool(str(message.get("text") or "").strip())


class DiscoveryService:
    def __init__(
        self,
        connection: ConnectionManager,
        slack: SlackClient,
        orchestrator: AnalysisJobOrchestrator,
        clock: Optional[Clock] = None,
        breakers: Optional[CircuitBreakerMap] = None,
    ):
        self._connection = connection
        self._slack = slack
        self._orchestrator = orchestrator
        self._clock = clock or Clock()
        self.breakers = breakers or CircuitBreakerMap(self._clock, kind="channel")

    async def scan(self, config: DiscoveryConfig) -> ScanOutcome:
        outcome = ScanOutcome()
        types = conversation_types(config)
        if not types:
            return outcome

        token, team_id = await self._connection.ensure_connected()
        conversations = await self._slack.list_conversations(token, team_id, types=types)
        oldest = self._clock.utc_now().timestamp() - config.lookback_hours * 3600

        for conversation in conversations:
            if not self._should_scan(conversation, config):
                outcome.skipped_conversations.append(conversation.id)
                continue

            try:
                messages = await self._slack.conversation_history(
                    token,
                    team_id,
                    conversation.id,
                    oldest=oldest,
                    max_messages=config.max_messages_per_conversation,
                )
            except AccessError as exc:
                self.breakers.open(conversation.id, CHANNEL_BREAKER_COOLDOWN_SECONDS, reason=exc.code)
                log.warning("discovery", action="channel-access-denied", channel=conversation.id, code=exc.code)
                outcome.skipped_conversations.append(conversation.id)
                continue

            relevant = [m for m in messages if is_relevant_message(m, config.exclude_users)]
            outcome.conversations_scanned += 1
            outcome.messages_found += len(relevant)
            if not relevant:
                continue

            result = await self._orchestrator.analyze(config.project_id, relevant, channel_id=conversation.id)
            if result is None:
                continue
            outcome.new_suggestions += sum(
                1 for task in result.get("tasks", []) if task.get("confidence", 0) >= config.min_confidence
            )

        log.info(
            "discovery",
            action="scan-complete",
            conversations=outcome.conversations_scanned,
            messages=outcome.messages_found,
            suggestions=outcome.new_suggestions,
        )
        return outcome

    def _should_scan(self, conversation: Conversation, config: DiscoveryConfig) -> bool:
        if not conversation.is_member:
            return False
        if conversation.id in config.exclude_conversations or conversation.name in config.exclude_conversations:
            return False
        return not self.breakers.is_open(conversation.id)


__all__ = [
    "CHANNEL_BREAKER_COOLDOWN_SECONDS",
    "DiscoveryService",
    "ScanOutcome",
    "conversation_types",
    "is_relevant_message",
]
