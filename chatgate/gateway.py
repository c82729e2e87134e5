"""Composition root: wires every gateway service together.

Nothing in the service layer reaches for a global; :func:`build_gateway`
creates the instances once and the FastAPI app (or a test) owns the result.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any
from typing import Optional

import httpx
from fastapi import Request

from chatgate.config import Settings
from chatgate.config import get_settings
from chatgate.database import Database
from chatgate.errors import ConfigurationError
from chatgate.events.event_bus import EventBus
from chatgate.events.publisher import EventPublisher
from chatgate.services.analysis_jobs import AnalysisJobOrchestrator
from chatgate.services.analysis_jobs import Analyzer
from chatgate.services.connection_manager import ConnectionManager
from chatgate.services.discovery import DiscoveryService
from chatgate.services.discovery_scheduler import DiscoveryScheduler
from chatgate.services.oauth_callback import OAuthCallbackHandler
from chatgate.services.rate_limiter import RateLimiter
from chatgate.services.rate_limiter import RateLimitOptions
from chatgate.services.slack_api import SlackClient
from chatgate.services.vault import CredentialVault
from chatgate.services.vault import EncryptedVault
from chatgate.utils.time import Clock

logger = logging.getLogger(__name__)


async def _unconfigured_analyzer(text: str, analysis_type: str) -> Any:
    raise ConfigurationError("OPENAI_API_KEY is required for message analysis")


def _default_analyzer(settings: Settings) -> Analyzer:
    if not settings.openai_api_key:
        logger.warning("OPENAI_API_KEY not set; analysis jobs will fail until it is configured")
        return _unconfigured_analyzer

    from chatgate.services.llm_analyzer import OpenAIMessageAnalyzer

    return OpenAIMessageAnalyzer(api_key=settings.openai_api_key, model=settings.analysis_model)


@dataclass
class Gateway:
    settings: Settings
    clock: Clock
    database: Database
    bus: EventBus
    publisher: EventPublisher
    rate_limiter: RateLimiter
    slack: SlackClient
    vault: CredentialVault
    connection: ConnectionManager
    orchestrator: AnalysisJobOrchestrator
    discovery: DiscoveryService
    scheduler: DiscoveryScheduler
    oauth: OAuthCallbackHandler

    async def start(self, health_check: bool = True) -> None:
        """Bring the gateway up: schema, write queue, state, timers."""

        self.database.create_all()
        self.database.write_queue.start()

        await self.connection.load_state()
        if health_check:
            self.connection.start_health_check()

        config = await self.scheduler.load_config()
        if config.scheduler.enabled:
            self.scheduler.start()
        logger.info("Gateway started (connected=%s)", self.connection.get_state().is_connected)

    async def stop(self) -> None:
        """Tear everything down in reverse order.  Safe to call twice."""

        self.scheduler.shutdown()
        await self.connection.stop_health_check()
        await self.orchestrator.shutdown()
        self.rate_limiter.clear_state()
        await self.slack.aclose()
        await self.database.close()
        logger.info("Gateway stopped")


def build_gateway(
    settings: Optional[Settings] = None,
    database: Optional[Database] = None,
    vault: Optional[CredentialVault] = None,
    analyzer: Optional[Analyzer] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    clock: Optional[Clock] = None,
) -> Gateway:
    """Construct every service with explicit dependencies."""

    settings = settings or get_settings()
    clock = clock or Clock()
    database = database or Database(settings.database_url)

    bus = EventBus()
    publisher = EventPublisher(bus)
    rate_limiter = RateLimiter(
        publisher=publisher,
        clock=clock,
        default_options=RateLimitOptions(max_retries=settings.rate_limit_max_retries),
    )
    slack = SlackClient(
        rate_limiter,
        base_url=settings.slack_api_base_url,
        timeout=settings.http_timeout_seconds,
        transport=transport,
    )
    vault = vault or EncryptedVault(database)
    connection = ConnectionManager(
        vault,
        slack,
        database=database,
        publisher=publisher,
        clock=clock,
        settings=settings,
    )
    orchestrator = AnalysisJobOrchestrator(
        analyzer or _default_analyzer(settings),
        publisher=publisher,
        database=database,
        clock=clock,
        settings=settings,
    )
    discovery = DiscoveryService(connection, slack, orchestrator, clock=clock)
    scheduler = DiscoveryScheduler(
        discovery,
        publisher=publisher,
        database=database,
        clock=clock,
        settings=settings,
    )
    oauth = OAuthCallbackHandler(connection, settings.oauth_state_marker)

    return Gateway(
        settings=settings,
        clock=clock,
        database=database,
        bus=bus,
        publisher=publisher,
        rate_limiter=rate_limiter,
        slack=slack,
        vault=vault,
        connection=connection,
        orchestrator=orchestrator,
        discovery=discovery,
        scheduler=scheduler,
        oauth=oauth,
    )


def get_gateway(request: Request) -> Gateway:
    """FastAPI dependency returning the app's gateway."""

    return request.app.state.gateway


__all__ = ["Gateway", "build_gateway", "get_gateway"]
