"""Slack connection lifecycle.

State machine::

    Disconnected -> Configured <-> Authenticating -> Connected
    Connected -> Disconnected   (disconnect / failed health check)

The manager keeps a non-secret :class:`ConnectionState` snapshot, persists it
to the settings table, and reconciles it with the credential vault at
startup.  The vault wins every disagreement: it is the only place that knows
whether a usable token exists.

A background health loop re-validates the token every
``health_check_interval_seconds`` via ``auth.test``.  Liveness calls are
spaced at least 30 s apart and, once more than 50 calls happened inside the
rolling hour, a failing check opens a 5 minute circuit breaker.  A
``disconnect()`` aborts any code exchange still in flight.
"""

from __future__ import annotations

import asyncio
import json
from collections import deque
from contextlib import suppress
from typing import Callable
from typing import Deque
from typing import List
from typing import Optional
from typing import Tuple

from chatgate.config import Settings
from chatgate.config import get_settings
from chatgate.crud import crud
from chatgate.database import Database
from chatgate.errors import AuthenticationError
from chatgate.errors import ConfigurationError
from chatgate.errors import GatewayError
from chatgate.errors import PreconditionError
from chatgate.events.publisher import EventPublisher
from chatgate.metrics import health_check_total
from chatgate.schemas.schemas import ConnectionState
from chatgate.schemas.schemas import ConnectionStatus
from chatgate.services.circuit_breaker import CircuitBreakerMap
from chatgate.services.slack_api import Conversation
from chatgate.services.slack_api import SlackClient
from chatgate.services.slack_api import build_authorize_url
from chatgate.services.vault import CredentialVault
from chatgate.utils.log import log
from chatgate.utils.time import Clock

STATE_SETTING_KEY = "slack.connection_state"

MIN_API_INTERVAL_SECONDS = 30.0
MAX_API_CALLS_PER_HOUR = 50
CIRCUIT_BREAKER_COOLDOWN_SECONDS = 300.0
_HOUR_SECONDS = 3600.0
_LIVENESS_KEY = "liveness"

OAUTH_REQUIRED_MESSAGE = "OAuth required - please authenticate with Slack"

StateListener = Callable[[ConnectionState], None]


class ConnectionManager:
    """Owns the connection state machine and the health-check loop."""

    def __init__(
        self,
        vault: CredentialVault,
        slack: SlackClient,
        database: Optional[Database] = None,
        publisher: Optional[EventPublisher] = None,
        clock: Optional[Clock] = None,
        settings: Optional[Settings] = None,
    ):
        self._vault = vault
        self._slack = slack
        self._db = database
        self._publisher = publisher
        self._clock = clock or Clock()
        self._settings = settings or get_settings()

        self._state = ConnectionState()
        self._listeners: List[StateListener] = []
        self._auth_lock = asyncio.Lock()
        # Bumped by disconnect() so a code exchange in flight can tell it was aborted.
        self._generation = 0

        # Liveness-call bookkeeping
        self._breaker = CircuitBreakerMap(self._clock, kind="liveness")
        self._last_api_call: Optional[float] = None
        self._api_calls: Deque[float] = deque()
        self._consecutive_failures = 0

        self._health_task: Optional[asyncio.Task[None]] = None

    # ------------------------------------------------------------------
    # Read access
    # ------------------------------------------------------------------

    def get_state(self) -> ConnectionState:
        return self._state.model_copy()

    def get_status(self) -> ConnectionStatus:
        state = self._state
        if state.error:
            return ConnectionStatus(
                status="error",
                message=state.error,
                can_retry=True,
                next_step="authenticate" if state.is_configured else "configure",
            )
        if state.is_authenticating:
            return ConnectionStatus(status="authenticating", message="Completing authentication...")
        if state.is_connected:
            return ConnectionStatus(
                status="connected",
                message=f"Connected to {state.team_name or 'Slack'}",
                next_step="connect_channels",
            )
        if state.is_configured:
            return ConnectionStatus(
                status="configured",
                message="Ready to authenticate with Slack",
                next_step="authenticate",
            )
        return ConnectionStatus(status="disconnected", message="Not connected to Slack", next_step="configure")

    def is_ready(self) -> bool:
        return self._state.is_connected and not self._state.error

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        """Register *listener*; it is called immediately and on every change."""

        self._listeners.append(listener)
        self._call_listener(listener, self.get_state())

        def _unsubscribe() -> None:
            with suppress(ValueError):
                self._listeners.remove(listener)

        return _unsubscribe

    # ------------------------------------------------------------------
    # Startup reconciliation
    # ------------------------------------------------------------------

    async def load_state(self) -> ConnectionState:
        """Load the persisted snapshot and reconcile it with the vault."""

        snapshot = await self._read_snapshot()
        state = snapshot.model_copy(update={"is_authenticating": False, "error": None})

        credentials = await self._vault.get()
        if credentials is not None and credentials.has_token:
            state = state.model_copy(
                update={
                    "is_configured": True,
                    "is_connected": True,
                    "access_token_present": True,
                    "client_id": credentials.client_id,
                    "team_id": credentials.team_id,
                    "team_name": credentials.team_name,
                }
            )
        elif credentials is not None:
            state = state.model_copy(
                update={
                    "is_configured": True,
                    "is_connected": False,
                    "access_token_present": False,
                    "client_id": credentials.client_id,
                    "team_id": None,
                    "team_name": None,
                }
            )
        else:
            state = ConnectionState(last_connected=state.last_connected)

        if state != snapshot:
            log.info("connection", action="reconciled", phase=state.phase.value, snapshot_phase=snapshot.phase.value)

        await self._set_state(state)
        return self.get_state()

    async def check_credential_sync(self) -> dict:
        """Compare the in-memory snapshot with what the vault actually holds."""

        credentials = await self._vault.get()
        vault_view = {
            "has_credentials": credentials is not None,
            "has_token": bool(credentials and credentials.has_token),
            "client_id": credentials.client_id if credentials else None,
        }
        ui_view = {
            "is_configured": self._state.is_configured,
            "is_connected": self._state.is_connected,
            "client_id": self._state.client_id,
        }
        in_sync = (
            ui_view["is_configured"] == vault_view["has_credentials"]
            and ui_view["is_connected"] == vault_view["has_token"]
            and ui_view["client_id"] == vault_view["client_id"]
        )
        return {"in_sync": in_sync, "ui": ui_view, "vault": vault_view}

    # ------------------------------------------------------------------
    # State transitions
    # ------------------------------------------------------------------

    async def configure(self, client_id: str, client_secret: str) -> ConnectionState:
        client_id = (client_id or "").strip()
        client_secret = (client_secret or "").strip()
        if not client_id or not client_secret:
            raise ConfigurationError("Client ID and client secret are required")

        try:
            await self._vault.store(client_id, client_secret)
        except Exception as exc:
            log.error("connection", action="configure-failed", error=str(exc))
            raise ConfigurationError(f"Failed to store credentials: {exc}") from exc

        update = {"is_configured": True, "client_id": client_id, "error": None}
        if self._state.client_id not in (None, client_id):
            # A token issued to another app is useless now.
            update.update(
                is_connected=False,
                is_authenticating=False,
                access_token_present=False,
                team_id=None,
                team_name=None,
            )
        await self._update(**update)
        log.info("connection", action="configured", client_id=client_id)
        return self.get_state()

    async def authenticate(self) -> str:
        """Enter ``Authenticating`` and return the Slack consent URL."""

        credentials = await self._vault.get()
        if not self._state.is_configured or credentials is None:
            raise PreconditionError("Must configure credentials first")

        await self._update(is_authenticating=True, error=None)
        url = build_authorize_url(
            self._settings.slack_authorize_url,
            credentials.client_id,
            self._settings.slack_scopes,
            self._settings.slack_redirect_uri,
            self._settings.oauth_state_marker,
        )
        log.info("connection", action="authenticating", client_id=credentials.client_id)
        return url

    async def reconnect(self) -> str:
        if not self._state.client_id:
            raise PreconditionError("No credentials found for reconnection")
        return await self.authenticate()

    async def complete_authentication(self, code: str) -> ConnectionState:
        """Exchange *code* for a token.  One exchange may be in flight at a time."""

        if not code:
            raise ConfigurationError("Authorization code is required")
        if self._auth_lock.locked():
            raise PreconditionError("Authentication already in progress")

        async with self._auth_lock:
            generation = self._generation
            credentials = await self._vault.get()
            if not self._state.is_configured or credentials is None:
                raise PreconditionError("Must configure credentials first")

            try:
                result = await self._slack.exchange_code(
                    credentials.client_id,
                    credentials.client_secret,
                    code,
                    self._settings.slack_redirect_uri,
                )
                if self._aborted(generation):
                    log.info("connection", action="oauth-exchange-aborted", team_id=result.team_id)
                    return self.get_state()
                await self._vault.store_token(result.access_token, result.team_id, result.team_name)
            except GatewayError as exc:
                if self._aborted(generation):
                    log.info("connection", action="oauth-exchange-aborted", error=str(exc))
                    return self.get_state()
                # Stay in Authenticating so the user can retry with a fresh code.
                await self._update(is_authenticating=True, error=str(exc))
                log.warning("connection", action="oauth-exchange-failed", error=str(exc), category=exc.category.value)
                raise

            if self._aborted(generation):
                # disconnect() ran while the token was being stored; the vault must end up empty.
                await self._vault.delete()
                log.info("connection", action="oauth-exchange-aborted", team_id=result.team_id)
                return self.get_state()

            self._breaker.close(_LIVENESS_KEY)
            self._api_calls.clear()
            self._consecutive_failures = 0
            await self._update(
                is_configured=True,
                is_connected=True,
                is_authenticating=False,
                access_token_present=True,
                team_id=result.team_id,
                team_name=result.team_name,
                last_connected=self._clock.utc_now(),
                error=None,
            )
            log.info("connection", action="connected", team_id=result.team_id)
            return self.get_state()

    async def disconnect(self) -> ConnectionState:
        """Forget everything.  Local state is reset even if the vault fails."""

        self._generation += 1
        try:
            await self._vault.delete()
        except Exception as exc:
            log.warning("connection", action="vault-delete-failed", error=str(exc))

        self._breaker.clear()
        self._api_calls.clear()
        self._consecutive_failures = 0
        self._last_api_call = None
        await self._set_state(ConnectionState())
        log.info("connection", action="disconnected")
        return self.get_state()

    # ------------------------------------------------------------------
    # Access for other services
    # ------------------------------------------------------------------

    async def ensure_connected(self) -> Tuple[str, str]:
        """Return ``(access_token, team_id)`` or raise why we cannot."""

        credentials = await self._vault.get()
        if credentials is None:
            if self._state.is_configured:
                await self._set_state(ConnectionState())
            raise ConfigurationError("Slack is not configured")
        if not credentials.has_token or not credentials.team_id:
            if self._state.is_connected:
                await self._update(is_connected=False, access_token_present=False, error=OAUTH_REQUIRED_MESSAGE)
            raise AuthenticationError(OAUTH_REQUIRED_MESSAGE)
        return credentials.access_token, credentials.team_id

    async def join_channel(self, channel_id: str) -> Conversation:
        token, team_id = await self.ensure_connected()
        conversation = await self._slack.join_conversation(token, team_id, channel_id)
        log.info("connection", action="joined-channel", channel=channel_id)
        return conversation

    # ------------------------------------------------------------------
    # Health check
    # ------------------------------------------------------------------

    def start_health_check(self) -> None:
        if self._health_task is not None and not self._health_task.done():
            log.debug("connection", action="health-check-already-running")
            return
        self._health_task = asyncio.create_task(self._health_loop(), name="slack-health-check")
        log.info("connection", action="health-check-started", interval=self._settings.health_check_interval_seconds)

    async def stop_health_check(self) -> None:
        if self._health_task is None:
            return
        self._health_task.cancel()
        with suppress(asyncio.CancelledError):
            await self._health_task
        self._health_task = None
        log.info("connection", action="health-check-stopped")

    async def _health_loop(self) -> None:
        while True:
            await self._clock.sleep(self._settings.health_check_interval_seconds)
            try:
                await self.run_health_check()
            except Exception as exc:  # pragma: no cover – keep the loop alive
                log.exception("connection", action="health-check-error", error=str(exc))

    async def run_health_check(self) -> str:
        """One health-check tick; returns the outcome label."""

        self._prune_api_calls(self._clock.monotonic())

        if not self._state.is_connected or self._state.is_authenticating:
            outcome = "skipped"
        else:
            outcome = await self.verify_connection()
        health_check_total.labels(outcome).inc()
        return outcome

    async def verify_connection(self) -> str:
        """Call ``auth.test`` unless suppressed by the breaker or spacing rule."""

        if self._breaker.is_open(_LIVENESS_KEY):
            return "suppressed"

        now = self._clock.monotonic()
        if self._last_api_call is not None and now - self._last_api_call < MIN_API_INTERVAL_SECONDS:
            return "throttled"

        credentials = await self._vault.get()
        if credentials is None or not credentials.has_token:
            await self._update(is_connected=False, access_token_present=False, error=OAUTH_REQUIRED_MESSAGE)
            return "credentials_missing"

        self._last_api_call = now
        self._prune_api_calls(now)
        self._api_calls.append(now)

        try:
            await self._slack.auth_test(credentials.access_token, credentials.team_id or credentials.client_id)
        except GatewayError as exc:
            await self._handle_verification_failure(exc)
            return "failed"

        self._consecutive_failures = 0
        self._breaker.close(_LIVENESS_KEY)
        await self._update(is_connected=True, access_token_present=True, error=None)
        return "ok"

    async def _handle_verification_failure(self, exc: GatewayError) -> None:
        self._consecutive_failures += 1
        if len(self._api_calls) > MAX_API_CALLS_PER_HOUR:
            self._breaker.open(_LIVENESS_KEY, CIRCUIT_BREAKER_COOLDOWN_SECONDS, reason=str(exc))

        message = "Connection lost - please reconnect" if isinstance(exc, AuthenticationError) else str(exc)
        log.warning(
            "connection",
            action="verification-failed",
            error=str(exc),
            calls_this_hour=len(self._api_calls),
            consecutive_failures=self._consecutive_failures,
        )
        await self._update(is_connected=False, error=message)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _aborted(self, generation: int) -> bool:
        return generation != self._generation or not self._state.is_configured

    def _prune_api_calls(self, now: float) -> None:
        cutoff = now - _HOUR_SECONDS
        while self._api_calls and self._api_calls[0] <= cutoff:
            self._api_calls.popleft()

    async def _update(self, **changes) -> None:
        await self._set_state(self._state.model_copy(update=changes))

    async def _set_state(self, state: ConnectionState) -> None:
        if state.is_connected and not state.access_token_present:
            # Connected always implies a token; refuse the contradiction.
            state = state.model_copy(update={"is_connected": False})

        changed = state != self._state
        self._state = state
        await self._persist()
        if not changed:
            return

        for listener in list(self._listeners):
            self._call_listener(listener, self.get_state())
        if self._publisher is not None:
            await self._publisher.connection_state_changed(self._state.model_dump(mode="json"))

    @staticmethod
    def _call_listener(listener: StateListener, state: ConnectionState) -> None:
        try:
            listener(state)
        except Exception as exc:
            log.error("connection", action="listener-error", error=str(exc))

    async def _persist(self) -> None:
        if self._db is None:
            return
        snapshot = self._state.model_dump(mode="json", exclude={"is_authenticating", "error"})
        payload = json.dumps(snapshot)
        try:
            await self._db.write(lambda db: crud.set_setting(db, STATE_SETTING_KEY, payload))
        except Exception as exc:
            log.error("connection", action="persist-failed", error=str(exc))

    async def _read_snapshot(self) -> ConnectionState:
        if self._db is None:
            return self._state.model_copy()
        raw = await self._db.read(lambda db: crud.get_setting(db, STATE_SETTING_KEY))
        if not raw:
            return ConnectionState()
        try:
            return ConnectionState.model_validate(json.loads(raw))
        except ValueError as exc:
            log.warning("connection", action="snapshot-unreadable", error=str(exc))
            return ConnectionState()


__all__ = [
    "CIRCUIT_BREAKER_COOLDOWN_SECONDS",
    "ConnectionManager",
    "MAX_API_CALLS_PER_HOUR",
    "MIN_API_INTERVAL_SECONDS",
    "OAUTH_REQUIRED_MESSAGE",
    "STATE_SETTING_KEY",
]
