"""Async Slack Web API client.

Every call goes through :meth:`RateLimiter.execute` keyed by the Slack
method name, so tier budgets and ``Retry-After`` handling apply uniformly.
Transport problems and Slack error codes are converted into the
:mod:`chatgate.errors` taxonomy here; callers never see raw ``httpx``
exceptions.

Rate Limits:
    - Tier per method, see :data:`chatgate.services.rate_limiter.METHOD_TIERS`
    - HTTP 429 responses include a ``Retry-After`` header (seconds)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any
from typing import Dict
from typing import List
from typing import Optional
from urllib.parse import urlencode

import httpx

from chatgate.errors import AccessError
from chatgate.errors import AuthenticationError
from chatgate.errors import ConfigurationError
from chatgate.errors import DataFormatError
from chatgate.errors import GatewayError
from chatgate.errors import RateLimitError
from chatgate.errors import ScopeError
from chatgate.errors import TransientError
from chatgate.errors import truncate
from chatgate.services.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)

# Slack ``error`` codes -> gateway exception class.
_ERROR_CODES: Dict[str, type[GatewayError]] = {
    "invalid_auth": AuthenticationError,
    "token_revoked": AuthenticationError,
    "token_expired": AuthenticationError,
    "not_authed": AuthenticationError,
    "account_inactive": AuthenticationError,
    "missing_scope": ScopeError,
    "not_in_channel": AccessError,
    "channel_not_found": AccessError,
    "is_archived": AccessError,
    "access_denied": AccessError,
    "ratelimited": RateLimitError,
    "invalid_client_id": ConfigurationError,
    "bad_client_secret": ConfigurationError,
    "invalid_code": AuthenticationError,
    "code_already_used": AuthenticationError,
    "bad_redirect_uri": ConfigurationError,
}

# Used for the token exchange, before any workspace is known.
OAUTH_WORKSPACE = "_oauth"


@dataclass
class OAuthResult:
    access_token: str
    team_id: str
    team_name: str
    scope: Optional[str] = None
    bot_user_id: Optional[str] = None


@dataclass
class AuthIdentity:
    team_id: str
    team: str
    user_id: Optional[str] = None
    url: Optional[str] = None


@dataclass
class Conversation:
    id: str
    name: str
    is_channel: bool = False
    is_group: bool = False
    is_im: bool = False
    is_mpim: bool = False
    is_private: bool = False
    is_member: bool = False

    @classmethod
    def from_api(cls, raw: Dict[str, Any]) -> "Conversation":
        return cls(
            id=raw["id"],
            name=raw.get("name") or raw.get("user") or raw["id"],
            is_channel=bool(raw.get("is_channel")),
            is_group=bool(raw.get("is_group")),
            is_im=bool(raw.get("is_im")),
            is_mpim=bool(raw.get("is_mpim")),
            is_private=bool(raw.get("is_private")),
            # DMs do not carry is_member; the bot is always part of them.
            is_member=bool(raw.get("is_member", raw.get("is_im", False))),
        )


def build_authorize_url(authorize_url: str, client_id: str, scopes: str, redirect_uri: str, state: str) -> str:
    """Return the Slack consent URL the user has to open."""

    query = urlencode({"client_id": client_id, "scope": scopes, "redirect_uri": redirect_uri, "state": state})
    return f"{authorize_url}?{query}"


class SlackClient:
    """Rate-limited wrapper around the handful of Slack methods we use."""

    def __init__(
        self,
        rate_limiter: RateLimiter,
        base_url: str = "https://slack.com/api",
        timeout: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._limiter = rate_limiter
        self._http = httpx.AsyncClient(base_url=base_url.rstrip("/") + "/", timeout=timeout, transport=transport)

    async def aclose(self) -> None:
        await self._http.aclose()

    # ------------------------------------------------------------------
    # Slack methods
    # ------------------------------------------------------------------

    async def exchange_code(self, client_id: str, client_secret: str, code: str, redirect_uri: str) -> OAuthResult:
        """Trade an authorization code for a bot token (``oauth.v2.access``)."""

        body = await self._call(
            "oauth.v2.access",
            OAUTH_WORKSPACE,
            data={"client_id": client_id, "client_secret": client_secret, "code": code, "redirect_uri": redirect_uri},
        )
        token = body.get("access_token")
        team = body.get("team") or {}
        if not token or not team.get("id"):
            raise DataFormatError("oauth.v2.access response is missing access_token or team")
        return OAuthResult(
            access_token=token,
            team_id=team["id"],
            team_name=team.get("name", ""),
            scope=body.get("scope"),
            bot_user_id=body.get("bot_user_id"),
        )

    async def auth_test(self, token: str, workspace: str) -> AuthIdentity:
        body = await self._call("auth.test", workspace, token=token)
        return AuthIdentity(
            team_id=body.get("team_id", ""),
            team=body.get("team", ""),
            user_id=body.get("user_id"),
            url=body.get("url"),
        )

    async def list_conversations(
        self,
        token: str,
        workspace: str,
        types: str = "public_channel,private_channel,mpim,im",
        exclude_archived: bool = True,
        page_size: int = 200,
    ) -> List[Conversation]:
        """Return every conversation of *types*, following the cursor."""

        conversations: List[Conversation] = []
        cursor: Optional[str] = None
        while True:
            params: Dict[str, Any] = {
                "types": types,
                "exclude_archived": "true" if exclude_archived else "false",
                "limit": page_size,
            }
            if cursor:
                params["cursor"] = cursor
            body = await self._call("conversations.list", workspace, token=token, params=params)
            raw_channels = body.get("channels")
            if not isinstance(raw_channels, list):
                raise DataFormatError("conversations.list response has no channels list")
            conversations.extend(Conversation.from_api(raw) for raw in raw_channels)
            cursor = (body.get("response_metadata") or {}).get("next_cursor")
            if not cursor:
                return conversations

    async def conversation_history(
        self,
        token: str,
        workspace: str,
        channel: str,
        oldest: Optional[float] = None,
        limit: int = 200,
        max_messages: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """Return raw messages of *channel* newer than *oldest* (epoch seconds)."""

        messages: List[Dict[str, Any]] = []
        cursor: Optional[str] = None
        while True:
            params: Dict[str, Any] = {"channel": channel, "limit": limit}
            if oldest is not None:
                params["oldest"] = f"{oldest:.6f}"
            if cursor:
                params["cursor"] = cursor
            body = await self._call("conversations.history", workspace, token=token, params=params, resource=channel)
            raw_messages = body.get("messages")
            if not isinstance(raw_messages, list):
                raise DataFormatError("conversations.history response has no messages list")
            messages.extend(raw_messages)
            if max_messages is not None and len(messages) >= max_messages:
                return messages[:max_messages]
            cursor = (body.get("response_metadata") or {}).get("next_cursor")
            if not body.get("has_more") or not cursor:
                return messages

    async def join_conversation(self, token: str, workspace: str, channel: str) -> Conversation:
        body = await self._call("conversations.join", workspace, token=token, data={"channel": channel}, resource=channel)
        raw = body.get("channel")
        if not isinstance(raw, dict):
            raise DataFormatError("conversations.join response has no channel")
        return Conversation.from_api(raw)

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def _call(
        self,
        method: str,
        workspace: str,
        token: Optional[str] = None,
        params: Optional[Dict[str, Any]] = None,
        data: Optional[Dict[str, Any]] = None,
        resource: Optional[str] = None,
    ) -> Dict[str, Any]:
        headers = {"Authorization": f"Bearer {token}"} if token else {}

        async def _operation() -> Dict[str, Any]:
            try:
                if data is not None:
                    response = await self._http.post(method, data=data, headers=headers)
                else:
                    response = await self._http.get(method, params=params, headers=headers)
            except httpx.TimeoutException as exc:
                raise TransientError(f"Timed out calling {method}", code="timeout") from exc
            except httpx.TransportError as exc:
                raise TransientError(f"Network error calling {method}: {exc}", code="network") from exc
            return self._parse(method, response, resource)

        return await self._limiter.execute(method, workspace, _operation)

    @staticmethod
    def _parse(method: str, response: httpx.Response, resource: Optional[str]) -> Dict[str, Any]:
        if response.status_code == 429:
            retry_after = response.headers.get("Retry-After")
            try:
                seconds = float(retry_after) if retry_after is not None else None
            except ValueError:
                seconds = None
            raise RateLimitError(f"{method} rate limited", retry_after=seconds, code="ratelimited")

        if response.status_code >= 500:
            raise TransientError(f"{method} failed with HTTP {response.status_code}", code="server_error")

        try:
            body = response.json()
        except ValueError as exc:
            logger.warning("Non-JSON response from %s: %s", method, truncate(response.text))
            raise DataFormatError(f"{method} returned a non-JSON response") from exc

        if not isinstance(body, dict):
            raise DataFormatError(f"{method} returned an unexpected payload")

        if response.status_code >= 400 and body.get("ok") is not False:
            raise DataFormatError(f"{method} failed with HTTP {response.status_code}")

        if body.get("ok") is False:
            code = str(body.get("error") or "unknown_error")
            raise _error_for_code(method, code, resource, body)

        return body


def _error_for_code(method: str, code: str, resource: Optional[str], body: Dict[str, Any]) -> GatewayError:
    error_cls = _ERROR_CODES.get(code)
    message = f"{method} failed: {code}"
    if error_cls is None:
        return GatewayError(message, code=code)
    if error_cls is AccessError:
        return AccessError(message, resource=resource, code=code)
    if error_cls is RateLimitError:
        return RateLimitError(message, code=code)
    if error_cls is ScopeError and body.get("needed"):
        return ScopeError(f"{message} (needed: {body['needed']})", code=code)
    return error_cls(message, code=code)


__all__ = [
    "AuthIdentity",
    "Conversation",
    "OAUTH_WORKSPACE",
    "OAuthResult",
    "SlackClient",
    "build_authorize_url",
]
