"""Delivery of the one-time OAuth authorization code.

The code reaches us either as a redirect URL (``?code=…&state=…``) or as a
native inter-process event.  Either way it is accepted only with the fixed
state marker, handed to :meth:`ConnectionManager.complete_authentication`
exactly once, and the delivery artifact is cleared afterwards: the URL is
rewritten without ``code``/``state`` and the event is marked consumed.
"""

from __future__ import annotations

from collections import OrderedDict
from typing import Any
from typing import Dict
from typing import Optional
from typing import Tuple
from urllib.parse import parse_qsl
from urllib.parse import urlencode
from urllib.parse import urlsplit
from urllib.parse import urlunsplit

from chatgate.errors import AuthenticationError
from chatgate.errors import ConfigurationError
from chatgate.schemas.schemas import ConnectionState
from chatgate.services.connection_manager import ConnectionManager
from chatgate.utils.log import log

_OAUTH_PARAMS = ("code", "state")
_MAX_REMEMBERED_CODES = 64


def extract_oauth_params(url: str) -> Tuple[Optional[str], Optional[str]]:
    """Return ``(code, state)`` from a callback URL."""

    query = dict(parse_qsl(urlsplit(url).query))
    return query.get("code"), query.get("state")


def strip_oauth_params(url: str) -> str:
    """Rewrite *url* without the OAuth query parameters."""

    parts = urlsplit(url)
    remaining = [(k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True) if k not in _OAUTH_PARAMS]
    return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(remaining), parts.fragment))


class OAuthCallbackHandler:
    def __init__(self, connection: ConnectionManager, state_marker: str):
        self._connection = connection
        self._state_marker = state_marker
        # Codes already handed over; authorization codes are single use.
        self._consumed: "OrderedDict[str, None]" = OrderedDict()

    async def handle_code(self, code: Optional[str], state: Optional[str]) -> ConnectionState:
        if state != self._state_marker:
            log.warning("oauth", action="state-mismatch")
            raise AuthenticationError("OAuth state does not match; restart the authorization")
        if not code:
            raise ConfigurationError("OAuth callback is missing the authorization code")
        if code in self._consumed:
            raise AuthenticationError("Authorization code was already used")

        self._remember(code)
        return await self._connection.complete_authentication(code)

    async def handle_url(self, url: str) -> Tuple[ConnectionState, str]:
        """Complete authentication from a redirect URL; returns the cleaned URL too."""

        code, state = extract_oauth_params(url)
        result = await self.handle_code(code, state)
        return result, strip_oauth_params(url)

    async def handle_native_event(self, payload: Dict[str, Any]) -> bool:
        """Consume a ``{code, state}`` (or ``{url}``) event.  Duplicates return False."""

        if "url" in payload and "code" not in payload:
            code, state = extract_oauth_params(str(payload["url"]))
        else:
            code, state = payload.get("code"), payload.get("state")

        if code and code in self._consumed:
            log.info("oauth", action="duplicate-event-ignored")
            return False

        await self.handle_code(code, state)
        return True

    def _remember(self, code: str) -> None:
        self._consumed[code] = None
        while len(self._consumed) > _MAX_REMEMBERED_CODES:
            self._consumed.popitem(last=False)


__all__ = ["OAuthCallbackHandler", "extract_oauth_params", "strip_oauth_params"]
