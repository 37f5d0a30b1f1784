"""Bearer-credential cache shared by every outbound gateway call.

Each registered gateway owns one cache entry guarded by its own reader/writer
lock. Readers return a cached token while it still has more than
``refresh_lead`` seconds to live. A miss takes the exclusive lock and checks
again before calling the token source, so a burst of concurrent misses
produces a single token request.
"""
import logging
import threading
import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable, Dict, Optional

import httpx

from beltbilling.core.errors import (
    AuthError, GatewayError, TransportError, error_for_status
)
from beltbilling.core.metrics import token_refresh_counter

logger = logging.getLogger(__name__)

DEFAULT_REFRESH_LEAD = 60.0


class ReadWriteLock:
    """Many concurrent readers or one writer; waiting writers block new readers"""

    def __init__(self):
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @contextmanager
    def read(self):
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write(self):
        with self._cond:
            self._writers_waiting += 1
            try:
                while self._writer or self._readers:
                    self._cond.wait()
            finally:
                self._writers_waiting -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


@dataclass(frozen=True)
class TokenGrant:
    access_token: str
    expires_in: float  # seconds


class TokenSource(ABC):
    """Something that can mint a bearer credential for one gateway"""

    gateway: str = ""
    client_id: str = ""

    @abstractmethod
    def fetch(self) -> TokenGrant:
        ...


class OAuth2ClientCredentials(TokenSource):
    """OAuth2 client-credentials grant: POST {base_url}/oauth/token with Basic auth"""

    def __init__(
        self,
        base_url: str,
        client_id: str,
        client_secret: str,
        *,
        gateway: str,
        http_client: httpx.Client,
    ):
        self.base_url = base_url.rstrip("/")
        self.client_id = client_id
        self._client_secret = client_secret
        self.gateway = gateway
        self._http = http_client

    @property
    def token_url(self) -> str:
        return f"{self.base_url}/oauth/token"

    def fetch(self) -> TokenGrant:
        if not self.client_id or not self._client_secret:
            raise AuthError("Client credentials are not configured", gateway=self.gateway)

        try:
            response = self._http.post(
                self.token_url,
                auth=(self.client_id, self._client_secret),
                data={"grant_type": "client_credentials"},
            )
        except httpx.RequestError as e:
            raise TransportError(f"Token request failed: {e}", gateway=self.gateway) from e

        if response.status_code != 200:
            message = _error_message(response) or "Token request rejected"
            if response.status_code in (400, 401, 403):
                raise AuthError(message, gateway=self.gateway, status_code=response.status_code)
            raise error_for_status(response.status_code, message, gateway=self.gateway)

        try:
            data = response.json()
        except ValueError as e:
            raise AuthError("Token response is not valid JSON", gateway=self.gateway) from e

        access_token = data.get("access_token")
        if not access_token:
            raise AuthError("Token response missing access_token", gateway=self.gateway)
        return TokenGrant(access_token=access_token, expires_in=float(data.get("expires_in") or 0))


class StaticSecret(TokenSource):
    """Long-lived API secret (e.g. a Stripe secret key) served through the cache.

    The secret is resolved at fetch time, so after ``invalidate`` a rotated key
    is picked up without restarting the process.
    """

    def __init__(self, resolve: Callable[[], str], *, gateway: str, ttl: float = 3600.0):
        self._resolve = resolve
        self.gateway = gateway
        self.ttl = ttl

    def fetch(self) -> TokenGrant:
        secret = self._resolve()
        if not secret:
            raise AuthError("API secret is not configured", gateway=self.gateway)
        return TokenGrant(access_token=secret, expires_in=self.ttl)


class _Credential:
    """Cached token for one gateway; only touched under its entry lock"""

    def __init__(self, gateway_id: str, source: TokenSource, refresh_lead: float):
        self.gateway_id = gateway_id
        self.source = source
        self.refresh_lead = refresh_lead
        self.lock = ReadWriteLock()
        self._token: Optional[str] = None
        self._expires_at = 0.0

    def usable(self, now: float) -> bool:
        return self._token is not None and now + self.refresh_lead < self._expires_at

    def store(self, grant: TokenGrant, now: float) -> None:
        self._token = grant.access_token
        self._expires_at = now + grant.expires_in

    def clear(self) -> None:
        self._token = None
        self._expires_at = 0.0

    @property
    def token(self) -> Optional[str]:
        return self._token


class CredentialCache:
    """Thread-safe token store keyed by gateway id.

    The only mutation paths are the refresh inside ``get_token`` and
    ``invalidate``/``clear``; tokens are never exposed any other way.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._entries: Dict[str, _Credential] = {}
        self._registry_lock = threading.Lock()

    def register(self, gateway_id: str, source: TokenSource, refresh_lead: float = DEFAULT_REFRESH_LEAD) -> None:
        """Attach a token source to a gateway id, replacing any previous one"""
        with self._registry_lock:
            self._entries[gateway_id] = _Credential(gateway_id, source, refresh_lead)
        logger.info(f"Registered credential source for gateway {gateway_id} (client={source.client_id or '-'})")

    def _entry(self, gateway_id: str) -> _Credential:
        entry = self._entries.get(gateway_id)
        if entry is None:
            raise AuthError("No credentials registered", gateway=gateway_id)
        return entry

    def get_token(self, gateway_id: str) -> str:
        """Return a bearer token with at least ``refresh_lead`` seconds left.

        Raises:
            AuthError: credentials rejected or not configured
            RateLimitError / ServerError / TransportError: token endpoint unavailable;
                the previously cached entry is left untouched
        """
        entry = self._entry(gateway_id)

        with entry.lock.read():
            if entry.usable(self._clock()):
                return entry.token

        with entry.lock.write():
            # Another thread may have refreshed while we waited for the lock
            if entry.usable(self._clock()):
                return entry.token
            return self._refresh(entry)

    def _refresh(self, entry: _Credential) -> str:
        try:
            grant = entry.source.fetch()
        except GatewayError as e:
            token_refresh_counter.labels(gateway=entry.gateway_id, outcome=type(e).__name__).inc()
            logger.warning(f"Token refresh failed for gateway {entry.gateway_id}: {e}")
            raise
        entry.store(grant, self._clock())
        token_refresh_counter.labels(gateway=entry.gateway_id, outcome="success").inc()
        logger.debug(f"Refreshed token for gateway {entry.gateway_id} (expires in {grant.expires_in:.0f}s)")
        return entry.token

    def invalidate(self, gateway_id: str, stale_token: Optional[str] = None) -> None:
        """Drop the cached token so the next ``get_token`` goes to the network.

        With ``stale_token`` the entry is only cleared while it still holds
        that token; a caller whose rejected token was already replaced by
        another thread leaves the fresh one in place.
        """
        entry = self._entries.get(gateway_id)
        if entry is None:
            return
        with entry.lock.write():
            if stale_token is not None and entry.token != stale_token:
                logger.debug(f"Token for gateway {gateway_id} already replaced, keeping it")
                return
            entry.clear()
        logger.info(f"Invalidated cached token for gateway {gateway_id}")

    def clear(self) -> None:
        """Forget every cached token (shutdown)"""
        for entry in list(self._entries.values()):
            with entry.lock.write():
                entry.clear()


def _error_message(response: httpx.Response) -> Optional[str]:
    try:
        body = response.json()
    except ValueError:
        return response.text or None
    if not isinstance(body, dict):
        return None
    return body.get("mensagem") or body.get("message") or body.get("error_description") or body.get("detail")


# Process-wide cache used by the gateway adapters
credential_cache = CredentialCache()
