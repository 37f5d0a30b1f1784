"""CredentialCache tests: refresh-ahead, single-flight refresh, invalidation"""
import threading
import time

import httpx
import pytest

from beltbilling.core.errors import AuthError, ServerError, TransportError
from beltbilling.services.credential_cache import (
    CredentialCache, OAuth2ClientCredentials, ReadWriteLock, StaticSecret, TokenGrant, TokenSource
)


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class CountingSource(TokenSource):
    """Issues token-1, token-2, ... and can be told to fail or stall"""

    def __init__(self, expires_in: float = 3600.0, delay: float = 0.0):
        self.gateway = "pix"
        self.client_id = "client-id"
        self.expires_in = expires_in
        self.delay = delay
        self.calls = 0
        self.fail_with = None
        self._lock = threading.Lock()

    def fetch(self) -> TokenGrant:
        with self._lock:
            self.calls += 1
            n = self.calls
        if self.delay:
            time.sleep(self.delay)
        if self.fail_with is not None:
            raise self.fail_with
        return TokenGrant(access_token=f"token-{n}", expires_in=self.expires_in)


@pytest.mark.critical
class TestCredentialCache:
    """Token caching behaviour"""

    def test_cached_token_reused_until_refresh_lead(self):
        clock = FakeClock()
        source = CountingSource(expires_in=3600)
        cache = CredentialCache(clock=clock)
        cache.register("pix", source, refresh_lead=60)

        assert cache.get_token("pix") == "token-1"
        clock.advance(3500)
        assert cache.get_token("pix") == "token-1"
        assert source.calls == 1

    def test_token_refreshed_inside_refresh_lead(self):
        clock = FakeClock()
        source = CountingSource(expires_in=3600)
        cache = CredentialCache(clock=clock)
        cache.register("pix", source, refresh_lead=60)

        cache.get_token("pix")
        clock.advance(3541)  # 59s left, inside the lead window
        assert cache.get_token("pix") == "token-2"
        assert source.calls == 2

    def test_concurrent_misses_fetch_once(self):
        """A burst of callers on a cold cache produces a single token request"""
        source = CountingSource(delay=0.05)
        cache = CredentialCache()
        cache.register("pix", source)

        workers = 50
        barrier = threading.Barrier(workers)
        tokens = []
        errors = []

        def worker():
            try:
                barrier.wait()
                tokens.append(cache.get_token("pix"))
            except Exception as e:  # pragma: no cover - surfaced by the assert below
                errors.append(e)

        threads = [threading.Thread(target=worker) for _ in range(workers)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=10)

        assert errors == []
        assert source.calls == 1
        assert tokens == ["token-1"] * workers

    def test_invalidate_forces_next_fetch(self):
        source = CountingSource()
        cache = CredentialCache()
        cache.register("pix", source)

        assert cache.get_token("pix") == "token-1"
        cache.invalidate("pix")
        assert cache.get_token("pix") == "token-2"
        assert source.calls == 2

    def test_invalidate_with_replaced_token_keeps_fresh_one(self):
        source = CountingSource()
        cache = CredentialCache()
        cache.register("pix", source)

        cache.get_token("pix")
        cache.invalidate("pix", stale_token="token-1")
        assert cache.get_token("pix") == "token-2"

        # A late caller still holding token-1 must not throw token-2 away
        cache.invalidate("pix", stale_token="token-1")
        assert cache.get_token("pix") == "token-2"
        assert source.calls == 2

        cache.invalidate("pix", stale_token="token-2")
        assert cache.get_token("pix") == "token-3"

    def test_failed_refresh_leaves_entry_untouched(self):
        clock = FakeClock()
        source = CountingSource(expires_in=3600)
        cache = CredentialCache(clock=clock)
        cache.register("pix", source, refresh_lead=60)
        cache.get_token("pix")

        clock.advance(3550)
        source.fail_with = ServerError("token endpoint down", gateway="pix", status_code=503)
        with pytest.raises(ServerError):
            cache.get_token("pix")
        assert cache._entries["pix"].token == "token-1"

        # Endpoint recovers: next call refreshes normally
        source.fail_with = None
        assert cache.get_token("pix") == "token-3"

    def test_unregistered_gateway_raises_auth_error(self):
        cache = CredentialCache()
        with pytest.raises(AuthError):
            cache.get_token("card")

    def test_invalidate_unknown_gateway_is_noop(self):
        CredentialCache().invalidate("nope")

    def test_clear_drops_every_token(self):
        pix_source = CountingSource()
        card_source = CountingSource()
        cache = CredentialCache()
        cache.register("pix", pix_source)
        cache.register("card", card_source)
        cache.get_token("pix")
        cache.get_token("card")

        cache.clear()
        cache.get_token("pix")
        cache.get_token("card")
        assert pix_source.calls == 2
        assert card_source.calls == 2


@pytest.mark.high
class TestTokenSources:
    """OAuth2 and static secret sources"""

    def _oauth(self, handler):
        client = httpx.Client(transport=httpx.MockTransport(handler))
        return OAuth2ClientCredentials(
            "https://pix.test/", "client-id", "client-secret", gateway="pix", http_client=client,
        )

    def test_oauth_client_credentials_request(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"access_token": "abc", "expires_in": 3600})

        grant = self._oauth(handler).fetch()

        assert grant == TokenGrant(access_token="abc", expires_in=3600.0)
        request = seen[0]
        assert str(request.url) == "https://pix.test/oauth/token"
        assert request.headers["authorization"].startswith("Basic ")
        assert b"grant_type=client_credentials" in request.content

    @pytest.mark.parametrize("status", [400, 401, 403])
    def test_oauth_rejection_is_auth_error(self, status):
        source = self._oauth(lambda request: httpx.Response(status, json={"mensagem": "invalid_client"}))
        with pytest.raises(AuthError) as exc:
            source.fetch()
        assert "invalid_client" in str(exc.value)

    def test_oauth_server_error_is_retryable(self):
        source = self._oauth(lambda request: httpx.Response(503, text="unavailable"))
        with pytest.raises(ServerError) as exc:
            source.fetch()
        assert exc.value.retryable is True

    def test_oauth_network_error_is_transport_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(TransportError):
            self._oauth(handler).fetch()

    def test_oauth_missing_access_token(self):
        source = self._oauth(lambda request: httpx.Response(200, json={"expires_in": 3600}))
        with pytest.raises(AuthError):
            source.fetch()

    def test_oauth_without_credentials_makes_no_request(self):
        calls = []
        client = httpx.Client(transport=httpx.MockTransport(lambda r: calls.append(r) or httpx.Response(200)))
        source = OAuth2ClientCredentials("https://pix.test", "", "", gateway="pix", http_client=client)
        with pytest.raises(AuthError):
            source.fetch()
        assert calls == []

    def test_static_secret_resolved_on_each_fetch(self):
        secrets = iter(["sk_test_old", "sk_test_new"])
        source = StaticSecret(lambda: next(secrets), gateway="card", ttl=10)
        assert source.fetch().access_token == "sk_test_old"
        assert source.fetch().access_token == "sk_test_new"

    def test_static_secret_missing(self):
        with pytest.raises(AuthError):
            StaticSecret(lambda: "", gateway="card").fetch()

    def test_source_without_fetch_cannot_be_built(self):
        class Incomplete(TokenSource):
            pass

        with pytest.raises(TypeError):
            Incomplete()


class TestReadWriteLock:
    def test_readers_share_writer_excludes(self):
        lock = ReadWriteLock()
        inside = []
        release = threading.Event()

        def reader():
            with lock.read():
                inside.append("r")
                release.wait(timeout=5)

        readers = [threading.Thread(target=reader) for _ in range(3)]
        for t in readers:
            t.start()
        deadline = time.monotonic() + 5
        while len(inside) < 3 and time.monotonic() < deadline:
            time.sleep(0.01)
        assert len(inside) == 3

        acquired = threading.Event()

        def writer():
            with lock.write():
                acquired.set()

        w = threading.Thread(target=writer)
        w.start()
        assert not acquired.wait(timeout=0.1)

        release.set()
        assert acquired.wait(timeout=5)
        for t in readers:
            t.join(timeout=5)
        w.join(timeout=5)
