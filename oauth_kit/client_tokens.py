"""
Outbound OAuth2 client for service-to-service calls (client_credentials, RFC 6749 §4.4).
Tokens are cached per (registration_id, principal) in an AuthorizedClientCache owned by
the service, refreshed when they enter the expiry skew window, and attached to outgoing
httpx requests by BearerTokenAuth.
"""
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Iterable

import httpx

from oauth_kit.errors import TokenAcquisitionFailed

logger = logging.getLogger(__name__)

SERVICE_ACCOUNT = "service-account"

_DEFAULT_EXPIRES_IN = 300
_LOCK_POLL_SECONDS = 0.05


@dataclass(frozen=True)
class ClientRegistration:
    """One outbound hop: which client credentials to use against which token endpoint."""

    registration_id: str
    client_id: str
    client_secret: str = field(repr=False)
    token_uri: str = ""
    scopes: tuple[str, ...] = ()


@dataclass(frozen=True)
class AuthorizedClient:
    registration_id: str
    principal_name: str
    access_token: str = field(repr=False)
    issued_at: float
    expires_in: int
    scopes: frozenset[str] = frozenset()
    refresh_token: str | None = field(default=None, repr=False)

    @property
    def expires_at(self) -> float:
        return self.issued_at + self.expires_in

    def expired_or_soon(self, skew_seconds: int, now: float | None = None) -> bool:
        """
        True if expired or within skew_seconds of expiry. A token whose whole lifetime
        is shorter than the skew is only considered stale once it has actually expired.
        """
        elapsed = (time.time() if now is None else now) - self.issued_at
        if elapsed >= self.expires_in:
            return True
        return self.expires_in > skew_seconds and elapsed >= self.expires_in - skew_seconds


class AuthorizedClientCache:
    """
    In-memory AuthorizedClient store. Created at service startup, cleared at shutdown,
    never persisted. Hands out one lock per key so acquisition is single-flight per key
    without serializing unrelated registrations.
    """

    def __init__(self):
        self._entries: dict[tuple[str, str], AuthorizedClient] = {}
        self._locks: dict[tuple[str, str], threading.Lock] = {}
        self._guard = threading.Lock()

    def get(self, registration_id: str, principal_name: str) -> AuthorizedClient | None:
        return self._entries.get((registration_id, principal_name))

    def put(self, entry: AuthorizedClient) -> None:
        with self._guard:
            self._entries[(entry.registration_id, entry.principal_name)] = entry

    def evict(self, registration_id: str, principal_name: str) -> AuthorizedClient | None:
        with self._guard:
            return self._entries.pop((registration_id, principal_name), None)

    def lock_for(self, registration_id: str, principal_name: str) -> threading.Lock:
        key = (registration_id, principal_name)
        lock = self._locks.get(key)
        if lock is None:
            with self._guard:
                lock = self._locks.setdefault(key, threading.Lock())
        return lock

    def clear(self) -> None:
        with self._guard:
            self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


def _error_code(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return "unknown_error"
    if isinstance(body, dict):
        detail = body.get("detail") if isinstance(body.get("detail"), dict) else body
        return str(detail.get("error", "unknown_error"))
    return "unknown_error"


class ClientTokenManager:
    def __init__(
        self,
        registrations: Iterable[ClientRegistration],
        cache: AuthorizedClientCache,
        *,
        http_client: httpx.Client | None = None,
        principal_name: str = SERVICE_ACCOUNT,
        skew_seconds: int = 60,
        timeout_seconds: float = 10.0,
        acquire_timeout_seconds: float = 30.0,
        max_attempts: int = 3,
        backoff_seconds: float = 0.5,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._registrations = {r.registration_id: r for r in registrations}
        self.cache = cache
        self.principal_name = principal_name
        self._owns_http = http_client is None
        self._http = http_client or httpx.Client(timeout=timeout_seconds)
        self._skew = skew_seconds
        self._timeout = timeout_seconds
        self._acquire_timeout = acquire_timeout_seconds
        self._max_attempts = max(1, max_attempts)
        self._backoff = backoff_seconds
        self._clock = clock
        self._sleep = sleep

    def registration(self, registration_id: str) -> ClientRegistration:
        try:
            return self._registrations[registration_id]
        except KeyError:
            raise TokenAcquisitionFailed(registration_id, "unknown client registration") from None

    def acquire(self, registration_id: str, *, cancelled: threading.Event | None = None) -> str:
        """Return a usable access token for the registration, obtaining one if needed."""
        return self.authorize(registration_id, cancelled=cancelled).access_token

    def authorize(self, registration_id: str, *, cancelled: threading.Event | None = None) -> AuthorizedClient:
        registration = self.registration(registration_id)
        entry = self.cache.get(registration_id, self.principal_name)
        if entry is not None and not entry.expired_or_soon(self._skew, self._clock()):
            return entry

        lock = self.cache.lock_for(registration_id, self.principal_name)
        if not self._wait_for(lock, registration_id, cancelled):
            raise TokenAcquisitionFailed(
                registration_id, "timed out waiting for in-flight token request", transient=True
            )
        try:
            # Another caller may have obtained the token while we waited
            entry = self.cache.get(registration_id, self.principal_name)
            if entry is not None and not entry.expired_or_soon(self._skew, self._clock()):
                return entry
            entry = self._obtain(registration, entry, cancelled)
            self.cache.put(entry)
            logger.info(
                "Obtained access token for registration=%s scope=%s expires_in=%ds",
                registration_id,
                " ".join(sorted(entry.scopes)),
                entry.expires_in,
            )
            return entry
        finally:
            lock.release()

    def evict(self, registration_id: str) -> None:
        self.cache.evict(registration_id, self.principal_name)

    def close(self) -> None:
        if self._owns_http:
            self._http.close()

    def _wait_for(self, lock: threading.Lock, registration_id: str, cancelled: threading.Event | None) -> bool:
        deadline = time.monotonic() + self._acquire_timeout
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            if lock.acquire(timeout=min(remaining, _LOCK_POLL_SECONDS)):
                return True
            if cancelled is not None and cancelled.is_set():
                raise TokenAcquisitionFailed(registration_id, "cancelled by caller", transient=True)

    def _obtain(
        self,
        registration: ClientRegistration,
        previous: AuthorizedClient | None,
        cancelled: threading.Event | None,
    ) -> AuthorizedClient:
        if previous is not None and previous.refresh_token:
            try:
                return self._request_token(
                    registration,
                    {"grant_type": "refresh_token", "refresh_token": previous.refresh_token},
                    cancelled,
                )
            except TokenAcquisitionFailed as e:
                if e.transient:
                    raise
                logger.info(
                    "Refresh token for %s rejected; falling back to client_credentials",
                    registration.registration_id,
                )
        form = {"grant_type": "client_credentials"}
        if registration.scopes:
            form["scope"] = " ".join(registration.scopes)
        return self._request_token(registration, form, cancelled)

    def _request_token(
        self,
        registration: ClientRegistration,
        form: dict,
        cancelled: threading.Event | None,
    ) -> AuthorizedClient:
        attempt = 0
        while True:
            attempt += 1
            try:
                return self._post_token(registration, form)
            except TokenAcquisitionFailed as e:
                if not e.transient or attempt >= self._max_attempts:
                    logger.error(
                        "Token acquisition for %s failed after %d attempt(s): %s",
                        registration.registration_id,
                        attempt,
                        e,
                    )
                    raise
                if cancelled is not None and cancelled.is_set():
                    raise
                delay = self._backoff * (2 ** (attempt - 1))
                logger.warning(
                    "Transient token failure for %s (attempt %d/%d): %s; retrying in %.2fs",
                    registration.registration_id,
                    attempt,
                    self._max_attempts,
                    e,
                    delay,
                )
                self._sleep(delay)

    def _post_token(self, registration: ClientRegistration, form: dict) -> AuthorizedClient:
        rid = registration.registration_id
        try:
            r = self._http.post(
                registration.token_uri,
                data=form,
                auth=(registration.client_id, registration.client_secret),
                headers={"Accept": "application/json"},
                timeout=self._timeout,
            )
        except httpx.TimeoutException as e:
            raise TokenAcquisitionFailed(rid, f"token request timed out: {e}", transient=True) from e
        except httpx.TransportError as e:
            raise TokenAcquisitionFailed(rid, f"token endpoint unreachable: {e}", transient=True) from e

        if r.status_code >= 500:
            raise TokenAcquisitionFailed(rid, f"token endpoint returned {r.status_code}", transient=True)
        if r.status_code != 200:
            raise TokenAcquisitionFailed(rid, f"token request rejected: {r.status_code} {_error_code(r)}")

        try:
            data = r.json()
            access_token = data["access_token"]
        except (ValueError, KeyError, TypeError) as e:
            raise TokenAcquisitionFailed(rid, "malformed token response") from e
        if str(data.get("token_type", "Bearer")).lower() != "bearer":
            raise TokenAcquisitionFailed(rid, f"unsupported token_type {data.get('token_type')!r}")

        return AuthorizedClient(
            registration_id=rid,
            principal_name=self.principal_name,
            access_token=access_token,
            issued_at=self._clock(),
            expires_in=int(data.get("expires_in") or _DEFAULT_EXPIRES_IN),
            scopes=frozenset((data.get("scope") or form.get("scope") or "").split()),
            refresh_token=data.get("refresh_token"),
        )


class BearerTokenAuth(httpx.Auth):
    """
    httpx request interceptor: attaches the registration's token to each request.
    If no token can be obtained, TokenAcquisitionFailed propagates and nothing is sent.
    On a 401 the cached token is dropped and the request is retried once.
    When `cancelled` is set (the inbound request went away) the acquisition is abandoned
    and the request is not sent; a token that did arrive stays cached.
    """

    requires_request_body = True

    def __init__(
        self,
        manager: ClientTokenManager,
        registration_id: str,
        cancelled: threading.Event | None = None,
    ):
        self._manager = manager
        self._registration_id = registration_id
        self._cancelled = cancelled

    def _bearer(self) -> str:
        token = self._manager.acquire(self._registration_id, cancelled=self._cancelled)
        if self._cancelled is not None and self._cancelled.is_set():
            raise TokenAcquisitionFailed(self._registration_id, "cancelled by caller", transient=True)
        return f"Bearer {token}"

    def auth_flow(self, request: httpx.Request):
        request.headers["Authorization"] = self._bearer()
        response = yield request
        if response.status_code == 401:
            logger.info("Downstream rejected token for %s; re-acquiring once", self._registration_id)
            self._manager.evict(self._registration_id)
            request.headers["Authorization"] = self._bearer()
            yield request
