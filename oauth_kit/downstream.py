"""
JSON client for the next hop in the chain. Every request carries the caller's own
client_credentials token, attached by BearerTokenAuth; failures surface as DownstreamError
(or TokenAcquisitionFailed when no token could be obtained, in which case nothing is sent).

Routes pass the `request_cancellation` event along so a client that hangs up does not
keep a token acquisition or downstream call going on its behalf.
"""
import asyncio
import logging
import threading
from typing import AsyncIterator

import httpx
from fastapi import Request

from oauth_kit.client_tokens import BearerTokenAuth, ClientTokenManager
from oauth_kit.errors import DownstreamError

logger = logging.getLogger(__name__)

DISCONNECT_POLL_SECONDS = 0.1


async def request_cancellation(request: Request) -> AsyncIterator[threading.Event]:
    """
    Dependency: an event that is set once the inbound client disconnects.
    Sync routes run on the thread pool, so the watcher stays on the event loop and
    the route only ever looks at the event.
    """
    cancelled = threading.Event()

    async def watch():
        while not cancelled.is_set():
            if await request.is_disconnected():
                logger.info("Client disconnected from %s %s; abandoning outbound calls", request.method, request.url.path)
                cancelled.set()
                return
            await asyncio.sleep(DISCONNECT_POLL_SECONDS)

    watcher = asyncio.create_task(watch())
    try:
        yield cancelled
    finally:
        watcher.cancel()


class ServiceClient:
    def __init__(
        self,
        service: str,
        base_url: str,
        manager: ClientTokenManager,
        registration_id: str,
        *,
        timeout: float = 10.0,
        transport: httpx.BaseTransport | None = None,
    ):
        self.service = service
        self._manager = manager
        self._registration_id = registration_id
        self._http = httpx.Client(
            base_url=base_url,
            auth=BearerTokenAuth(manager, registration_id),
            timeout=timeout,
            transport=transport,
            headers={"Accept": "application/json"},
        )

    def request_json(self, method: str, path: str, *, cancelled: threading.Event | None = None, **kwargs):
        if cancelled is not None:
            kwargs["auth"] = BearerTokenAuth(self._manager, self._registration_id, cancelled)
        try:
            r = self._http.request(method, path, **kwargs)
        except httpx.TransportError as e:
            raise DownstreamError(self.service, f"{method} {path} failed: {e}") from e
        if r.status_code >= 400:
            logger.warning("%s answered %d to %s %s", self.service, r.status_code, method, path)
            raise DownstreamError(self.service, f"{method} {path} returned {r.status_code}", status_code=r.status_code)
        try:
            return r.json()
        except ValueError as e:
            raise DownstreamError(self.service, f"{method} {path} returned a non-JSON body") from e

    def get_json(self, path: str, *, cancelled: threading.Event | None = None):
        return self.request_json("GET", path, cancelled=cancelled)

    def post_json(self, path: str, body: dict, *, cancelled: threading.Event | None = None):
        return self.request_json("POST", path, json=body, cancelled=cancelled)

    def close(self) -> None:
        self._http.close()
