"""
=============================================================================
TRACKING BEACON
=============================================================================

After a successful (2xx) response has been written to the client, the
server reports the page view to a Matomo tracking endpoint with one
outbound GET. The client never waits for it and never sees its outcome.

=============================================================================
FIRE AND FORGET
=============================================================================

    ┌─────────────────────────────────────────────────────────────────────┐
    │                                                                      │
    │   connection task                         beacon task                │
    │   ───────────────                         ───────────                │
    │   resolve request                                                    │
    │   write response ──► 2xx? ──► spawn() ──► build TrackingEvent       │
    │   next request / close                    GET {endpoint}?...         │
    │        (never awaits the beacon)          failure → log warning     │
    │                                                                      │
    └─────────────────────────────────────────────────────────────────────┘

BeaconDispatcher keeps a strong reference to every running beacon task
(the event loop only keeps weak ones) and drops it when the task finishes.
On shutdown, drain() gives pending beacons a short grace period.

=============================================================================
THE BEACON URL
=============================================================================

Matomo HTTP tracking API. Parameters, in this order:

    idsite      site id (MATOMO_SITE_ID)
    rec=1       record the request
    url         request URI as received (path and query)
    urlref      Referer header              ┐
    ua          User-Agent header           ├ omitted when absent
    lang        Accept-Language header      ┘
    cip         client IP (needs token_auth)
    cdt         Unix timestamp in seconds (needs token_auth)
    token_auth  MATOMO_TOKEN
    rand        random 128-bit integer, defeats caching
    apiv=1
    send_image=0  answer 204 instead of a GIF

A header that is present but not visible ASCII cannot be reported as-is;
the beacon for that request is dropped with a TrackingError.

The token is a secret: URLs are logged with token_auth redacted.

=============================================================================
"""

import asyncio
import logging
import secrets
import time
from dataclasses import dataclass, field
from typing import Optional, Mapping, Set
from urllib.parse import urlencode

import httpx

from .config import EdgeConfig


logger = logging.getLogger(__name__)


class TrackingError(Exception):
    """A beacon could not be built or was rejected by the endpoint."""


def _visible_ascii(value: str) -> bool:
    return all(ch == "\t" or " " <= ch <= "~" for ch in value)


@dataclass(frozen=True)
class TrackingEvent:
    """One page view, built fresh for each qualifying response."""

    url: str
    client_ip: str
    referrer: Optional[str] = None
    user_agent: Optional[str] = None
    accept_language: Optional[str] = None
    timestamp: int = field(default_factory=lambda: int(time.time()))
    nonce: int = field(default_factory=lambda: secrets.randbits(128))

    @classmethod
    def from_request(
        cls,
        peer_address: tuple[str, int],
        request_uri: str,
        headers: Mapping[str, str],
    ) -> "TrackingEvent":
        """
        Build an event from the request's peer address, URI and headers.

        Headers are looked up by lowercase name.

        Raises:
            TrackingError: If a reported header is not visible ASCII.
        """
        reported = {}
        for field_name, header in (
            ("referrer", "referer"),
            ("user_agent", "user-agent"),
            ("accept_language", "accept-language"),
        ):
            value = headers.get(header)
            if value is not None and not _visible_ascii(value):
                raise TrackingError(f"Header {header} is not visible ASCII")
            reported[field_name] = value

        return cls(url=request_uri, client_ip=peer_address[0], **reported)


class TrackingBeacon:
    """
    Builds and sends the Matomo tracking request.

        beacon = TrackingBeacon(config)
        await beacon.emit(("203.0.113.7", 51234), "/blog?page=2", request.headers)
    """

    def __init__(self, config: EdgeConfig, client: Optional[httpx.AsyncClient] = None):
        self.endpoint = config.tracking_endpoint.split("?", 1)[0]
        self.site_id = config.tracking_site_id
        self.token = config.tracking_token or ""
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(timeout=config.tracking_timeout)

    def params(self, event: TrackingEvent, token: Optional[str] = None) -> list[tuple[str, str]]:
        """Query parameters in the order the tracking API documents them."""
        params = [("idsite", self.site_id), ("rec", "1"), ("url", event.url)]

        if event.referrer is not None:
            params.append(("urlref", event.referrer))
        if event.user_agent is not None:
            params.append(("ua", event.user_agent))
        if event.accept_language is not None:
            params.append(("lang", event.accept_language))

        params += [
            ("cip", event.client_ip),
            ("cdt", str(event.timestamp)),
            ("token_auth", self.token if token is None else token),
            ("rand", str(event.nonce)),
            ("apiv", "1"),
            ("send_image", "0"),
        ]
        return params

    def build_url(self, event: TrackingEvent) -> str:
        return f"{self.endpoint}?{urlencode(self.params(event))}"

    def redacted_url(self, event: TrackingEvent) -> str:
        return f"{self.endpoint}?{urlencode(self.params(event, token='REDACTED'))}"

    async def send(self, event: TrackingEvent) -> None:
        """
        Send one beacon.

        Raises:
            httpx.HTTPError: Transport failure.
            TrackingError: The endpoint answered with a non-2xx status.
        """
        logger.debug(f"Tracking: {self.redacted_url(event)}")
        response = await self.client.get(self.build_url(event))
        if not response.is_success:
            raise TrackingError(f"Tracking endpoint returned {response.status_code}")

    async def emit(
        self,
        peer_address: tuple[str, int],
        request_uri: str,
        headers: Mapping[str, str],
    ) -> None:
        await self.send(TrackingEvent.from_request(peer_address, request_uri, headers))

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()


class BeaconDispatcher:
    """Runs beacons as detached tasks whose failures end in the log."""

    def __init__(self, beacon: TrackingBeacon):
        self.beacon = beacon
        self._tasks: Set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def spawn(
        self,
        peer_address: tuple[str, int],
        request_uri: str,
        headers: Mapping[str, str],
    ) -> asyncio.Task:
        """Start a beacon without waiting for it. Must run inside the event loop."""
        task = asyncio.create_task(self._run(peer_address, request_uri, headers))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(
        self,
        peer_address: tuple[str, int],
        request_uri: str,
        headers: Mapping[str, str],
    ) -> None:
        try:
            await self.beacon.emit(peer_address, request_uri, headers)
        except (TrackingError, httpx.HTTPError, httpx.InvalidURL) as e:
            logger.warning(f"Tracking failed for {request_uri}: {e!r}")
        except Exception:
            logger.exception(f"Unexpected error while tracking {request_uri}")

    async def drain(self, timeout: float = 5.0) -> None:
        """Wait up to `timeout` seconds for running beacons, then cancel the rest."""
        if not self._tasks:
            return

        logger.info(f"Waiting for {len(self._tasks)} tracking request(s)")
        _, still_running = await asyncio.wait(set(self._tasks), timeout=timeout)

        for task in still_running:
            task.cancel()
        if still_running:
            logger.warning(f"Cancelled {len(still_running)} tracking request(s) on shutdown")
            await asyncio.gather(*still_running, return_exceptions=True)
