from __future__ import annotations

import logging
import threading
import time
from typing import Callable, List, Optional

import httpx


logger = logging.getLogger(__name__)

Listener = Callable[[bool], None]


class Connectivity:
    """
    Online/offline signal shared by the client, the store and the service.

    - `is_online()` returns the last known state, refreshing it first through
      `probe` when one is configured and the last probe is older than `ttl`
      seconds.
    - `set_online(value)` records a state pushed from outside (OS hooks,
      tests). Listeners fire only on an actual transition, outside the lock,
      in registration order.
    """

    def __init__(
        self,
        online: bool = True,
        *,
        probe: Optional[Callable[[], bool]] = None,
        ttl: float = 0.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._online = bool(online)
        self._probe = probe
        self._ttl = ttl
        self._clock = clock
        self._probed_at: Optional[float] = None
        self._listeners: List[Listener] = []
        self._lock = threading.Lock()

    def is_online(self) -> bool:
        if self._probe is not None and self._probe_due():
            self._probed_at = self._clock()
            try:
                value = bool(self._probe())
            except Exception as exc:
                logger.debug("Connectivity probe failed: %s", exc)
                value = False
            self.set_online(value)
        with self._lock:
            return self._online

    def _probe_due(self) -> bool:
        if self._probed_at is None:
            return True
        return self._clock() - self._probed_at >= self._ttl

    def set_online(self, value: bool) -> None:
        value = bool(value)
        with self._lock:
            if value == self._online:
                return
            self._online = value
            listeners = list(self._listeners)
        logger.info("Connectivity changed: %s", "online" if value else "offline")
        for listener in listeners:
            listener(value)

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def close(self) -> None:
        """Release the probe's HTTP client, if it owns one."""
        if isinstance(self._probe, HttpProbe):
            self._probe.close()


class HttpProbe:
    """Reports online when `url` answers a HEAD request with any status below 500."""

    def __init__(self, url: str, *, timeout: float = 3.0, client: Optional[httpx.Client] = None) -> None:
        self._url = url
        self._owns_client = client is None
        self._client = client or httpx.Client(timeout=timeout)

    def __call__(self) -> bool:
        try:
            resp = self._client.head(self._url)
        except (httpx.TimeoutException, httpx.TransportError):
            return False
        return resp.status_code < 500

    def close(self) -> None:
        if self._owns_client:
            self._client.close()


def http_probe(url: str, *, timeout: float = 3.0, client: Optional[httpx.Client] = None) -> HttpProbe:
    return HttpProbe(url, timeout=timeout, client=client)


__all__ = ["Connectivity", "HttpProbe", "http_probe"]
