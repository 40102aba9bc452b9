"""
PORTICO Request Classifier
==========================

Decides, for every intercepted HTTP request, whether the client should
see the portal, be cleared, or be passed through untouched.

Checks:
- Clear action: a configured header carries the exact configured value.
  Wins over everything else and clears the source IP.
- Probe match: (host, path) is a configured probe URL, one of its CNAME
  targets, or one of their resolved addresses.
- Probe header: a configured header matches its pattern. The (host, path)
  pair is then cached for a short while so the rest of the probe sequence
  is caught even without the header.
- Cached path: (host, path) was learned from a probe header recently.

Author: Team PORTICO
"""

import re
import threading
import time
from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Mapping, Optional, Pattern, Set, Tuple

from loguru import logger

from .cleared_registry import ClearedClientRegistry
from .config import GatewayConfig
from .probe_pipeline import ProbeResolutionPipeline, ProbeTarget


class Verdict(Enum):
    """What the proxy should do with a request."""
    PASS_THROUGH = "pass_through"
    CLEAR_AND_PASS = "clear_and_pass"
    SHOW_PORTAL = "show_portal"


@dataclass(frozen=True)
class ProbeRequest:
    """The parts of an HTTP request the classifier looks at."""
    host: str
    path: str
    source_ip: str
    headers: Mapping[str, str] = field(default_factory=dict)


def normalize_host(host: Optional[str]) -> str:
    """Lower-case a Host header value and drop the default :80 port."""
    host = (host or "").strip().lower()
    if host.endswith(":80"):
        host = host[:-3]
    return host


@dataclass
class CachedPathEntry:
    host: str
    path: str
    expires_at: float


class PathCache:
    """
    Time-bounded set of (host, path) pairs.

    Each entry owns a timer that evicts it after ``ttl`` seconds; lookups
    also ignore entries past their expiry.

    Every add or refresh starts a ``threading.Timer``, i.e. one sleeping
    thread per live (host, path) pair. Refreshing cancels the previous
    timer, so the thread count is bounded by the number of distinct paths
    seen within one ``ttl`` window. Keep ``cache_pathname_time`` short.
    """

    def __init__(self, ttl: float, clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self.clock = clock
        self._entries: Dict[Tuple[str, str], CachedPathEntry] = {}
        self._timers: Dict[Tuple[str, str], threading.Timer] = {}
        self._lock = threading.Lock()

    def add(self, host: str, path: str) -> CachedPathEntry:
        """Insert or refresh (host, path) with a fresh expiry."""
        key = (host, path)
        entry = CachedPathEntry(host=host, path=path, expires_at=self.clock() + self.ttl)

        timer = threading.Timer(self.ttl, self._expire, args=(key, entry.expires_at))
        timer.daemon = True

        with self._lock:
            old_timer = self._timers.pop(key, None)
            if old_timer:
                old_timer.cancel()
            self._entries[key] = entry
            self._timers[key] = timer
        timer.start()
        return entry

    def contains(self, host: str, path: str) -> bool:
        with self._lock:
            entry = self._entries.get((host, path))
            return entry is not None and entry.expires_at > self.clock()

    def _expire(self, key: Tuple[str, str], expires_at: float):
        with self._lock:
            entry = self._entries.get(key)
            # A refreshed entry has a later expiry and its own timer
            if entry is not None and entry.expires_at == expires_at:
                del self._entries[key]
                self._timers.pop(key, None)
                logger.debug(f"Cached path expired: {key[0]}{key[1]}")

    def entries(self) -> List[CachedPathEntry]:
        now = self.clock()
        with self._lock:
            return [e for e in self._entries.values() if e.expires_at > now]

    def clear(self) -> None:
        with self._lock:
            for timer in self._timers.values():
                timer.cancel()
            self._timers.clear()
            self._entries.clear()

    def __len__(self):
        return len(self.entries())


class RequestClassifier:
    """Per-request portal decision."""

    def __init__(self, config: GatewayConfig, registry: ClearedClientRegistry,
                 pipeline: Optional[ProbeResolutionPipeline] = None,
                 path_cache: Optional[PathCache] = None):
        self.config = config
        self.registry = registry
        self.pipeline = pipeline
        self.path_cache = path_cache or PathCache(config.cache_pathname_time)

        self.static_probes: Set[Tuple[str, str]] = {
            (t.hostname, t.path)
            for t in (ProbeTarget.from_url(url) for url in config.probe_requests)
        }
        self.probe_headers: List[Tuple[str, Pattern]] = [
            (name.lower(), re.compile(pattern))
            for name, patterns in config.probe_headers
            for pattern in patterns
        ]
        self.clear_headers: List[Tuple[str, str]] = [
            (name.lower(), value) for name, value in config.clear_ip_headers
        ]

        self.stats: Counter = Counter()
        self._stats_lock = threading.Lock()

    def classify(self, request: ProbeRequest) -> Verdict:
        headers = {k.lower(): v for k, v in request.headers.items()}
        host = normalize_host(request.host)
        path = request.path or "/"

        if self._is_clear_action(headers):
            logger.debug(f"srcIp: {request.source_ip} being added to cleared IPs")
            self.registry.mark_cleared(request.source_ip)
            return self._count(Verdict.CLEAR_AND_PASS)

        matched = False

        if self._matches_probe(host, path):
            logger.debug(f"{host}{path} matches a probe URL")
            matched = True

        if self._matches_probe_header(headers):
            logger.debug(
                f"{host}{path} matches a probe header, caching for "
                f"{self.config.cache_pathname_time}sec"
            )
            self.path_cache.add(host, path)
            matched = True

        if self.path_cache.contains(host, path):
            matched = True

        return self._count(Verdict.SHOW_PORTAL if matched else Verdict.PASS_THROUGH)

    def _is_clear_action(self, headers: Mapping[str, str]) -> bool:
        for name, value in self.clear_headers:
            if headers.get(name) == value:
                logger.debug(f"header {name} matches clear action")
                return True
        return False

    def _matches_probe(self, host: str, path: str) -> bool:
        if (host, path) in self.static_probes:
            return True
        if self.pipeline is None:
            return False
        for address in self.pipeline.addresses:
            if address.path == path and host in (address.origin_hostname, address.ip_address):
                return True
        return False

    def _matches_probe_header(self, headers: Mapping[str, str]) -> bool:
        matched = False
        for name, pattern in self.probe_headers:
            value = headers.get(name)
            if isinstance(value, str) and pattern.search(value):
                logger.debug(f"header {name}: {value!r} matches {pattern.pattern!r}")
                matched = True
        return matched

    def _count(self, verdict: Verdict) -> Verdict:
        with self._stats_lock:
            self.stats[verdict.value] += 1
        return verdict
