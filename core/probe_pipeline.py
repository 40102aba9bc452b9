"""
PORTICO Probe Resolution Pipeline
=================================

Discovers the addresses that operating-system connectivity checkers talk
to and makes sure their port-80 traffic lands on the gateway proxy.

Every refresh cycle rebuilds everything from scratch:
1. Flush the PROXY chain
2. Resolve the CNAME set of every probe hostname (one level)
3. Resolve the A records of every probe and CNAME target, in parallel
4. Append one REDIRECT rule per resolved address and collect the
   matching dnsmasq ``host-record`` lines
5. Publish the new resolved-address snapshot
6. Rewrite the dnsmasq config file and restart dnsmasq

Per-hostname lookup failures are logged and skipped; rule, config file and
restart failures fail the cycle, and the next timer tick starts over.

Author: Team PORTICO
"""

import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional, Sequence, Tuple
from urllib.parse import urlparse

from loguru import logger

from .config import GatewayConfig
from .dns_resolver import ProbeResolver
from .dnsmasq import DnsmasqController, host_record
from .errors import PorticoError, ResolutionFailed, RuleMutationFailed
from .rule_engine import Rule, RuleEngine


@dataclass(frozen=True)
class ProbeTarget:
    """A connectivity-check endpoint parsed from a probe URL."""
    hostname: str
    path: str
    protocol: str = "http"

    @classmethod
    def from_url(cls, url: str) -> "ProbeTarget":
        parsed = urlparse(url)
        if not parsed.hostname:
            raise ValueError(f"Probe URL without a hostname: {url!r}")
        return cls(
            hostname=parsed.hostname.lower(),
            path=parsed.path or "/",
            protocol=parsed.scheme or "http",
        )

    def with_hostname(self, hostname: str) -> "ProbeTarget":
        return ProbeTarget(hostname=hostname.lower(), path=self.path, protocol=self.protocol)

    @property
    def url(self) -> str:
        return f"{self.protocol}://{self.hostname}{self.path}"


@dataclass(frozen=True)
class ResolvedProbeAddress:
    """One resolved address of a probe target."""
    ip_address: str
    origin_hostname: str
    path: str

    @property
    def url(self) -> str:
        return f"http://{self.ip_address}{self.path}"


class ProbeResolutionPipeline:
    """Periodic rebuild of the PROXY chain and the dnsmasq host-records."""

    def __init__(self, config: GatewayConfig, rule_engine: RuleEngine,
                 resolver: ProbeResolver, dnsmasq: DnsmasqController,
                 max_workers: int = 8):
        self.config = config
        self.rule_engine = rule_engine
        self.resolver = resolver
        self.dnsmasq = dnsmasq
        self.max_workers = max_workers

        self.targets: Tuple[ProbeTarget, ...] = tuple(
            ProbeTarget.from_url(url) for url in config.probe_requests
        )

        # Replaced wholesale on every refresh, never mutated in place
        self._addresses: Tuple[ResolvedProbeAddress, ...] = ()

        self._refresh_lock = threading.Lock()
        self.refresh_count = 0
        self.last_refresh: Optional[datetime] = None
        self.last_error: Optional[str] = None

    @property
    def addresses(self) -> Tuple[ResolvedProbeAddress, ...]:
        """Current resolved-address snapshot."""
        return self._addresses

    @property
    def is_refreshing(self) -> bool:
        return self._refresh_lock.locked()

    def redirect_rule(self, address: str) -> Rule:
        """REDIRECT rule sending port-80 traffic for ``address`` to the proxy."""
        return Rule(
            table="nat",
            chain=self.config.proxy_chain,
            protocol="tcp",
            destination=address,
            destination_port=80,
            in_interface=self.config.in_interface,
            jump="REDIRECT",
            target_options=(("to-ports", str(self.config.proxy_port)),),
        )

    def refresh(self) -> int:
        """
        Run one full refresh cycle.

        Cycles are serialized: a call made while another cycle is running
        waits for it to finish first.

        Returns:
            Number of resolved probe addresses published

        Raises:
            RuleMutationFailed: flushing the chain or appending a rule failed
            ConfigWriteFailed: the dnsmasq config file could not be written
            ForwarderRestartFailed: dnsmasq could not be restarted
        """
        with self._refresh_lock:
            try:
                count = self._refresh()
            except PorticoError as e:
                self.last_error = str(e)
                raise
            self.last_error = None
            self.last_refresh = datetime.now()
            self.refresh_count += 1
            return count

    def clear(self) -> None:
        """Forget the published snapshot (used after teardown)."""
        self._addresses = ()

    def _refresh(self) -> int:
        self.rule_engine.flush("nat", self.config.proxy_chain)

        working_set = self._expand_cnames(self.targets)
        resolved = self._resolve_addresses(working_set)

        config_lines: List[str] = []
        addresses: List[ResolvedProbeAddress] = []
        failures: List[RuleMutationFailed] = []

        for target, ips in resolved:
            for ip in dict.fromkeys(ips):
                try:
                    self.rule_engine.append(self.redirect_rule(ip))
                except RuleMutationFailed as e:
                    logger.error(f"Failed to add redirect rule for {ip} ({target.hostname}): {e}")
                    failures.append(e)
                    continue

                config_lines.append(host_record(target.hostname, ip))
                addresses.append(ResolvedProbeAddress(
                    ip_address=ip, origin_hostname=target.hostname, path=target.path
                ))

        self._addresses = tuple(addresses)
        logger.debug(f"{len(addresses)} redirect rules appended to {self.config.proxy_chain}")

        if failures:
            raise failures[0]

        self.dnsmasq.write_config(config_lines)
        self.dnsmasq.restart()

        logger.info(
            f"Probe refresh complete: {len(working_set)} probe targets, "
            f"{len(addresses)} redirect rules and host-records"
        )
        return len(addresses)

    def _expand_cnames(self, targets: Sequence[ProbeTarget]) -> List[ProbeTarget]:
        """Original targets followed by one target per CNAME, duplicates dropped."""

        def lookup(target: ProbeTarget) -> List[str]:
            try:
                cnames = self.resolver.resolve_cname(target.hostname)
            except ResolutionFailed as e:
                logger.error(str(e))
                return []
            logger.debug(f"cnames for {target.hostname}: {cnames}")
            return cnames

        working_set: List[ProbeTarget] = list(dict.fromkeys(targets))
        if not targets:
            return working_set

        with ThreadPoolExecutor(max_workers=min(self.max_workers, len(targets))) as pool:
            results = list(pool.map(lookup, targets))

        for target, cnames in zip(targets, results):
            for cname in cnames:
                expanded = target.with_hostname(cname)
                if expanded not in working_set:
                    working_set.append(expanded)
        return working_set

    def _resolve_addresses(self, targets: Sequence[ProbeTarget]) -> List[Tuple[ProbeTarget, List[str]]]:
        """A-record lookups for every target; failed targets resolve to []."""
        cache: Dict[str, List[str]] = {}

        def lookup(hostname: str) -> List[str]:
            try:
                return self.resolver.resolve_a(hostname)
            except ResolutionFailed as e:
                logger.error(str(e))
                return []

        hostnames = list(dict.fromkeys(t.hostname for t in targets))
        if hostnames:
            with ThreadPoolExecutor(max_workers=min(self.max_workers, len(hostnames))) as pool:
                for hostname, ips in zip(hostnames, pool.map(lookup, hostnames)):
                    cache[hostname] = ips

        return [(target, cache.get(target.hostname, [])) for target in targets]
