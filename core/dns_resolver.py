"""
PORTICO Probe DNS Resolver
==========================

CNAME and A-record lookups for the probe hostnames, run against the
configured upstream DNS servers rather than the local dnsmasq (which is
serving the very host-records we are about to regenerate).

Author: Team PORTICO
"""

from typing import List, Sequence

import dns.exception
import dns.resolver
from loguru import logger

from .errors import ResolutionFailed


class ProbeResolver:
    """Thin wrapper around a dnspython resolver."""

    def __init__(self, nameservers: Sequence[str] = (), lifetime: float = 5.0):
        if nameservers:
            self._resolver = dns.resolver.Resolver(configure=False)
            self._resolver.nameservers = list(nameservers)
        else:
            self._resolver = dns.resolver.Resolver()
        self._resolver.lifetime = lifetime

    @property
    def nameservers(self) -> List[str]:
        # dnspython >= 2.4 hands back Nameserver objects
        return [getattr(ns, "address", str(ns)) for ns in self._resolver.nameservers]

    def resolve_cname(self, hostname: str) -> List[str]:
        """
        Resolve the CNAME record set of ``hostname``.

        A name without a CNAME record returns an empty list.

        Raises:
            ResolutionFailed: on NXDOMAIN, timeouts and server failures
        """
        logger.debug(f"resolving CNAME for {hostname}")
        try:
            answer = self._resolver.resolve(hostname, "CNAME")
        except dns.resolver.NoAnswer:
            return []
        except dns.exception.DNSException as e:
            raise ResolutionFailed(hostname, "CNAME", str(e) or type(e).__name__)

        return [rdata.target.to_text(omit_final_dot=True) for rdata in answer]

    def resolve_a(self, hostname: str) -> List[str]:
        """
        Resolve the A records of ``hostname``.

        Raises:
            ResolutionFailed: on lookup errors or when no address comes back
        """
        logger.debug(f"resolving A for {hostname}")
        try:
            answer = self._resolver.resolve(hostname, "A")
        except dns.exception.DNSException as e:
            raise ResolutionFailed(hostname, "A", str(e) or type(e).__name__)

        addresses = [rdata.address for rdata in answer]
        if not addresses:
            raise ResolutionFailed(hostname, "A", "no records returned")
        return addresses
