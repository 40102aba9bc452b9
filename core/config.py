"""
PORTICO Configuration
=====================

Loads the YAML configuration file and turns it into an immutable
GatewayConfig consumed by the rest of the gateway.

Author: Team PORTICO
"""

from dataclasses import dataclass, replace
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Union

import yaml
from loguru import logger


DEFAULT_PROBE_REQUESTS = [
    "http://connectivitycheck.gstatic.com/generate_204",
    "http://clients3.google.com/generate_204",
    "http://captive.apple.com/hotspot-detect.html",
    "http://www.apple.com/library/test/success.html",
    "http://www.msftconnecttest.com/connecttest.txt",
    "http://www.msftncsi.com/ncsi.txt",
    "http://detectportal.firefox.com/success.txt",
]


@dataclass(frozen=True)
class GatewayConfig:
    """Gateway configuration, immutable for a run."""
    listen_ip: str = "127.0.0.1"
    proxy_port: int = 8000
    web_port: int = 8001
    dns_lookup_period: int = 300        # seconds
    cleared_time: int = 3600            # seconds a cleared client stays cleared
    check_cleared_period: int = 60      # seconds between sweeps
    cache_pathname_time: int = 10       # seconds a header-learned path is cached
    in_interface: Optional[str] = None
    source_net: Optional[str] = None
    iptables_chain: str = "PORTICO"
    probe_requests: Tuple[str, ...] = tuple(DEFAULT_PROBE_REQUESTS)
    # header name -> tuple of regex patterns
    probe_headers: Tuple[Tuple[str, Tuple[str, ...]], ...] = (
        ("user-agent", ("CaptiveNetworkSupport",)),
    )
    # header name -> exact value
    clear_ip_headers: Tuple[Tuple[str, str], ...] = (
        ("x-portico-clear", "1"),
    )
    dns_servers: Tuple[str, ...] = ("8.8.8.8", "8.8.4.4")
    resolver_lifetime: float = 5.0
    dnsmasq_conf_file: str = "/etc/dnsmasq.d/portico.conf"
    dnsmasq_restart_command: Tuple[str, ...] = ("service", "dnsmasq", "restart")
    splash_file: str = "www/splash.html"
    upstream_timeout: Optional[float] = None

    @property
    def cleared_chain(self) -> str:
        return self.iptables_chain + "1"

    @property
    def proxy_chain(self) -> str:
        return self.iptables_chain + "2"

    def with_overrides(self, **overrides) -> "GatewayConfig":
        """Return a copy with the non-None overrides applied."""
        values = {k: v for k, v in overrides.items() if v is not None}
        return replace(self, **values) if values else self


def _header_patterns(raw: Union[Dict, List, None]) -> Tuple[Tuple[str, Tuple[str, ...]], ...]:
    """
    Normalize probe header rules.

    Accepts either a mapping (``{name: pattern}`` or ``{name: [patterns]}``)
    or a list of single-key mappings as written by older config files.
    """
    if not raw:
        return ()
    if isinstance(raw, dict):
        raw = [raw]

    rules: Dict[str, List[str]] = {}
    for item in raw:
        for name, patterns in item.items():
            if isinstance(patterns, str):
                patterns = [patterns]
            rules.setdefault(name.lower(), []).extend(str(p) for p in patterns)
    return tuple((name, tuple(patterns)) for name, patterns in rules.items())


def _header_values(raw: Union[Dict, List, None]) -> Tuple[Tuple[str, str], ...]:
    """Normalize clear-action header rules to (lower-case name, value) pairs."""
    if not raw:
        return ()
    if isinstance(raw, dict):
        raw = [raw]
    return tuple(
        (name.lower(), str(value))
        for item in raw
        for name, value in item.items()
    )


def create_config_from_dict(config_dict: Dict) -> GatewayConfig:
    """Create a GatewayConfig from the parsed YAML dictionary."""
    defaults = GatewayConfig()
    gateway = config_dict.get("gateway", {}) or {}
    dns = config_dict.get("dns", {}) or {}
    portal = config_dict.get("portal", {}) or {}
    cleared = config_dict.get("cleared", {}) or {}

    probe_headers = portal.get("probe_headers")
    clear_headers = portal.get("clear_ip_headers")
    restart = dns.get("restart_command", defaults.dnsmasq_restart_command)
    if isinstance(restart, str):
        restart = restart.split()

    return GatewayConfig(
        listen_ip=gateway.get("listen_ip", defaults.listen_ip),
        proxy_port=int(gateway.get("proxy_port", defaults.proxy_port)),
        web_port=int(gateway.get("web_port", defaults.web_port)),
        in_interface=gateway.get("in_interface") or None,
        source_net=gateway.get("source_net") or None,
        iptables_chain=gateway.get("iptables_chain", defaults.iptables_chain),
        upstream_timeout=gateway.get("upstream_timeout", defaults.upstream_timeout),
        dns_lookup_period=int(dns.get("lookup_period", defaults.dns_lookup_period)),
        dns_servers=tuple(dns.get("servers", defaults.dns_servers) or ()),
        resolver_lifetime=float(dns.get("resolver_lifetime", defaults.resolver_lifetime)),
        dnsmasq_conf_file=dns.get("dnsmasq_conf_file", defaults.dnsmasq_conf_file),
        dnsmasq_restart_command=tuple(restart),
        probe_requests=tuple(portal.get("probe_requests", defaults.probe_requests)),
        probe_headers=(_header_patterns(probe_headers)
                       if probe_headers is not None else defaults.probe_headers),
        clear_ip_headers=(_header_values(clear_headers)
                          if clear_headers is not None else defaults.clear_ip_headers),
        cache_pathname_time=int(portal.get("cache_pathname_time", defaults.cache_pathname_time)),
        splash_file=portal.get("splash_file", defaults.splash_file),
        cleared_time=int(cleared.get("expiry", defaults.cleared_time)),
        check_cleared_period=int(cleared.get("check_period", defaults.check_cleared_period)),
    )


def load_config(config_path: Union[str, Path]) -> Dict:
    """Load the raw configuration dictionary from a YAML file."""
    config_file = Path(config_path)
    with open(config_file, "r") as f:
        config = yaml.safe_load(f) or {}

    logger.debug(f"Loaded configuration from {config_file}")
    return config
