"""
PORTICO Test Fixtures
=====================

Shared pytest fixtures for the rule engine, probe pipeline, cleared
registry, classifier, proxy and gateway lifecycle tests.
"""

import pytest
import sys
from pathlib import Path
from typing import Dict, List

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from core.config import GatewayConfig, create_config_from_dict
from core.dnsmasq import DnsmasqController
from core.errors import ForwarderRestartFailed, ResolutionFailed
from core.rule_engine import MemoryRuleEngine


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class FakeResolver:
    """
    Resolver answering from dictionaries.

    Hostnames listed in ``failing`` raise ResolutionFailed for both record
    types; hostnames absent from ``a_records`` have no address.
    """

    def __init__(self, cnames: Dict[str, List[str]] = None,
                 a_records: Dict[str, List[str]] = None,
                 failing: List[str] = None):
        self.cnames = cnames or {}
        self.a_records = a_records or {}
        self.failing = set(failing or [])
        self.cname_queries: List[str] = []
        self.a_queries: List[str] = []

    def resolve_cname(self, hostname: str) -> List[str]:
        self.cname_queries.append(hostname)
        if hostname in self.failing:
            raise ResolutionFailed(hostname, "CNAME", "SERVFAIL")
        return list(self.cnames.get(hostname, []))

    def resolve_a(self, hostname: str) -> List[str]:
        self.a_queries.append(hostname)
        if hostname in self.failing:
            raise ResolutionFailed(hostname, "A", "SERVFAIL")
        addresses = self.a_records.get(hostname)
        if not addresses:
            raise ResolutionFailed(hostname, "A", "no records returned")
        return list(addresses)


class RecordingDnsmasq(DnsmasqController):
    """dnsmasq controller that writes the real file but only counts restarts."""

    def __init__(self, conf_file, fail_restart: bool = False):
        super().__init__(str(conf_file), ("true",))
        self.fail_restart = fail_restart
        self.restarts = 0
        self.dependency_checks = 0

    def check_dependencies(self) -> None:
        self.dependency_checks += 1

    def restart(self) -> None:
        if self.fail_restart:
            raise ForwarderRestartFailed(self.restart_command, 1, "Job for dnsmasq.service failed")
        self.restarts += 1

    def lines(self) -> List[str]:
        if not self.conf_file.exists():
            return []
        return self.conf_file.read_text().splitlines()


@pytest.fixture
def test_config(tmp_path):
    """Basic test configuration as loaded from YAML."""
    return {
        "general": {
            "log_level": "DEBUG",
            "debug": True
        },
        "logging": {
            "file": str(tmp_path / "portico.log"),
            "max_size": "1 MB",
            "backup_count": 1
        },
        "gateway": {
            "listen_ip": "127.0.0.1",
            "proxy_port": 18000,
            "web_port": 18001,
            "in_interface": "wlan0",
            "source_net": "10.0.0.0/24",
            "iptables_chain": "PORTICOTEST"
        },
        "dns": {
            "servers": ["192.0.2.53"],
            "lookup_period": 300,
            "dnsmasq_conf_file": str(tmp_path / "dnsmasq.d" / "portico.conf"),
            "restart_command": "true"
        },
        "portal": {
            "probe_requests": [
                "http://connectivitycheck.example.com/generate_204",
                "http://captive.example.org/hotspot-detect.html",
            ],
            "probe_headers": [
                {"User-Agent": "CaptiveNetworkSupport"}
            ],
            "clear_ip_headers": [
                {"X-Portico-Clear": "1"}
            ],
            "cache_pathname_time": 10
        },
        "cleared": {
            "expiry": 3600,
            "check_period": 60
        }
    }


@pytest.fixture
def gateway_config(test_config) -> GatewayConfig:
    return create_config_from_dict(test_config)


@pytest.fixture
def rule_engine():
    return MemoryRuleEngine()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def resolver():
    """Resolver for the two test probe hosts, one of them behind a CNAME."""
    return FakeResolver(
        cnames={
            "connectivitycheck.example.com": ["cname.example.com"],
        },
        a_records={
            "connectivitycheck.example.com": ["93.184.216.34"],
            "cname.example.com": ["93.184.216.34"],
            "captive.example.org": ["198.51.100.7", "198.51.100.8"],
        },
    )


@pytest.fixture
def dnsmasq(gateway_config):
    return RecordingDnsmasq(gateway_config.dnsmasq_conf_file)


@pytest.fixture
def chains_ready(gateway_config, rule_engine):
    """CLEARED and PROXY chains created, without the PREROUTING hook."""
    rule_engine.new_chain("nat", gateway_config.cleared_chain)
    rule_engine.new_chain("nat", gateway_config.proxy_chain)
    return rule_engine
