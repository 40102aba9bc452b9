"""
PORTICO Core Modules
====================

Captive-portal gateway for home and venue networks.

Modules:
- config: GatewayConfig and YAML loading
- rule_engine: iptables adapter and in-memory rule engine
- dnsmasq: dnsmasq dependency check, config writer and restart
- dns_resolver: CNAME / A lookups for probe hostnames
- probe_pipeline: PROXY chain and host-record rebuild cycle
- cleared_registry: clients that dismissed the portal
- classifier: per-request portal decision
- timers: non-overlapping periodic tasks
- gateway: lifecycle controller
"""

from .errors import (
    PorticoError,
    DependencyMissing,
    RuleMutationFailed,
    RuleNotFound,
    RefreshError,
    ResolutionFailed,
    ConfigWriteFailed,
    ForwarderRestartFailed,
)
from .config import GatewayConfig, create_config_from_dict, load_config
from .rule_engine import Rule, RuleEngine, IptablesRuleEngine, MemoryRuleEngine
from .dnsmasq import DnsmasqController, SimulatedDnsmasqController
from .dns_resolver import ProbeResolver
from .probe_pipeline import ProbeTarget, ResolvedProbeAddress, ProbeResolutionPipeline
from .cleared_registry import ClearedEntry, ClearedClientRegistry
from .classifier import Verdict, ProbeRequest, PathCache, RequestClassifier
from .timers import PeriodicTask
from .gateway import GatewayState, PortalGateway, create_gateway_from_config

__all__ = [
    # Errors
    "PorticoError",
    "DependencyMissing",
    "RuleMutationFailed",
    "RuleNotFound",
    "RefreshError",
    "ResolutionFailed",
    "ConfigWriteFailed",
    "ForwarderRestartFailed",
    # Configuration
    "GatewayConfig",
    "create_config_from_dict",
    "load_config",
    # Rule engine
    "Rule",
    "RuleEngine",
    "IptablesRuleEngine",
    "MemoryRuleEngine",
    # DNS
    "DnsmasqController",
    "SimulatedDnsmasqController",
    "ProbeResolver",
    "ProbeTarget",
    "ResolvedProbeAddress",
    "ProbeResolutionPipeline",
    # Portal state
    "ClearedEntry",
    "ClearedClientRegistry",
    "Verdict",
    "ProbeRequest",
    "PathCache",
    "RequestClassifier",
    "PeriodicTask",
    # Gateway
    "GatewayState",
    "PortalGateway",
    "create_gateway_from_config",
]

__version__ = "1.0.0"
