"""
PORTICO Gateway Module
======================

Lifecycle controller for the captive-portal gateway.

NAT layout:
    PREROUTING --(tcp dport 80 [-s source_net] [-i in_interface])--> CLEARED
    CLEARED:  -s <cleared ip> -j RETURN   (one per cleared client)
              -j PROXY                    (always last)
    PROXY:    -d <probe address> -p tcp --dport 80 -j REDIRECT --to-ports <proxy port>

Startup:
1. Remove leftovers of an unclean shutdown (best-effort)
2. Verify dnsmasq is installed and running
3. Create CLEARED and PROXY, link PREROUTING -> CLEARED -> PROXY
4. Run one probe refresh cycle
5. Start the proxy and splash listeners
6. Arm the DNS refresh and cleared-sweep timers

Any failure tears everything down again. Teardown is idempotent and never
raises.

Author: Team PORTICO
"""

import threading
from datetime import datetime
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple

from loguru import logger

from .classifier import PathCache, RequestClassifier
from .cleared_registry import ClearedClientRegistry
from .config import GatewayConfig
from .dns_resolver import ProbeResolver
from .dnsmasq import DnsmasqController, SimulatedDnsmasqController
from .errors import PorticoError
from .probe_pipeline import ProbeResolutionPipeline
from .rule_engine import IptablesRuleEngine, MemoryRuleEngine, Rule, RuleEngine
from .timers import PeriodicTask


class GatewayState(Enum):
    """Lifecycle states."""
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"


class PortalGateway:
    """
    PORTICO Gateway - captive portal lifecycle controller

    Owns the rule engine, the cleared-client registry, the probe pipeline,
    the request classifier and the HTTP listeners.
    """

    def __init__(self, config: GatewayConfig,
                 rule_engine: Optional[RuleEngine] = None,
                 resolver: Optional[ProbeResolver] = None,
                 dnsmasq: Optional[DnsmasqController] = None,
                 simulate: bool = False,
                 serve_http: bool = True):
        self.config = config
        self.simulate = simulate
        self.serve_http = serve_http

        if rule_engine is None:
            rule_engine = MemoryRuleEngine() if simulate else IptablesRuleEngine()
        if resolver is None:
            resolver = ProbeResolver(config.dns_servers, config.resolver_lifetime)
        if dnsmasq is None:
            controller = SimulatedDnsmasqController if simulate else DnsmasqController
            dnsmasq = controller(config.dnsmasq_conf_file, config.dnsmasq_restart_command)

        self.rule_engine = rule_engine
        self.resolver = resolver
        self.dnsmasq = dnsmasq

        self.registry = ClearedClientRegistry(config, rule_engine)
        self.pipeline = ProbeResolutionPipeline(config, rule_engine, resolver, dnsmasq)
        self.path_cache = PathCache(config.cache_pathname_time)
        self.classifier = RequestClassifier(config, self.registry, self.pipeline, self.path_cache)

        self.listeners: List = []
        self.refresh_task = PeriodicTask(
            "DnsRefresh", config.dns_lookup_period, self.pipeline.refresh
        )
        self.sweep_task = PeriodicTask(
            "ClearedSweep", config.check_cleared_period, self.registry.sweep
        )

        self.state = GatewayState.STOPPED
        self.started_at: Optional[datetime] = None
        self._state_lock = threading.Lock()

        logger.info("PortalGateway initialized")

    @property
    def is_running(self) -> bool:
        return self.state is GatewayState.RUNNING

    def prerouting_rule(self) -> Rule:
        """PREROUTING → CLEARED jump for inbound port-80 traffic."""
        return Rule(
            table="nat",
            chain="PREROUTING",
            protocol="tcp",
            source=self.config.source_net,
            destination_port=80,
            in_interface=self.config.in_interface,
            jump=self.config.cleared_chain,
        )

    def setup_chains(self) -> None:
        """
        Create CLEARED and PROXY and link them into PREROUTING.

        Raises:
            RuleMutationFailed: if any scaffolding rule cannot be installed
        """
        cleared = self.config.cleared_chain
        proxy = self.config.proxy_chain

        self.rule_engine.new_chain("nat", cleared)
        self.rule_engine.new_chain("nat", proxy)
        self.rule_engine.append(self.prerouting_rule())
        self.rule_engine.append(self.registry.proxy_jump_rule())

        logger.info(f"NAT chains configured: PREROUTING -> {cleared} -> {proxy}")

    def cleanup(self) -> None:
        """Remove every rule, chain and file the gateway may have installed."""
        cleared = self.config.cleared_chain
        proxy = self.config.proxy_chain

        steps: List[Tuple[str, Callable[[], object]]] = [
            (f"delete PREROUTING -> {cleared} jump",
             lambda: self.rule_engine.delete(self.prerouting_rule())),
            (f"delete {cleared} -> {proxy} jump",
             lambda: self.rule_engine.delete(self.registry.proxy_jump_rule())),
            (f"flush {proxy}", lambda: self.rule_engine.flush("nat", proxy)),
            (f"delete {proxy}", lambda: self.rule_engine.delete_chain("nat", proxy)),
            (f"flush {cleared}", lambda: self.rule_engine.flush("nat", cleared)),
            (f"delete {cleared}", lambda: self.rule_engine.delete_chain("nat", cleared)),
        ]

        for description, step in steps:
            try:
                done = step()
                logger.debug(f"{description}: {'done' if done else 'already absent'}")
            except PorticoError as e:
                logger.error(f"Cleanup step '{description}' failed: {e}")

        self.dnsmasq.remove_config()

    def start_gateway(self) -> bool:
        """
        Start the captive portal.

        Returns:
            True if the gateway is running, False if startup failed
        """
        with self._state_lock:
            if self.state is not GatewayState.STOPPED:
                logger.warning(f"Gateway already {self.state.value}")
                return self.state is GatewayState.RUNNING
            self.state = GatewayState.STARTING

        logger.info("=" * 60)
        logger.info("Starting PORTICO Captive Portal Gateway")
        logger.info("=" * 60)

        try:
            self.cleanup()

            logger.info("Checking dependencies...")
            self.dnsmasq.check_dependencies()

            logger.info("Setting up NAT chains...")
            self.setup_chains()

            logger.info("Running initial probe refresh...")
            self.pipeline.refresh()

            if self.serve_http:
                self._start_listeners()

            self.refresh_task.start()
            self.sweep_task.start()

        except (PorticoError, OSError) as e:
            logger.error(f"Gateway startup failed: {e}")
            self.stop_gateway()
            return False

        with self._state_lock:
            if self.state is not GatewayState.STARTING:
                # Torn down by a signal while starting
                return False
            self.state = GatewayState.RUNNING
            self.started_at = datetime.now()

        logger.info("=" * 60)
        logger.info("PORTICO Gateway ACTIVE")
        logger.info(f"  Proxy Port: {self.config.proxy_port}")
        logger.info(f"  Splash: {self.config.listen_ip}:{self.config.web_port}")
        logger.info(f"  Chains: {self.config.cleared_chain}, {self.config.proxy_chain}")
        logger.info(f"  Probe Addresses: {len(self.pipeline.addresses)}")
        logger.info("=" * 60)
        return True

    def stop_gateway(self) -> bool:
        """
        Stop the gateway and remove everything it installed.

        Cleanup order:
        1. Stop the refresh and sweep timers
        2. Stop the HTTP listeners
        3. Remove NAT jumps and chains
        4. Remove the generated dnsmasq config
        5. Forget cleared clients, cached paths and probe addresses
        """
        with self._state_lock:
            if self.state in (GatewayState.STOPPED, GatewayState.STOPPING):
                logger.debug(f"Gateway already {self.state.value}")
                return True
            self.state = GatewayState.STOPPING

        logger.info("Stopping PORTICO Gateway...")

        self.refresh_task.stop()
        self.sweep_task.stop()

        for listener in self.listeners:
            listener.stop()
        self.listeners = []

        self.cleanup()

        self.registry.reset()
        self.path_cache.clear()
        self.pipeline.clear()

        with self._state_lock:
            self.state = GatewayState.STOPPED
            self.started_at = None

        logger.info("PORTICO Gateway stopped successfully")
        return True

    def _start_listeners(self):
        from api.proxy import create_proxy_app
        from api.server import HTTPListener
        from api.splash import create_splash_app, load_splash_html

        splash_app = create_splash_app(load_splash_html(self.config.splash_file))
        proxy_app = create_proxy_app(self.config, self.classifier)

        self.listeners = [
            HTTPListener("SplashListener", splash_app, "127.0.0.1", self.config.web_port),
            HTTPListener("ProxyListener", proxy_app, "0.0.0.0", self.config.proxy_port),
        ]
        for listener in self.listeners:
            listener.start()

    def get_status(self) -> Dict:
        """Get gateway status"""
        return {
            "state": self.state.value,
            "simulate": self.simulate,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "cleared_chain": self.config.cleared_chain,
            "proxy_chain": self.config.proxy_chain,
            "cleared_clients": [e.to_dict() for e in self.registry.entries()],
            "probe_addresses": [
                {"ip": a.ip_address, "hostname": a.origin_hostname, "path": a.path}
                for a in self.pipeline.addresses
            ],
            "cached_paths": [f"{e.host}{e.path}" for e in self.path_cache.entries()],
            "last_refresh": (self.pipeline.last_refresh.isoformat()
                             if self.pipeline.last_refresh else None),
            "last_refresh_error": self.pipeline.last_error,
            "verdicts": dict(self.classifier.stats),
            "listeners": {l.name: l.is_running for l in self.listeners},
        }


def create_gateway_from_config(config: GatewayConfig, simulate: bool = False) -> PortalGateway:
    """Create a gateway with the default collaborators for ``config``."""
    return PortalGateway(config, simulate=simulate)
