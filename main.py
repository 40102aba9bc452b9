#!/usr/bin/env python3
"""
PORTICO - Captive Portal Gateway
================================

Main entry point for the PORTICO gateway.

PORTICO runs on the router of a guest network. Connectivity checks made
by phones, laptops and browsers are redirected to a local splash page
until the client clicks through; after that the client is routed normally
until its clearance expires.

Usage:
    sudo python main.py                  # Start the gateway
    sudo python main.py --debug          # Enable debug logging
    python main.py --simulate            # In-memory rules, no dnsmasq
    sudo python main.py --proxy-port 9000 --in-interface wlan0

Author: Team PORTICO
License: MIT
"""

import os
import re
import signal
import subprocess
import sys
import threading
from pathlib import Path
from typing import List, Tuple

import click
from loguru import logger
from rich.console import Console
from rich.panel import Panel
from rich.text import Text

# Add project root to path
PROJECT_ROOT = Path(__file__).parent
sys.path.insert(0, str(PROJECT_ROOT))

from core.config import GatewayConfig, create_config_from_dict, load_config
from core.gateway import PortalGateway

# Rich console for pretty output
console = Console()


def setup_logging(config: dict) -> None:
    """Configure logging based on config."""
    log_config = config.get("logging", {})
    log_level = config.get("general", {}).get("log_level", "INFO")
    log_file = PROJECT_ROOT / log_config.get("file", "data/logs/portico.log")

    # Ensure log directory exists
    log_file.parent.mkdir(parents=True, exist_ok=True)

    # Remove default logger and add custom configuration
    logger.remove()
    logger.add(
        sys.stderr,
        level=log_level,
        format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan> | <level>{message}</level>"
    )
    logger.add(
        str(log_file),
        level=log_level,
        rotation=log_config.get("max_size", "10 MB"),
        retention=log_config.get("backup_count", 5),
        format="{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name} | {message}"
    )


def print_banner():
    """Print PORTICO banner."""
    banner = """
    ██████╗  ██████╗ ██████╗ ████████╗██╗ ██████╗ ██████╗
    ██╔══██╗██╔═══██╗██╔══██╗╚══██╔══╝██║██╔════╝██╔═══██╗
    ██████╔╝██║   ██║██████╔╝   ██║   ██║██║     ██║   ██║
    ██╔═══╝ ██║   ██║██╔══██╗   ██║   ██║██║     ██║   ██║
    ██║     ╚██████╔╝██║  ██║   ██║   ██║╚██████╗╚██████╔╝
    ╚═╝      ╚═════╝ ╚═╝  ╚═╝   ╚═╝   ╚═╝ ╚═════╝ ╚═════╝
    """

    console.print(Panel(
        Text(banner, style="bold cyan"),
        title="[bold white]Captive Portal Gateway[/bold white]",
        border_style="cyan"
    ))


def check_gateway_prerequisites() -> Tuple[bool, List[str]]:
    """
    Check if system meets gateway requirements.
    Returns (success, list_of_issues).
    """
    issues = []

    if os.geteuid() != 0:
        issues.append("Must run as root (sudo python main.py)")

    for tool in ["iptables", "dnsmasq"]:
        result = subprocess.run(["which", tool], capture_output=True)
        if result.returncode != 0:
            issues.append(f"Missing required tool: {tool}")

    return len(issues) == 0, issues


@click.command()
@click.option("--config", "-c", default="config/config.yaml", help="Path to config file")
@click.option("--ip", "listen_ip", default=None, help="IP the splash service is reached on")
@click.option("--proxy-port", type=int, default=None, help="Port the intercepting proxy listens on")
@click.option("--web-port", type=int, default=None, help="Port the splash page listens on")
@click.option("--dns-lookup-period", type=int, default=None,
              help="Seconds between probe DNS refreshes")
@click.option("--in-interface", default=None, help="Only intercept traffic arriving on this interface")
@click.option("--check-cleared-period", type=int, default=None,
              help="Seconds between cleared-client expiry sweeps")
@click.option("--simulate", "-s", is_flag=True, help="Use in-memory rules and skip dnsmasq (testing only)")
@click.option("--debug", "-d", is_flag=True, help="Enable debug logging")
@click.option("--skip-checks", is_flag=True, help="Skip prerequisite checks (dangerous)")
def main(config: str, listen_ip: str, proxy_port: int, web_port: int, dns_lookup_period: int,
         in_interface: str, check_cleared_period: int, simulate: bool, debug: bool,
         skip_checks: bool):
    """
    PORTICO - Captive Portal Gateway

    Redirects connectivity-check traffic of unauthenticated clients to a
    local splash page and releases clients once they click through.

    Defaults come from the config file; command line options override them.
    """
    print_banner()

    config_path = Path(config)
    if not config_path.is_absolute():
        config_path = PROJECT_ROOT / config_path
    if not config_path.exists():
        console.print(f"[bold red]Config file not found: {config_path}[/bold red]")
        sys.exit(1)

    cfg = load_config(config_path)
    cfg.setdefault("general", {})
    if debug:
        cfg["general"]["debug"] = True
        cfg["general"]["log_level"] = "DEBUG"

    setup_logging(cfg)

    try:
        gateway_config = create_config_from_dict(cfg).with_overrides(
            listen_ip=listen_ip,
            proxy_port=proxy_port,
            web_port=web_port,
            dns_lookup_period=dns_lookup_period,
            in_interface=in_interface,
            check_cleared_period=check_cleared_period,
        )
    except (TypeError, ValueError) as e:
        console.print(f"[bold red]Invalid configuration: {e}[/bold red]")
        sys.exit(1)

    if simulate:
        console.print("[yellow]SIMULATION MODE - rules kept in memory, dnsmasq untouched[/yellow]")
    elif not skip_checks:
        console.print("[dim]Checking gateway prerequisites...[/dim]")
        ready, issues = check_gateway_prerequisites()
        if not ready:
            console.print("\n[bold red]GATEWAY PREREQUISITES NOT MET:[/bold red]")
            for issue in issues:
                console.print(f"  [red]x[/red] {issue}")
            console.print("\n[yellow]Run with --simulate to try PORTICO without root[/yellow]")
            sys.exit(1)
        console.print("[green]All prerequisites met[/green]\n")

    print_summary(gateway_config)

    try:
        gateway = PortalGateway(gateway_config, simulate=simulate)
    except (re.error, ValueError) as e:
        console.print(f"[bold red]ERROR: {e}[/bold red]")
        sys.exit(1)

    stop_event = threading.Event()

    # Handle shutdown signals
    def signal_handler(signum, frame):
        console.print(f"\n[yellow]Received {signal.Signals(signum).name}, shutting down PORTICO...[/yellow]")
        stop_event.set()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGHUP, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    if not gateway.start_gateway():
        console.print("[bold red]ERROR: Failed to start gateway![/bold red]")
        sys.exit(1)

    console.print("[bold green]PORTICO gateway running[/bold green]")

    try:
        while not stop_event.wait(1.0):
            pass
    except Exception as e:
        logger.exception(f"Fatal error: {e}")
        gateway.stop_gateway()
        sys.exit(1)

    gateway.stop_gateway()
    sys.exit(0)


def print_summary(config: GatewayConfig):
    """Print the effective configuration."""
    console.print("[cyan]Gateway Configuration:[/cyan]")
    console.print(f"  Proxy Port:     {config.proxy_port}")
    console.print(f"  Splash:         {config.listen_ip}:{config.web_port}")
    console.print(f"  In Interface:   {config.in_interface or 'any'}")
    console.print(f"  Source Net:     {config.source_net or 'any'}")
    console.print(f"  DNS Servers:    {', '.join(config.dns_servers) or 'system'}")
    console.print(f"  DNS Refresh:    every {config.dns_lookup_period}s")
    console.print(f"  Cleared Expiry: {config.cleared_time}s (checked every {config.check_cleared_period}s)")
    console.print(f"  Probe URLs:     {len(config.probe_requests)}")
    console.print("")


if __name__ == "__main__":
    main()
