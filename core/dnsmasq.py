"""
PORTICO dnsmasq Control
=======================

The local DNS forwarder is an external service. The gateway only:
- checks that dnsmasq is installed and running
- writes the generated ``host-record`` configuration file
- restarts the service so the new records are picked up
- removes the generated file on shutdown

Author: Team PORTICO
"""

import subprocess
from pathlib import Path
from typing import Iterable, Sequence

from loguru import logger

from .errors import ConfigWriteFailed, DependencyMissing, ForwarderRestartFailed


INSTALL_HINT = (
    "This program depends on dnsmasq for dns handling. "
    "On Debian/Ubuntu systems you can install dnsmasq using: sudo apt-get install dnsmasq"
)


def host_record(hostname: str, address: str) -> str:
    """Format a single dnsmasq host-record line."""
    return f"host-record={hostname},{address}"


class DnsmasqController:
    """Controls the dnsmasq service through its config file and init script."""

    def __init__(self, conf_file: str,
                 restart_command: Sequence[str] = ("service", "dnsmasq", "restart")):
        self.conf_file = Path(conf_file)
        self.restart_command = list(restart_command)

    def check_dependencies(self) -> None:
        """
        Verify dnsmasq is installed and running.

        Raises:
            DependencyMissing: if either check fails
        """
        result = subprocess.run(["which", "dnsmasq"], capture_output=True)
        if result.returncode != 0:
            raise DependencyMissing("dnsmasq", INSTALL_HINT)
        logger.debug("dnsmasq installed")

        result = subprocess.run(["pgrep", "-x", "dnsmasq"], capture_output=True, text=True)
        if result.returncode != 0:
            raise DependencyMissing("dnsmasq", "dnsmasq is installed but not running")
        logger.debug(f"dnsmasq running (pid {result.stdout.split()})")

    def write_config(self, lines: Iterable[str]) -> int:
        """
        Replace the generated config file with ``lines``.

        Returns:
            Number of lines written
        """
        lines = list(lines)
        content = "".join(line + "\n" for line in lines)
        try:
            self.conf_file.parent.mkdir(parents=True, exist_ok=True)
            with open(self.conf_file, "w") as f:
                f.write(content)
            self.conf_file.chmod(0o644)
        except OSError as e:
            raise ConfigWriteFailed(str(self.conf_file), str(e))

        logger.debug(f"dnsmasq config buffer:\n{content}")
        return len(lines)

    def restart(self) -> None:
        """Restart dnsmasq so the generated records take effect."""
        try:
            result = subprocess.run(self.restart_command, capture_output=True, text=True)
        except OSError as e:
            raise ForwarderRestartFailed(self.restart_command, None, str(e))

        if result.returncode != 0:
            raise ForwarderRestartFailed(self.restart_command, result.returncode, result.stderr)
        logger.debug("dnsmasq restarted")

    def remove_config(self) -> bool:
        """Remove the generated config file; a missing file is not an error."""
        try:
            self.conf_file.unlink()
            logger.debug(f"Removed {self.conf_file}")
            return True
        except FileNotFoundError:
            logger.debug(f"{self.conf_file} already removed")
            return False
        except OSError as e:
            logger.error(f"Error removing dnsmasq config file {self.conf_file}: {e}")
            return False


class SimulatedDnsmasqController(DnsmasqController):
    """Writes the config file but never touches the dnsmasq service."""

    def check_dependencies(self) -> None:
        logger.info("Simulation mode - skipping dnsmasq dependency check")

    def restart(self) -> None:
        logger.debug("Simulation mode - dnsmasq restart skipped")
