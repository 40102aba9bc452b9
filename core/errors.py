"""
PORTICO Errors
==============

Exception hierarchy shared by the gateway components.

Author: Team PORTICO
"""

from typing import List, Optional


class PorticoError(Exception):
    """Base class for all gateway errors."""


class DependencyMissing(PorticoError):
    """A required system tool is not installed or not running."""

    def __init__(self, name: str, hint: str = ""):
        self.name = name
        self.hint = hint
        super().__init__(name)

    def __str__(self):
        if self.hint:
            return "Missing dependency '{}'. {}".format(self.name, self.hint)
        return "Missing dependency '{}'.".format(self.name)


class RuleMutationFailed(PorticoError):
    """A packet-filter rule operation failed."""

    def __init__(self, command: List[str], stderr: str = "",
                 returncode: Optional[int] = None):
        self.command = list(command)
        self.stderr = (stderr or "").strip()
        self.returncode = returncode
        super().__init__(" ".join(self.command))

    def __str__(self):
        return "Rule operation failed ({}): {}".format(
            " ".join(self.command), self.stderr or "exit {}".format(self.returncode))


class RuleNotFound(RuleMutationFailed):
    """The target chain or rule does not exist."""


class RefreshError(PorticoError):
    """Base class for failures of a probe refresh cycle."""


class ResolutionFailed(RefreshError):
    """DNS lookup for a probe hostname failed."""

    def __init__(self, hostname: str, record_type: str, reason: str = ""):
        self.hostname = hostname
        self.record_type = record_type
        self.reason = reason
        super().__init__(hostname)

    def __str__(self):
        return "Problem resolving {} record for {}: {}".format(
            self.record_type, self.hostname, self.reason or "unknown error")


class ConfigWriteFailed(RefreshError):
    """The dnsmasq configuration file could not be written."""

    def __init__(self, path: str, reason: str = ""):
        self.path = path
        self.reason = reason
        super().__init__(path)

    def __str__(self):
        return "Problem writing to dnsmasq config file {}: {}".format(self.path, self.reason)


class ForwarderRestartFailed(RefreshError):
    """The dnsmasq restart command exited with an error."""

    def __init__(self, command: List[str], returncode: Optional[int] = None,
                 stderr: str = ""):
        self.command = list(command)
        self.returncode = returncode
        self.stderr = (stderr or "").strip()
        super().__init__(" ".join(self.command))

    def __str__(self):
        return "Failure restarting dnsmasq ({}, exit {}): {}".format(
            " ".join(self.command), self.returncode, self.stderr)
