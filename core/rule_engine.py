"""
PORTICO Rule Engine
===================

Adapter around the kernel packet filter.

The gateway never talks to iptables directly; it goes through a RuleEngine
so that the chain lifecycle logic can run against the real kernel
(IptablesRuleEngine) or against an in-process model of the tables
(MemoryRuleEngine, used by the test-suite and by --simulate).

Deleting or flushing something that is already gone is not an error unless
the caller passes ``missing_ok=False``.

Author: Team PORTICO
"""

import subprocess
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from loguru import logger

from .errors import RuleMutationFailed, RuleNotFound


BUILTIN_CHAINS = {
    "nat": ("PREROUTING", "INPUT", "OUTPUT", "POSTROUTING"),
    "filter": ("INPUT", "FORWARD", "OUTPUT"),
    "mangle": ("PREROUTING", "INPUT", "FORWARD", "OUTPUT", "POSTROUTING"),
}

BUILTIN_TARGETS = {
    "ACCEPT", "DROP", "RETURN", "REJECT", "REDIRECT", "DNAT", "SNAT",
    "MASQUERADE", "LOG",
}

# iptables stderr fragments meaning "the thing you asked for is not there"
_MISSING_MARKERS = (
    "No chain/target/match",
    "does a matching rule exist",
    "Couldn't load target",
    "does not exist",
    "No such file or directory",
)


@dataclass(frozen=True)
class Rule:
    """A single rule in a table/chain."""
    table: str
    chain: str
    jump: str
    protocol: Optional[str] = None
    source: Optional[str] = None
    destination: Optional[str] = None
    destination_port: Optional[int] = None
    in_interface: Optional[str] = None
    target_options: Tuple[Tuple[str, str], ...] = ()

    def spec_args(self) -> List[str]:
        """Match and target arguments in iptables syntax."""
        args: List[str] = []
        if self.protocol:
            args += ["-p", self.protocol]
        if self.source:
            args += ["-s", self.source]
        if self.destination:
            args += ["-d", self.destination]
        if self.destination_port is not None:
            args += ["--dport", str(self.destination_port)]
        if self.in_interface:
            args += ["-i", self.in_interface]
        args += ["-j", self.jump]
        for option, value in self.target_options:
            args += ["--" + option, str(value)]
        return args

    def __str__(self):
        return "-t {} {} {}".format(self.table, self.chain, " ".join(self.spec_args()))


class RuleEngine(ABC):
    """Abstract packet-filter rule engine."""

    @abstractmethod
    def insert(self, rule: Rule, position: int = 1) -> None:
        """Insert a rule at a 1-based position of its chain."""

    @abstractmethod
    def append(self, rule: Rule) -> None:
        """Append a rule to the end of its chain."""

    @abstractmethod
    def delete(self, rule: Rule, missing_ok: bool = True) -> bool:
        """
        Delete the first rule matching ``rule``.

        Returns:
            True if a rule was deleted, False if it was already absent
        """

    @abstractmethod
    def flush(self, table: str, chain: str, missing_ok: bool = True) -> bool:
        """Remove every rule from a chain."""

    @abstractmethod
    def new_chain(self, table: str, chain: str) -> None:
        """Create a user-defined chain."""

    @abstractmethod
    def delete_chain(self, table: str, chain: str, missing_ok: bool = True) -> bool:
        """Delete an empty user-defined chain."""

    @abstractmethod
    def chain_exists(self, table: str, chain: str) -> bool:
        """Check whether a chain exists."""


class IptablesRuleEngine(RuleEngine):
    """RuleEngine backed by the iptables command line tool."""

    def __init__(self, binary: str = "iptables", wait: bool = True):
        self.binary = binary
        self.wait = wait

    def _run(self, table: str, args: List[str]) -> subprocess.CompletedProcess:
        command = [self.binary]
        if self.wait:
            command.append("-w")
        command += ["-t", table] + [str(a) for a in args]

        logger.debug(f"iptables: {' '.join(command)}")
        try:
            result = subprocess.run(command, capture_output=True, text=True)
        except OSError as e:
            raise RuleMutationFailed(command, str(e))

        if result.returncode != 0:
            stderr = result.stderr or ""
            if any(marker in stderr for marker in _MISSING_MARKERS):
                raise RuleNotFound(command, stderr, result.returncode)
            raise RuleMutationFailed(command, stderr, result.returncode)
        return result

    def insert(self, rule: Rule, position: int = 1) -> None:
        self._run(rule.table, ["-I", rule.chain, str(position)] + rule.spec_args())

    def append(self, rule: Rule) -> None:
        self._run(rule.table, ["-A", rule.chain] + rule.spec_args())

    def delete(self, rule: Rule, missing_ok: bool = True) -> bool:
        try:
            self._run(rule.table, ["-D", rule.chain] + rule.spec_args())
            return True
        except RuleNotFound:
            if not missing_ok:
                raise
            logger.debug(f"Rule already deleted? {rule}")
            return False

    def flush(self, table: str, chain: str, missing_ok: bool = True) -> bool:
        try:
            self._run(table, ["-F", chain])
            return True
        except RuleNotFound:
            if not missing_ok:
                raise
            logger.debug(f"Chain {chain} not present, nothing to flush")
            return False

    def new_chain(self, table: str, chain: str) -> None:
        self._run(table, ["-N", chain])

    def delete_chain(self, table: str, chain: str, missing_ok: bool = True) -> bool:
        try:
            self._run(table, ["-X", chain])
            return True
        except RuleNotFound:
            if not missing_ok:
                raise
            logger.debug(f"Chain {chain} already deleted?")
            return False

    def chain_exists(self, table: str, chain: str) -> bool:
        try:
            self._run(table, ["-S", chain])
            return True
        except RuleNotFound:
            return False


class MemoryRuleEngine(RuleEngine):
    """
    In-process model of the packet-filter tables.

    Follows iptables semantics closely enough for chain lifecycle logic:
    jumps must target an existing chain or a builtin target, chains must be
    empty and unreferenced before deletion, and duplicate chains are refused.
    """

    def __init__(self):
        self._tables: Dict[str, Dict[str, List[Rule]]] = {
            table: {chain: [] for chain in chains}
            for table, chains in BUILTIN_CHAINS.items()
        }
        self._lock = threading.RLock()
        self.operations: List[str] = []

    def _chains(self, table: str) -> Dict[str, List[Rule]]:
        return self._tables.setdefault(table, {})

    def _command(self, *args) -> List[str]:
        return ["iptables"] + [str(a) for a in args]

    def _require_chain(self, table: str, chain: str, command: List[str]) -> List[Rule]:
        chains = self._chains(table)
        if chain not in chains:
            raise RuleNotFound(command, "iptables: No chain/target/match by that name.", 1)
        return chains[chain]

    def _check_target(self, rule: Rule, command: List[str]):
        if rule.jump in BUILTIN_TARGETS:
            return
        if rule.jump not in self._chains(rule.table):
            raise RuleNotFound(command, f"Couldn't load target `{rule.jump}'", 2)

    def insert(self, rule: Rule, position: int = 1) -> None:
        command = self._command("-t", rule.table, "-I", rule.chain, position, *rule.spec_args())
        with self._lock:
            rules = self._require_chain(rule.table, rule.chain, command)
            self._check_target(rule, command)
            if position < 1 or position > len(rules) + 1:
                raise RuleMutationFailed(command, "iptables: Index of insertion too big.", 1)
            rules.insert(position - 1, rule)
            self.operations.append(" ".join(command))

    def append(self, rule: Rule) -> None:
        command = self._command("-t", rule.table, "-A", rule.chain, *rule.spec_args())
        with self._lock:
            rules = self._require_chain(rule.table, rule.chain, command)
            self._check_target(rule, command)
            rules.append(rule)
            self.operations.append(" ".join(command))

    def delete(self, rule: Rule, missing_ok: bool = True) -> bool:
        command = self._command("-t", rule.table, "-D", rule.chain, *rule.spec_args())
        with self._lock:
            try:
                rules = self._require_chain(rule.table, rule.chain, command)
                if rule not in rules:
                    raise RuleNotFound(
                        command,
                        "iptables: Bad rule (does a matching rule exist in that chain?).", 1)
            except RuleNotFound:
                if not missing_ok:
                    raise
                return False
            rules.remove(rule)
            self.operations.append(" ".join(command))
            return True

    def flush(self, table: str, chain: str, missing_ok: bool = True) -> bool:
        command = self._command("-t", table, "-F", chain)
        with self._lock:
            try:
                rules = self._require_chain(table, chain, command)
            except RuleNotFound:
                if not missing_ok:
                    raise
                return False
            rules.clear()
            self.operations.append(" ".join(command))
            return True

    def new_chain(self, table: str, chain: str) -> None:
        command = self._command("-t", table, "-N", chain)
        with self._lock:
            chains = self._chains(table)
            if chain in chains:
                raise RuleMutationFailed(command, "iptables: Chain already exists.", 1)
            chains[chain] = []
            self.operations.append(" ".join(command))

    def delete_chain(self, table: str, chain: str, missing_ok: bool = True) -> bool:
        command = self._command("-t", table, "-X", chain)
        with self._lock:
            chains = self._chains(table)
            if chain not in chains:
                if not missing_ok:
                    raise RuleNotFound(command, "iptables: No chain/target/match by that name.", 1)
                return False
            if chain in BUILTIN_CHAINS.get(table, ()):
                raise RuleMutationFailed(command, "iptables: Invalid argument.", 1)
            if chains[chain]:
                raise RuleMutationFailed(command, "iptables: Directory not empty.", 1)
            if any(r.jump == chain for rules in chains.values() for r in rules):
                raise RuleMutationFailed(command, "iptables: Too many links.", 1)
            del chains[chain]
            self.operations.append(" ".join(command))
            return True

    def chain_exists(self, table: str, chain: str) -> bool:
        with self._lock:
            return chain in self._chains(table)

    def rules(self, table: str, chain: str) -> List[Rule]:
        """Snapshot of the rules in a chain (empty if the chain is missing)."""
        with self._lock:
            return list(self._chains(table).get(chain, []))

    def user_chains(self, table: str) -> List[str]:
        """Names of the non-builtin chains in a table."""
        builtin = BUILTIN_CHAINS.get(table, ())
        with self._lock:
            return [c for c in self._chains(table) if c not in builtin]
