"""
PORTICO Cleared-Client Registry
===============================

Remembers which source IPs dismissed the portal.

Every cleared client owns one ``RETURN`` rule at the head of the CLEARED
chain, ahead of the trailing jump to PROXY, so its port-80 traffic skips
the redirect rules entirely. The in-memory entry and the kernel rule are
created and removed together.

Author: Team PORTICO
"""

import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, List

from loguru import logger

from .config import GatewayConfig
from .errors import RuleMutationFailed
from .rule_engine import Rule, RuleEngine


@dataclass
class ClearedEntry:
    """A client that acknowledged the portal."""
    source_ip: str
    cleared_at: float  # unix seconds

    def age(self, now: float) -> float:
        return now - self.cleared_at

    def to_dict(self) -> Dict:
        return {"source_ip": self.source_ip, "cleared_at": self.cleared_at}


class ClearedClientRegistry:
    """Source IP → ClearedEntry map backed by the CLEARED NAT chain."""

    def __init__(self, config: GatewayConfig, rule_engine: RuleEngine,
                 clock: Callable[[], float] = time.time):
        self.config = config
        self.rule_engine = rule_engine
        self.clock = clock
        self.expiry = config.cleared_time

        self._entries: Dict[str, ClearedEntry] = {}
        self._lock = threading.RLock()

    def return_rule(self, source_ip: str) -> Rule:
        return Rule(
            table="nat",
            chain=self.config.cleared_chain,
            source=source_ip,
            jump="RETURN",
        )

    def proxy_jump_rule(self) -> Rule:
        """Trailing CLEARED → PROXY jump."""
        return Rule(
            table="nat",
            chain=self.config.cleared_chain,
            jump=self.config.proxy_chain,
        )

    def mark_cleared(self, source_ip: str) -> bool:
        """
        Let ``source_ip`` bypass the portal.

        Returns:
            True if the client is now cleared, False if the rule could not be added
        """
        with self._lock:
            entry = self._entries.get(source_ip)
            if entry is not None:
                entry.cleared_at = self.clock()
                logger.debug(f"{source_ip} already cleared, timestamp refreshed")
                return True

            try:
                self.rule_engine.insert(self.return_rule(source_ip), 1)
            except RuleMutationFailed as e:
                logger.error(f"Failed to add {source_ip} to {self.config.cleared_chain}: {e}")
                return False

            self._entries[source_ip] = ClearedEntry(source_ip=source_ip, cleared_at=self.clock())
            logger.info(f"Added {source_ip} to {self.config.cleared_chain}")
            return True

    def sweep(self) -> int:
        """
        Remove cleared clients older than the expiry window.

        An entry whose rule cannot be deleted stays tracked so the next
        sweep retries it.

        Returns:
            Number of entries removed
        """
        removed = 0
        with self._lock:
            now = self.clock()
            expired = [
                entry for entry in self._entries.values()
                if entry.age(now) > self.expiry
            ]

            for entry in expired:
                try:
                    self.rule_engine.delete(self.return_rule(entry.source_ip))
                except RuleMutationFailed as e:
                    logger.error(
                        f"Can't delete rule in {self.config.cleared_chain} "
                        f"for srcIp = {entry.source_ip}: {e}"
                    )
                    continue

                del self._entries[entry.source_ip]
                removed += 1
                logger.info(f"Cleared client {entry.source_ip} expired")

        if removed:
            logger.debug(f"Sweep removed {removed} cleared clients")
        return removed

    def is_cleared(self, source_ip: str) -> bool:
        with self._lock:
            return source_ip in self._entries

    def entries(self) -> List[ClearedEntry]:
        """Snapshot of the tracked entries."""
        with self._lock:
            return [ClearedEntry(e.source_ip, e.cleared_at) for e in self._entries.values()]

    def __len__(self):
        with self._lock:
            return len(self._entries)

    def resync(self) -> None:
        """
        Rebuild the CLEARED chain from the in-memory entries.

        Raises:
            RuleMutationFailed: if any rule could not be installed
        """
        with self._lock:
            self.rule_engine.flush("nat", self.config.cleared_chain, missing_ok=False)
            for source_ip in self._entries:
                self.rule_engine.append(self.return_rule(source_ip))
            self.rule_engine.append(self.proxy_jump_rule())
            logger.info(f"Resynced {len(self._entries)} cleared clients into {self.config.cleared_chain}")

    def reset(self) -> None:
        """Forget every entry without touching the kernel."""
        with self._lock:
            self._entries.clear()
