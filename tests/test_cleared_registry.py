"""
Cleared-Client Registry Tests
=============================

Tests for clearing clients and expiring them again.
"""

import threading
import time

import pytest

from core.cleared_registry import ClearedClientRegistry
from core.errors import RuleMutationFailed


@pytest.fixture
def registry(gateway_config, chains_ready, clock):
    chains_ready.append(ClearedClientRegistry(gateway_config, chains_ready).proxy_jump_rule())
    return ClearedClientRegistry(gateway_config, chains_ready, clock=clock)


def cleared_sources(rule_engine, config):
    return [r.source for r in rule_engine.rules("nat", config.cleared_chain) if r.jump == "RETURN"]


class TestMarkCleared:
    """Adding clients."""

    def test_return_rule_inserted_at_head(self, registry, gateway_config, chains_ready):
        assert registry.mark_cleared("10.0.0.5")
        assert registry.mark_cleared("10.0.0.6")

        rules = chains_ready.rules("nat", gateway_config.cleared_chain)
        assert [r.source for r in rules[:2]] == ["10.0.0.6", "10.0.0.5"]
        # The PROXY jump stays last
        assert rules[-1] == registry.proxy_jump_rule()

    def test_clearing_twice_refreshes_timestamp(self, registry, gateway_config, chains_ready, clock):
        registry.mark_cleared("10.0.0.5")
        clock.advance(100)
        registry.mark_cleared("10.0.0.5")

        assert cleared_sources(chains_ready, gateway_config) == ["10.0.0.5"]
        assert registry.entries()[0].cleared_at == clock.now
        assert len(registry) == 1

    def test_rule_failure_leaves_client_uncleared(self, gateway_config, rule_engine, clock):
        # No CLEARED chain exists
        registry = ClearedClientRegistry(gateway_config, rule_engine, clock=clock)

        assert registry.mark_cleared("10.0.0.5") is False
        assert not registry.is_cleared("10.0.0.5")


class TestSweep:
    """Expiring clients."""

    def test_expired_entries_removed(self, registry, gateway_config, chains_ready, clock):
        registry.mark_cleared("10.0.0.5")
        clock.advance(1800)
        registry.mark_cleared("10.0.0.6")
        clock.advance(1801)

        assert registry.sweep() == 1
        assert not registry.is_cleared("10.0.0.5")
        assert registry.is_cleared("10.0.0.6")
        assert cleared_sources(chains_ready, gateway_config) == ["10.0.0.6"]

    def test_entry_at_expiry_boundary_kept(self, registry, clock):
        registry.mark_cleared("10.0.0.5")
        clock.advance(3600)

        assert registry.sweep() == 0
        assert registry.is_cleared("10.0.0.5")

    def test_failed_delete_retried_next_sweep(self, registry, chains_ready, clock):
        registry.mark_cleared("10.0.0.5")
        clock.advance(4000)

        original_delete = chains_ready.delete

        def failing_delete(rule, missing_ok=True):
            raise RuleMutationFailed(["iptables", "-D"], "iptables: Resource temporarily unavailable.", 4)

        chains_ready.delete = failing_delete
        assert registry.sweep() == 0
        assert registry.is_cleared("10.0.0.5")

        chains_ready.delete = original_delete
        assert registry.sweep() == 1
        assert not registry.is_cleared("10.0.0.5")

    def test_sweep_empty_registry(self, registry):
        assert registry.sweep() == 0

    def test_mark_cleared_waits_for_sweep(self, registry, chains_ready, clock):
        registry.mark_cleared("10.0.0.5")
        clock.advance(4000)

        events = []
        delete_started = threading.Event()
        release = threading.Event()
        original_delete = chains_ready.delete
        original_insert = chains_ready.insert

        def slow_delete(rule, missing_ok=True):
            events.append("delete-start")
            delete_started.set()
            release.wait(2)
            result = original_delete(rule, missing_ok)
            events.append("delete-end")
            return result

        def recording_insert(rule, position=1):
            events.append("insert")
            original_insert(rule, position)

        chains_ready.delete = slow_delete
        chains_ready.insert = recording_insert

        sweeper = threading.Thread(target=registry.sweep)
        sweeper.start()
        assert delete_started.wait(1)

        clearer = threading.Thread(target=registry.mark_cleared, args=("10.0.0.9",))
        clearer.start()
        time.sleep(0.1)
        release.set()
        sweeper.join(2)
        clearer.join(2)

        assert events == ["delete-start", "delete-end", "insert"]
        assert not registry.is_cleared("10.0.0.5")
        assert registry.is_cleared("10.0.0.9")


class TestResync:
    """Rebuilding the CLEARED chain from memory."""

    def test_resync_restores_rules(self, registry, gateway_config, chains_ready):
        registry.mark_cleared("10.0.0.5")
        registry.mark_cleared("10.0.0.6")
        chains_ready.flush("nat", gateway_config.cleared_chain)

        registry.resync()

        rules = chains_ready.rules("nat", gateway_config.cleared_chain)
        assert sorted(r.source for r in rules[:-1]) == ["10.0.0.5", "10.0.0.6"]
        assert rules[-1] == registry.proxy_jump_rule()

    def test_reset_forgets_entries(self, registry, gateway_config, chains_ready):
        registry.mark_cleared("10.0.0.5")
        registry.reset()

        assert len(registry) == 0
        # The kernel rule is left for the chain teardown
        assert cleared_sources(chains_ready, gateway_config) == ["10.0.0.5"]
