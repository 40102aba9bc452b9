"""
DNS Tests
=========

Tests for the dnsmasq controller and the probe resolver. System commands
and DNS queries are mocked.
"""

import subprocess
import pytest
import dns.exception
import dns.resolver
from unittest.mock import Mock, patch

from core.dns_resolver import ProbeResolver
from core.dnsmasq import DnsmasqController, SimulatedDnsmasqController, host_record
from core.errors import ConfigWriteFailed, DependencyMissing, ForwarderRestartFailed, ResolutionFailed


def completed(returncode=0, stdout="", stderr=""):
    return subprocess.CompletedProcess(args=[], returncode=returncode, stdout=stdout, stderr=stderr)


class TestDnsmasqController:

    def test_host_record(self):
        assert host_record("captive.apple.com", "17.253.1.1") == "host-record=captive.apple.com,17.253.1.1"

    def test_write_config(self, tmp_path):
        controller = DnsmasqController(tmp_path / "dnsmasq.d" / "portico.conf")

        written = controller.write_config(["host-record=a.example,192.0.2.1",
                                           "host-record=b.example,192.0.2.2"])

        assert written == 2
        assert controller.conf_file.read_text() == (
            "host-record=a.example,192.0.2.1\nhost-record=b.example,192.0.2.2\n"
        )
        assert controller.conf_file.stat().st_mode & 0o777 == 0o644

    def test_write_config_replaces_content(self, tmp_path):
        controller = DnsmasqController(tmp_path / "portico.conf")
        controller.write_config(["host-record=a.example,192.0.2.1"])
        controller.write_config([])
        assert controller.conf_file.read_text() == ""

    def test_write_config_failure(self, tmp_path):
        blocker = tmp_path / "file"
        blocker.write_text("")
        controller = DnsmasqController(blocker / "portico.conf")
        with pytest.raises(ConfigWriteFailed):
            controller.write_config(["host-record=a.example,192.0.2.1"])

    def test_remove_config(self, tmp_path):
        controller = DnsmasqController(tmp_path / "portico.conf")
        controller.write_config([])
        assert controller.remove_config() is True
        assert controller.remove_config() is False

    def test_not_installed(self, tmp_path):
        controller = DnsmasqController(tmp_path / "portico.conf")
        with patch("core.dnsmasq.subprocess.run", return_value=completed(1)):
            with pytest.raises(DependencyMissing) as exc_info:
                controller.check_dependencies()
        assert "apt-get install dnsmasq" in str(exc_info.value)

    def test_not_running(self, tmp_path):
        controller = DnsmasqController(tmp_path / "portico.conf")
        with patch("core.dnsmasq.subprocess.run", side_effect=[completed(0), completed(1)]):
            with pytest.raises(DependencyMissing) as exc_info:
                controller.check_dependencies()
        assert "not running" in str(exc_info.value)

    def test_installed_and_running(self, tmp_path):
        controller = DnsmasqController(tmp_path / "portico.conf")
        with patch("core.dnsmasq.subprocess.run",
                   side_effect=[completed(0), completed(0, stdout="812\n")]) as run:
            controller.check_dependencies()
        assert run.call_args_list[1][0][0] == ["pgrep", "-x", "dnsmasq"]

    def test_restart(self, tmp_path):
        controller = DnsmasqController(tmp_path / "portico.conf")
        with patch("core.dnsmasq.subprocess.run", return_value=completed(0)) as run:
            controller.restart()
        assert run.call_args[0][0] == ["service", "dnsmasq", "restart"]

    def test_restart_failure(self, tmp_path):
        controller = DnsmasqController(tmp_path / "portico.conf", ("systemctl", "restart", "dnsmasq"))
        with patch("core.dnsmasq.subprocess.run", return_value=completed(1, stderr="failed")):
            with pytest.raises(ForwarderRestartFailed) as exc_info:
                controller.restart()
        assert exc_info.value.returncode == 1

    def test_restart_command_missing(self, tmp_path):
        controller = DnsmasqController(tmp_path / "portico.conf")
        with patch("core.dnsmasq.subprocess.run", side_effect=FileNotFoundError("service")):
            with pytest.raises(ForwarderRestartFailed):
                controller.restart()

    def test_simulated_never_runs_commands(self, tmp_path):
        controller = SimulatedDnsmasqController(tmp_path / "portico.conf")
        with patch("core.dnsmasq.subprocess.run") as run:
            controller.check_dependencies()
            controller.restart()
        run.assert_not_called()


def a_answer(*addresses):
    return [Mock(address=address) for address in addresses]


def cname_answer(*targets):
    records = []
    for target in targets:
        rdata = Mock()
        rdata.target.to_text = Mock(return_value=target)
        records.append(rdata)
    return records


class TestProbeResolver:

    @pytest.fixture
    def resolver(self):
        return ProbeResolver(["192.0.2.53"], lifetime=2.0)

    def test_configured_nameservers(self, resolver):
        assert resolver.nameservers == ["192.0.2.53"]
        assert resolver._resolver.lifetime == 2.0

    def test_resolve_a(self, resolver):
        with patch.object(resolver._resolver, "resolve",
                          return_value=a_answer("93.184.216.34", "93.184.216.35")) as resolve:
            assert resolver.resolve_a("example.com") == ["93.184.216.34", "93.184.216.35"]
        resolve.assert_called_once_with("example.com", "A")

    def test_resolve_a_nxdomain(self, resolver):
        with patch.object(resolver._resolver, "resolve", side_effect=dns.resolver.NXDOMAIN()):
            with pytest.raises(ResolutionFailed) as exc_info:
                resolver.resolve_a("nowhere.example")
        assert exc_info.value.record_type == "A"

    def test_resolve_a_no_answer(self, resolver):
        with patch.object(resolver._resolver, "resolve", side_effect=dns.resolver.NoAnswer()):
            with pytest.raises(ResolutionFailed):
                resolver.resolve_a("example.com")

    def test_resolve_a_empty(self, resolver):
        with patch.object(resolver._resolver, "resolve", return_value=[]):
            with pytest.raises(ResolutionFailed):
                resolver.resolve_a("example.com")

    def test_resolve_cname(self, resolver):
        with patch.object(resolver._resolver, "resolve",
                          return_value=cname_answer("edge.example.net")):
            assert resolver.resolve_cname("www.example.com") == ["edge.example.net"]

    def test_resolve_cname_none(self, resolver):
        with patch.object(resolver._resolver, "resolve", side_effect=dns.resolver.NoAnswer()):
            assert resolver.resolve_cname("example.com") == []

    def test_resolve_cname_timeout(self, resolver):
        with patch.object(resolver._resolver, "resolve", side_effect=dns.exception.Timeout()):
            with pytest.raises(ResolutionFailed) as exc_info:
                resolver.resolve_cname("example.com")
        assert exc_info.value.record_type == "CNAME"
