"""
Configuration Tests
===================

Tests for YAML loading and GatewayConfig construction.
"""

import pytest
import yaml
from dataclasses import FrozenInstanceError
from pathlib import Path

from core.config import (
    DEFAULT_PROBE_REQUESTS,
    GatewayConfig,
    create_config_from_dict,
    load_config,
)


project_root = Path(__file__).parent.parent


class TestGatewayConfig:

    def test_defaults(self):
        config = GatewayConfig()
        assert config.proxy_port == 8000
        assert config.web_port == 8001
        assert config.cleared_chain == "PORTICO1"
        assert config.proxy_chain == "PORTICO2"
        assert config.probe_requests == tuple(DEFAULT_PROBE_REQUESTS)

    def test_immutable(self):
        with pytest.raises(FrozenInstanceError):
            GatewayConfig().proxy_port = 9000

    def test_overrides_skip_none(self):
        config = GatewayConfig().with_overrides(proxy_port=9000, web_port=None, in_interface="wlan0")
        assert config.proxy_port == 9000
        assert config.web_port == 8001
        assert config.in_interface == "wlan0"

    def test_no_overrides_returns_same(self):
        config = GatewayConfig()
        assert config.with_overrides(proxy_port=None) is config


class TestCreateConfigFromDict:

    def test_from_test_config(self, test_config):
        config = create_config_from_dict(test_config)

        assert config.proxy_port == 18000
        assert config.in_interface == "wlan0"
        assert config.source_net == "10.0.0.0/24"
        assert config.cleared_chain == "PORTICOTEST1"
        assert config.dns_servers == ("192.0.2.53",)
        assert config.dnsmasq_restart_command == ("true",)
        assert config.probe_headers == (("user-agent", ("CaptiveNetworkSupport",)),)
        assert config.clear_ip_headers == (("x-portico-clear", "1"),)
        assert config.cleared_time == 3600

    def test_empty_dict_gives_defaults(self):
        assert create_config_from_dict({}) == GatewayConfig()

    def test_empty_strings_mean_unset(self):
        config = create_config_from_dict({"gateway": {"in_interface": "", "source_net": ""}})
        assert config.in_interface is None
        assert config.source_net is None

    def test_header_mapping_form(self):
        config = create_config_from_dict({"portal": {
            "probe_headers": {"User-Agent": ["CaptiveNetworkSupport", "wispr"]},
            "clear_ip_headers": {"X-Clear": "yes"},
        }})
        assert config.probe_headers == (("user-agent", ("CaptiveNetworkSupport", "wispr")),)
        assert config.clear_ip_headers == (("x-clear", "yes"),)

    def test_headers_can_be_disabled(self):
        config = create_config_from_dict({"portal": {"probe_headers": [], "clear_ip_headers": []}})
        assert config.probe_headers == ()
        assert config.clear_ip_headers == ()

    def test_bad_port(self):
        with pytest.raises(ValueError):
            create_config_from_dict({"gateway": {"proxy_port": "eighty"}})


class TestLoadConfig:

    def test_load_yaml(self, tmp_path, test_config):
        path = tmp_path / "config.yaml"
        path.write_text(yaml.safe_dump(test_config))

        assert load_config(path) == test_config

    def test_empty_file(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("")
        assert load_config(path) == {}

    def test_shipped_config(self):
        config = create_config_from_dict(load_config(project_root / "config" / "config.yaml"))

        assert config == GatewayConfig()
