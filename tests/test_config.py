"""
Tests for configuration loading and address enumeration.
"""

import socket
from unittest.mock import patch

import netifaces

from couch_link.config import (
    Config,
    deep_merge,
    get_config_paths,
    get_local_addresses,
    get_local_ip,
    load_config,
)


class TestLoadConfig:

    def test_defaults_when_file_missing(self, tmp_path):
        config = load_config(tmp_path / "nope.yaml")
        assert config["control"]["port"] == 8765
        assert config["presence"]["txt"] == ["role=desktop"]

    def test_file_overrides_defaults(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("control:\n  port: 9999\npresence:\n  instance_name: Den\n")

        config = Config(path)

        assert config.control_port == 9999
        assert config.events_port == 10000
        assert config.control_host == "127.0.0.1"
        assert config.instance_name == "Den"

    def test_broken_yaml_falls_back_to_defaults(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("control: [unclosed\n")

        assert Config(path).control_port == 8765

    def test_defaults_are_not_shared(self, tmp_path):
        first = Config(tmp_path / "nope.yaml")
        first.set("presence", "txt", ["changed=1"])
        assert Config(tmp_path / "nope.yaml").txt == ["role=desktop"]

    def test_non_mapping_file_is_ignored(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("- just\n- a list\n")

        assert Config(path).control_port == 8765

    def test_env_var_path_searched_first(self, tmp_path, monkeypatch):
        path = tmp_path / "custom.yaml"
        path.write_text("control:\n  port: 7000\n")
        monkeypatch.setenv("COUCH_LINK_CONFIG", str(path))

        assert get_config_paths()[0] == path
        assert Config().control_port == 7000

    def test_deep_merge(self):
        merged = deep_merge({"a": {"x": 1, "y": 2}, "b": 1}, {"a": {"y": 3}, "c": 4})
        assert merged == {"a": {"x": 1, "y": 3}, "b": 1, "c": 4}


class TestConfigProperties:

    def test_auto_instance_name(self, tmp_path):
        config = Config(tmp_path / "nope.yaml")
        assert config.instance_name == f"CouchLink-{socket.gethostname().split('.')[0]}"

    def test_discovery_type_falls_back_to_presence_type(self, tmp_path):
        config = Config(tmp_path / "nope.yaml")
        assert config.discovery_service_type == "_couchlink._tcp.local."

        config.set("discovery", "service_type", "_other._tcp.local.")
        assert config.discovery_service_type == "_other._tcp.local."

    def test_goodbye_tunables(self, tmp_path):
        goodbye = Config(tmp_path / "nope.yaml").goodbye
        assert goodbye["repeats"] == 3
        assert goodbye["spacing"] == 0.2


INTERFACES = {
    "lo": {
        netifaces.AF_INET: [{"addr": "127.0.0.1"}],
        netifaces.AF_INET6: [{"addr": "::1"}],
    },
    "eth0": {
        netifaces.AF_INET6: [{"addr": "fe80::1%eth0"}, {"addr": "2001:db8::5"}],
        netifaces.AF_INET: [{"addr": "192.168.1.20"}],
    },
    "wlan0": {
        netifaces.AF_INET: [{"addr": "10.0.0.7"}, {"addr": "192.168.1.20"}],
    },
}


class TestLocalAddresses:

    def test_enumeration(self):
        with patch("netifaces.interfaces", return_value=list(INTERFACES)), \
                patch("netifaces.ifaddresses", side_effect=INTERFACES.__getitem__):
            assert get_local_addresses() == ["192.168.1.20", "10.0.0.7", "2001:db8::5"]
            assert get_local_ip() == "192.168.1.20"

    def test_no_interfaces(self):
        with patch("netifaces.interfaces", return_value=[]):
            assert get_local_addresses() == []
            assert get_local_ip() == "127.0.0.1"
