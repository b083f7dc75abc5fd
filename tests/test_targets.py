"""Tests for per-instance target resolution."""

import pytest

from clawfleet.config import GatewaySettings, InstanceSettings, Settings, TargetSettings
from clawfleet.exceptions import ConfigurationError
from clawfleet.targets import TargetResolver


@pytest.fixture
def multi_settings():
    return Settings(
        default_instance="prod",
        default_target=TargetSettings(host="198.51.100.1", password="default-pw"),
        known_hosts=None,
        instances={
            "prod": InstanceSettings(
                target=TargetSettings(host="203.0.113.20", user="admin", key_files=["/keys/prod"]),
                gateway=GatewaySettings(url="http://203.0.113.20:18789", token="tok"),
            ),
            "lab": InstanceSettings(
                target=TargetSettings(host="192.0.2.7"),
                gateway=GatewaySettings(url="http://192.0.2.7:19000", port=19000),
            ),
        },
    )


class TestTargetResolver:
    """Tests for TargetResolver."""

    def test_instance_target_wins(self, multi_settings):
        target = TargetResolver(multi_settings).resolve("prod")

        assert target.host == "203.0.113.20"
        assert target.user == "admin"
        assert target.client_keys == ("/keys/prod",)
        assert target.known_hosts is None

    def test_default_instance(self, multi_settings):
        assert TargetResolver(multi_settings).resolve().host == "203.0.113.20"

    def test_instance_without_credentials_uses_default(self, multi_settings):
        target = TargetResolver(multi_settings).resolve("lab")

        assert target.host == "198.51.100.1"
        assert target.password == "default-pw"

    def test_unknown_instance_uses_default(self, multi_settings):
        assert TargetResolver(multi_settings).resolve("nowhere").host == "198.51.100.1"

    def test_nothing_configured(self):
        resolver = TargetResolver(Settings(default_target=TargetSettings(host="h")))

        assert resolver.resolve() is None
        with pytest.raises(ConfigurationError) as exc_info:
            resolver.require("default")
        assert "default" in str(exc_info.value)

    def test_gateway_endpoint(self, multi_settings):
        resolver = TargetResolver(multi_settings)

        endpoint = resolver.gateway("prod")

        assert endpoint.url == "http://203.0.113.20:18789"
        assert endpoint.token == "tok"
        assert resolver.gateway("nowhere") is None

    def test_gateway_port(self, multi_settings):
        resolver = TargetResolver(multi_settings)

        assert resolver.gateway_port("lab") == 19000
        assert resolver.gateway_port("nowhere") == 18789
