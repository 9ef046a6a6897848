"""
Tests for the backend client registry.
"""

import asyncio

import pytest

from conftest import StaticProvider, make_configuration
from image_studio_backend.configuration import ConfigurationCache
from image_studio_backend.errors import BackendUnavailableError, NoConfigurationError, RateLimitedError
from image_studio_backend.registry import BackendRegistry


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def make_registry(provider, fake_backends):
    return BackendRegistry(ConfigurationCache(provider, ttl_seconds=300), client_factory=fake_backends)


class TestGetClient:
    """Tests for BackendRegistry.get_client."""

    def test_no_configuration(self, fake_backends):
        registry = make_registry(StaticProvider(None), fake_backends)
        with pytest.raises(NoConfigurationError):
            registry.get_client("gemini")
        assert registry.available_backends() == []

    def test_disabled_backend(self, fake_backends):
        registry = make_registry(StaticProvider(make_configuration("gemini")), fake_backends)
        with pytest.raises(BackendUnavailableError) as excinfo:
            registry.get_client("sora")
        assert excinfo.value.available == ["gemini"]

    def test_unknown_backend(self, fake_backends):
        registry = make_registry(StaticProvider(make_configuration()), fake_backends)
        with pytest.raises(BackendUnavailableError):
            registry.get_client("dalle")

    def test_client_is_cached(self, fake_backends):
        registry = make_registry(StaticProvider(make_configuration()), fake_backends)
        first = registry.get_client("gemini")
        assert registry.get_client("gemini") is first
        assert fake_backends.built == 1
        assert first.config.model == "gemini-model"
        assert first.config.api_key == "sk-test-key-123456"

    def test_backend_timeouts_come_from_settings(self, fake_backends):
        registry = make_registry(StaticProvider(make_configuration()), fake_backends)
        assert registry.get_client("sora").config.timeout == 300
        assert registry.get_client("gemini").config.connection_test_timeout == 15

    def test_refresh_rebuilds_clients_with_new_configuration(self, fake_backends):
        provider = StaticProvider(make_configuration("gemini", "sora"))
        registry = make_registry(provider, fake_backends)
        old_client = registry.get_client("gemini")

        provider.configuration = make_configuration("sora", name="rotated")
        registry.refresh()

        assert registry.available_backends() == ["sora"]
        assert registry.get_client("sora") is not old_client
        with pytest.raises(BackendUnavailableError):
            registry.get_client("gemini")


    def test_reload_with_same_configuration_keeps_clients(self, fake_backends):
        clock = FakeClock()
        provider = StaticProvider(make_configuration())
        registry = BackendRegistry(ConfigurationCache(provider, ttl_seconds=300, clock=clock), client_factory=fake_backends)
        client = registry.get_client("gemini")

        clock.now += 301
        provider.configuration = make_configuration()
        assert registry.get_client("gemini") is client
        assert provider.calls == 2
        assert fake_backends.built == 1

    def test_reload_with_changed_configuration_rebuilds(self, fake_backends):
        clock = FakeClock()
        provider = StaticProvider(make_configuration())
        registry = BackendRegistry(ConfigurationCache(provider, ttl_seconds=300, clock=clock), client_factory=fake_backends)
        client = registry.get_client("gemini")

        clock.now += 301
        provider.configuration = make_configuration(name="rotated")
        assert registry.get_client("gemini") is not client
        assert fake_backends.built == 2


class TestRegistryReporting:
    def test_summary(self, fake_backends):
        registry = make_registry(StaticProvider(make_configuration("gemini", "chatgpt")), fake_backends)
        summary = registry.summary()
        assert summary["has_configuration"] is True
        assert summary["configuration_name"] == "test"
        assert summary["source"] == "test"
        assert summary["available_backends"] == ["gemini", "chatgpt"]
        assert summary["cache_ttl_seconds"] == 300
        assert summary["loaded_at"] is not None

    def test_stats_lists_cached_clients(self, fake_backends):
        registry = make_registry(StaticProvider(make_configuration()), fake_backends)
        registry.get_client("chatgpt")
        stats = registry.stats()
        assert stats["total_backends"] == 3
        assert stats["cached_clients"] == ["chatgpt"]

    def test_connection_tests(self, fake_backends):
        registry = make_registry(StaticProvider(make_configuration("gemini", "sora")), fake_backends)
        fake_backends.script("sora", RateLimitedError())

        checks = asyncio.run(registry.test_all_connections())
        assert set(checks) == {"gemini", "sora"}
        assert checks["gemini"].ok is True
        assert checks["sora"].ok is False

    def test_connection_test_for_disabled_backend(self, fake_backends):
        registry = make_registry(StaticProvider(make_configuration("gemini")), fake_backends)
        check = asyncio.run(registry.test_connection("chatgpt"))
        assert check.ok is False
        assert "not available" in check.error
