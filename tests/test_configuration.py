"""
Tests for engine settings, configuration providers, the TTL cache and the
API configuration store.
"""

import pytest

from conftest import GATEWAY_URL, StaticProvider, make_configuration
from image_studio_backend.config_store import ApiConfigStore, mask_api_key
from image_studio_backend.configuration import (
    BackendSettings,
    ChainedConfigurationProvider,
    ConfigurationCache,
    EnvironmentConfigurationProvider,
    make_runtime_config,
)
from image_studio_backend.errors import RequestValidationError, ResourceNotFoundError


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


class TestRuntimeConfig:
    """Tests for make_runtime_config."""

    def test_defaults(self):
        settings = make_runtime_config()
        assert settings.jobs.max_attempts == 3
        assert settings.jobs.stall_threshold_seconds == 600
        assert settings.registry.config_cache_ttl_seconds == 300
        assert settings.fallback.max_retries_per_backend == 3

    def test_overrides_merge(self):
        settings = make_runtime_config({"jobs": {"max_attempts": 5}})
        assert settings.jobs.max_attempts == 5
        assert settings.jobs.error_message_limit == 1000

    def test_unknown_keys_rejected(self):
        with pytest.raises(Exception):
            make_runtime_config({"jobs": {"no_such_setting": 1}})


class TestEnvironmentProvider:
    """Tests for EnvironmentConfigurationProvider."""

    def test_no_api_key_means_no_configuration(self):
        assert EnvironmentConfigurationProvider(make_runtime_config()).active_configuration() is None

    def test_builds_configuration_from_settings(self):
        settings = make_runtime_config({
            "environment": {"api_key": "sk-env", "models": {"gemini": "gemini-x", "chatgpt": "", "sora": ""}},
        })
        active = EnvironmentConfigurationProvider(settings).active_configuration()
        assert active is not None
        assert active.source == "environment"
        assert active.enabled_backends() == ["gemini"]
        assert active.model_for("gemini") == "gemini-x"

    def test_key_without_models_means_no_configuration(self):
        settings = make_runtime_config({"environment": {"api_key": "sk-env"}})
        assert EnvironmentConfigurationProvider(settings).active_configuration() is None


class TestChainedProvider:
    def test_first_non_empty_wins(self):
        chained = ChainedConfigurationProvider(
            StaticProvider(None),
            StaticProvider(make_configuration(name="second")),
            StaticProvider(make_configuration(name="third")),
        )
        assert chained.active_configuration().name == "second"

    def test_all_empty(self):
        assert ChainedConfigurationProvider(StaticProvider(None)).active_configuration() is None


class TestConfigurationCache:
    """Tests for ConfigurationCache TTL behaviour."""

    def test_serves_cached_value_within_ttl(self):
        provider = StaticProvider(make_configuration())
        clock = FakeClock()
        cache = ConfigurationCache(provider, ttl_seconds=300, clock=clock)

        first = cache.get()
        clock.now += 299
        assert cache.get() is first
        assert provider.calls == 1
        assert cache.version == 1

    def test_reloads_after_ttl(self):
        provider = StaticProvider(make_configuration(name="old"))
        clock = FakeClock()
        cache = ConfigurationCache(provider, ttl_seconds=300, clock=clock)
        cache.get()

        provider.configuration = make_configuration(name="new")
        clock.now += 300
        assert cache.get().name == "new"
        assert provider.calls == 2
        assert cache.version == 2

    def test_empty_result_is_cached(self):
        provider = StaticProvider(None)
        cache = ConfigurationCache(provider, ttl_seconds=300, clock=FakeClock())
        assert cache.get() is None
        assert cache.get() is None
        assert provider.calls == 1

    def test_invalidate_forces_reload(self):
        provider = StaticProvider(make_configuration())
        cache = ConfigurationCache(provider, ttl_seconds=300, clock=FakeClock())
        cache.get()
        cache.invalidate()
        cache.get()
        assert provider.calls == 2

    def test_remaining_ttl(self):
        clock = FakeClock()
        cache = ConfigurationCache(StaticProvider(None), ttl_seconds=300, clock=clock)
        assert cache.remaining_ttl() is None
        cache.get()
        clock.now += 100
        assert cache.remaining_ttl() == pytest.approx(200)
        assert cache.loaded_at is not None


class TestApiConfigStore:
    """Tests for the SQLite-backed API configuration store."""

    def test_mask_api_key(self):
        assert mask_api_key("sk-1234567890abcdef") == "sk-1...cdef"
        assert mask_api_key("short") == "*****"

    def test_create_with_defaults_enables_every_backend(self, tmp_path):
        store = ApiConfigStore(tmp_path / "configs.db")
        record = store.create("primary", "sk-primary-key-0001", GATEWAY_URL)
        assert record.is_active is False
        assert all(settings.usable for settings in record.backends.values())
        assert record.to_public_dict()["api_key_masked"] == "sk-p...0001"

    def test_unlisted_backends_are_disabled(self, tmp_path):
        store = ApiConfigStore(tmp_path / "configs.db")
        record = store.create("only-gemini", "sk-key-000000000", GATEWAY_URL, {"gemini": BackendSettings(True, "g-model")})
        active = record.to_active_configuration()
        assert active.enabled_backends() == ["gemini"]

    def test_duplicate_name_rejected(self, tmp_path):
        store = ApiConfigStore(tmp_path / "configs.db")
        store.create("primary", "sk-key-000000000", GATEWAY_URL)
        with pytest.raises(RequestValidationError):
            store.create("primary", "sk-key-000000001", GATEWAY_URL)

    def test_activation_is_exclusive(self, tmp_path):
        store = ApiConfigStore(tmp_path / "configs.db")
        first = store.create("first", "sk-key-000000000", GATEWAY_URL, activate=True)
        second = store.create("second", "sk-key-000000001", GATEWAY_URL)

        store.activate(second.id)
        assert store.get(first.id).is_active is False
        assert store.active_configuration().name == "second"

    def test_activate_unknown(self, tmp_path):
        store = ApiConfigStore(tmp_path / "configs.db")
        with pytest.raises(ResourceNotFoundError):
            store.activate("missing")

    def test_delete_and_test_results(self, tmp_path):
        store = ApiConfigStore(tmp_path / "configs.db")
        record = store.create("primary", "sk-key-000000000", GATEWAY_URL, activate=True)
        store.record_test_results(record.id, {"gemini": {"ok": True, "error": None}})
        assert store.get(record.id).test_results == {"gemini": {"ok": True, "error": None}}

        assert store.delete(record.id) is True
        assert store.active_configuration() is None
        assert store.delete(record.id) is False
