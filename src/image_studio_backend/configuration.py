"""
Engine settings and backend configuration providers.

Two kinds of configuration live here:

- Engine settings: constants such as retry caps, timeouts and the attempt
  limit, loaded from the packaged config.yaml with OmegaConf and merged with
  caller overrides.
- Active backend configuration: credentials, gateway URL and the per-backend
  enabled flag / model name, supplied by a ConfigurationProvider and held in
  a ConfigurationCache with a time-to-live.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from functools import lru_cache
from pathlib import Path
from threading import Lock
from typing import Any, Callable, Dict, Mapping, Optional, Protocol

from dotenv import load_dotenv
from omegaconf import DictConfig, OmegaConf

from .utils import utcnow

# Load environment variables from .env file
load_dotenv()

logger = logging.getLogger(__name__)

CONFIG_DIR = Path(__file__).resolve().parent / "config"
CONFIG_PATH = CONFIG_DIR / "config.yaml"
FEATURES_PATH = CONFIG_DIR / "features.yaml"


@lru_cache(maxsize=1)
def _load_default_config() -> DictConfig:
    if not CONFIG_PATH.exists():
        raise FileNotFoundError(f"Default config not found at {CONFIG_PATH}")
    return OmegaConf.load(CONFIG_PATH)


def make_runtime_config(overrides: Optional[Dict[str, Any]] = None) -> DictConfig:
    """
    Build engine settings by merging overrides over the packaged defaults.

    Unknown keys in the overrides raise, since the base is in struct mode.
    Environment interpolations are resolved at access time.
    """
    base_container = OmegaConf.to_container(_load_default_config(), resolve=False)
    base = OmegaConf.create(base_container)
    OmegaConf.set_struct(base, True)

    override_config = OmegaConf.create(overrides or {})
    merged = DictConfig(OmegaConf.merge(base, override_config))
    return merged


@dataclass(frozen=True)
class BackendSettings:
    enabled: bool
    model_name: str = ""

    @property
    def usable(self) -> bool:
        return self.enabled and bool(self.model_name)


@dataclass(frozen=True)
class ActiveConfiguration:
    """Snapshot of the credentials and backend switches currently in force."""

    name: str
    api_key: str
    base_url: str
    backends: Mapping[str, BackendSettings] = field(default_factory=dict)
    source: str = "database"

    def is_enabled(self, backend_id: str) -> bool:
        settings = self.backends.get(backend_id)
        return bool(settings and settings.usable)

    def model_for(self, backend_id: str) -> str:
        settings = self.backends.get(backend_id)
        return settings.model_name if settings else ""

    def enabled_backends(self) -> list[str]:
        return [backend_id for backend_id in self.backends if self.is_enabled(backend_id)]


class ConfigurationProvider(Protocol):
    def active_configuration(self) -> Optional[ActiveConfiguration]:
        ...


class EnvironmentConfigurationProvider:
    """
    Builds a configuration from environment variables.

    A backend counts as enabled when the shared API key and its model
    variable are both set.
    """

    def __init__(self, settings: Optional[DictConfig] = None) -> None:
        self._settings = settings if settings is not None else make_runtime_config()

    def active_configuration(self) -> Optional[ActiveConfiguration]:
        environment = self._settings.environment
        api_key = str(environment.api_key or "")
        if not api_key:
            return None

        backends = {
            backend_id: BackendSettings(enabled=bool(model), model_name=str(model or ""))
            for backend_id, model in environment.models.items()
        }
        if not any(settings.usable for settings in backends.values()):
            return None

        return ActiveConfiguration(
            name="environment",
            api_key=api_key,
            base_url=str(environment.base_url),
            backends=backends,
            source="environment",
        )


class ChainedConfigurationProvider:
    """Returns the first non-empty configuration from an ordered list of providers."""

    def __init__(self, *providers: ConfigurationProvider) -> None:
        self._providers = providers

    def active_configuration(self) -> Optional[ActiveConfiguration]:
        for provider in self._providers:
            config = provider.active_configuration()
            if config is not None:
                return config
        return None


class ConfigurationCache:
    """
    Time-boxed cache around a ConfigurationProvider.

    Every reload bumps ``version``, which registry stats report. An empty
    result from the provider is cached too: "no configuration yet" is a normal
    first-run state.

    Thread Safety:
        Reloads are serialized by a lock; readers always get a complete snapshot.
    """

    def __init__(
        self,
        provider: ConfigurationProvider,
        ttl_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._provider = provider
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._lock = Lock()
        self._value: Optional[ActiveConfiguration] = None
        self._loaded = False
        self.last_loaded_at: Optional[float] = None
        self.loaded_at: Optional[datetime] = None
        self.version = 0

    def _is_fresh(self) -> bool:
        return (
            self._loaded
            and self.last_loaded_at is not None
            and self._clock() - self.last_loaded_at < self.ttl_seconds
        )

    def get(self) -> Optional[ActiveConfiguration]:
        with self._lock:
            if self._is_fresh():
                return self._value
            value = self._provider.active_configuration()
            self._value = value
            self._loaded = True
            self.last_loaded_at = self._clock()
            self.loaded_at = utcnow()
            self.version += 1
            if value is None:
                logger.info("No active backend configuration found")
            else:
                logger.info(f"Loaded backend configuration '{value.name}' from {value.source}: {value.enabled_backends()}")
            return value

    def invalidate(self) -> None:
        with self._lock:
            self._loaded = False
            self.last_loaded_at = None

    @property
    def expires_at(self) -> Optional[float]:
        if self.last_loaded_at is None:
            return None
        return self.last_loaded_at + self.ttl_seconds

    def remaining_ttl(self) -> Optional[float]:
        """Seconds until the next reload, or None if nothing is loaded."""
        expires_at = self.expires_at
        if expires_at is None:
            return None
        return max(0.0, expires_at - self._clock())
