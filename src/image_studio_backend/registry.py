"""
Backend client registry.

Builds one client per backend from the active configuration and caches it.
The client map is rebuilt wholesale whenever the configuration cache yields a
configuration different from the one the clients were built from, so
credential or model changes are picked up within one cache TTL, or
immediately after refresh(). A reload that returns the same configuration
keeps the existing clients.
"""

from __future__ import annotations

import asyncio
import logging
from threading import Lock
from typing import Any, Callable, Dict, List, Optional

import httpx
from omegaconf import DictConfig

from .backends import CLIENT_CLASSES, BackendClient, BackendConfig, ConnectionCheck
from .catalog import BackendDescriptor, ModelCapabilityCatalog
from .configuration import ActiveConfiguration, ConfigurationCache, make_runtime_config
from .errors import BackendUnavailableError, NoConfigurationError

logger = logging.getLogger(__name__)

ClientFactory = Callable[[BackendDescriptor, BackendConfig], BackendClient]


class BackendRegistry:
    """
    Hands out ready-to-use backend clients.

    Thread Safety:
        The client map is guarded by a lock. A reader racing a refresh may get
        the previous client, which stays valid until it is garbage collected.
    """

    def __init__(
        self,
        cache: ConfigurationCache,
        catalog: Optional[ModelCapabilityCatalog] = None,
        settings: Optional[DictConfig] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        client_factory: Optional[ClientFactory] = None,
    ) -> None:
        self.cache = cache
        self.catalog = catalog or ModelCapabilityCatalog()
        self._settings = settings if settings is not None else make_runtime_config()
        self._transport = transport
        self._client_factory = client_factory or self._default_factory
        self._clients: Dict[str, BackendClient] = {}
        self._clients_built_for: Optional[ActiveConfiguration] = None
        self._lock = Lock()

    def _default_factory(self, descriptor: BackendDescriptor, config: BackendConfig) -> BackendClient:
        client_class = CLIENT_CLASSES[descriptor.id]
        return client_class(descriptor, config, transport=self._transport)

    def _backend_config(self, backend_id: str, active: ActiveConfiguration) -> BackendConfig:
        backend_settings = self._settings.backends.get(backend_id)
        timeout = float(backend_settings.timeout_seconds) if backend_settings is not None else 120.0
        test_timeout = float(backend_settings.connection_test_timeout_seconds) if backend_settings is not None else 15.0
        return BackendConfig(
            name=backend_id,
            api_key=active.api_key,
            api_url=active.base_url,
            model=active.model_for(backend_id),
            timeout=timeout,
            connection_test_timeout=test_timeout,
        )

    def _active(self) -> ActiveConfiguration:
        active = self.cache.get()
        if active is None:
            raise NoConfigurationError()
        return active

    def get_client(self, backend_id: str) -> BackendClient:
        """
        Return the cached client for a backend, building it if needed.

        Raises:
            NoConfigurationError: If there is no active configuration at all
            BackendUnavailableError: If the backend is unknown, disabled or has no model
        """
        active = self._active()
        if backend_id not in self.catalog or not active.is_enabled(backend_id):
            raise BackendUnavailableError(backend_id, self.available_backends())

        with self._lock:
            if self._clients_built_for != active:
                if self._clients:
                    logger.info("Backend configuration changed, rebuilding clients")
                self._clients = {}
                self._clients_built_for = active

            client = self._clients.get(backend_id)
            if client is None:
                descriptor = self.catalog.capabilities_of(backend_id)
                client = self._client_factory(descriptor, self._backend_config(backend_id, active))
                self._clients[backend_id] = client
                logger.info(f"Initialized {descriptor.display_name} client (model {active.model_for(backend_id)})")
            return client

    def is_available(self, backend_id: str) -> bool:
        active = self.cache.get()
        return active is not None and backend_id in self.catalog and active.is_enabled(backend_id)

    def available_backends(self) -> List[str]:
        """Available backend ids in catalog order."""
        active = self.cache.get()
        if active is None:
            return []
        return [backend_id for backend_id in self.catalog.backend_ids() if active.is_enabled(backend_id)]

    def refresh(self) -> Optional[ActiveConfiguration]:
        """Force a configuration reload and drop every cached client."""
        self.cache.invalidate()
        with self._lock:
            self._clients = {}
            self._clients_built_for = None
        active = self.cache.get()
        logger.info(f"Backend registry refreshed, available backends: {self.available_backends()}")
        return active

    async def test_connection(self, backend_id: str) -> ConnectionCheck:
        try:
            client = self.get_client(backend_id)
        except (NoConfigurationError, BackendUnavailableError) as exc:
            return ConnectionCheck(ok=False, error=exc.detail)
        return await client.test_connection()

    async def test_all_connections(self) -> Dict[str, ConnectionCheck]:
        backend_ids = self.available_backends()
        checks = await asyncio.gather(*(self.test_connection(backend_id) for backend_id in backend_ids))
        return dict(zip(backend_ids, checks))

    def summary(self) -> Dict[str, Any]:
        active = self.cache.get()
        return {
            "has_configuration": active is not None,
            "configuration_name": active.name if active else None,
            "source": active.source if active else None,
            "available_backends": self.available_backends(),
            "loaded_at": self.cache.loaded_at.isoformat() if self.cache.loaded_at else None,
            "expires_in_seconds": self.cache.remaining_ttl(),
            "cache_ttl_seconds": self.cache.ttl_seconds,
        }

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            cached = sorted(self._clients)
        return {
            "total_backends": len(self.catalog.backend_ids()),
            "available_backends": len(self.available_backends()),
            "cached_clients": cached,
            "configuration_version": self.cache.version,
        }
