"""Provider adapter factory: one adapter per provider, selected per credential."""

from typing import Any, ClassVar

import httpx

from crm_sync.application.interfaces.providers import IProviderAdapter
from crm_sync.core.config import Settings
from crm_sync.domain.enums import Provider
from crm_sync.domain.exceptions import UnsupportedProviderException
from crm_sync.infrastructure.external.providers.google import GoogleAdapter
from crm_sync.infrastructure.external.providers.microsoft import MicrosoftAdapter
from crm_sync.infrastructure.external.providers.nylas import NylasAdapter
from crm_sync.shared.telemetry.logging import get_logger

logger = get_logger(__name__)


class ProviderAdapterFactory:
    """Builds and caches adapters; adapters are stateless across accounts."""

    _adapters: ClassVar[dict[Provider, type]] = {
        Provider.GOOGLE: GoogleAdapter,
        Provider.MICROSOFT: MicrosoftAdapter,
        Provider.NYLAS: NylasAdapter,
    }

    def __init__(
        self,
        settings: Settings,
        *,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._settings = settings
        self._http_client = http_client
        self._instances: dict[Provider, IProviderAdapter] = {}

    def _options(self, provider: Provider) -> dict[str, Any]:
        settings = self._settings
        options: dict[str, Any] = {"timeout": settings.provider_timeout_seconds}
        if provider is Provider.GOOGLE:
            return options
        options["http_client"] = self._http_client
        if provider is Provider.MICROSOFT:
            client_state = settings.microsoft_webhook_client_state
            options["base_url"] = settings.microsoft_graph_url
            options["webhook_client_state"] = (
                client_state.get_secret_value() if client_state else None
            )
        elif provider is Provider.NYLAS:
            options["api_uri"] = settings.nylas_api_uri
        return options

    def create(self, provider: Provider) -> IProviderAdapter:
        """Return the adapter for a provider.

        Raises:
            UnsupportedProviderException: If no adapter is registered.
        """
        adapter = self._instances.get(provider)
        if adapter is not None:
            return adapter
        adapter_class = self._adapters.get(provider)
        if adapter_class is None:
            raise UnsupportedProviderException(provider.value)
        logger.debug("Creating %s", adapter_class.__name__)
        adapter = adapter_class(**self._options(provider))
        self._instances[provider] = adapter
        return adapter

    __call__ = create
