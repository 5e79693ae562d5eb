"""Provider adapters (Google, Microsoft Graph, Nylas) behind one port."""

from crm_sync.infrastructure.external.providers.factory import ProviderAdapterFactory
from crm_sync.infrastructure.external.providers.google import GoogleAdapter
from crm_sync.infrastructure.external.providers.microsoft import MicrosoftAdapter
from crm_sync.infrastructure.external.providers.nylas import NylasAdapter

__all__ = ["GoogleAdapter", "MicrosoftAdapter", "NylasAdapter", "ProviderAdapterFactory"]
