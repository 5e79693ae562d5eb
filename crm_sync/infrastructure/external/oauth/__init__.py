"""OAuth drivers and at-rest token encryption."""

from crm_sync.infrastructure.external.oauth.drivers import (
    GoogleDriver,
    MicrosoftDriver,
    NylasDriver,
    OAuthDriver,
    OAuthDriverRegistry,
    build_drivers,
)
from crm_sync.infrastructure.external.oauth.encryption import CredentialEncryptor

__all__ = [
    "CredentialEncryptor",
    "GoogleDriver",
    "MicrosoftDriver",
    "NylasDriver",
    "OAuthDriver",
    "OAuthDriverRegistry",
    "build_drivers",
]
