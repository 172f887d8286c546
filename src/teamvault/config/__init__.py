"""
Configuration management for teamvault.

This module handles loading, validating, and saving configuration settings,
as well as encrypted storage of deployment service keys.
"""

from teamvault.config.credentials import (
    SERVICE_KEY_ENV,
    CredentialError,
    CredentialNotFoundError,
    CredentialStore,
    CredentialStoreLockedError,
    CredentialStoreNotInitializedError,
    InvalidPassphraseError,
    resolve_service_key,
)
from teamvault.config.settings import (
    BackupConfig,
    ConfigurationError,
    DeploymentConfig,
    ReportingConfig,
    Settings,
    load_config,
    save_config,
)

__all__ = [
    # Settings
    "Settings",
    "DeploymentConfig",
    "BackupConfig",
    "ReportingConfig",
    "load_config",
    "save_config",
    "ConfigurationError",
    # Credentials
    "CredentialStore",
    "CredentialError",
    "CredentialStoreNotInitializedError",
    "CredentialStoreLockedError",
    "InvalidPassphraseError",
    "CredentialNotFoundError",
    "resolve_service_key",
    "SERVICE_KEY_ENV",
]
