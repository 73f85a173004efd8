"""Connection bootstrap and settings persistence for the contentdesk shell."""

from __future__ import annotations

from .bootstrap import BootstrapOrchestrator, BootstrapState, ManualConnectionForm, Screen
from .config import ConfigStore, SettingsDocument, SettingsPatch
from .connections import AsyncpgConnectionGateway, ConnectionGateway, DemoConnectionGateway, build_dsn
from .models import (
    ConnectionDescriptor,
    ConnectionGatewayError,
    ContentDeskError,
    ContentPaths,
    EmptyNameError,
    IncompleteDescriptorError,
    PersistenceError,
    Profile,
    ProfileNotFoundError,
)
from .profiles import LEGACY_PROFILE_NAME, ProfileRegistry

__version__ = "0.1.0"

__all__ = [
    "AsyncpgConnectionGateway",
    "BootstrapOrchestrator",
    "BootstrapState",
    "ConfigStore",
    "ConnectionDescriptor",
    "ConnectionGateway",
    "ConnectionGatewayError",
    "ContentDeskError",
    "ContentPaths",
    "DemoConnectionGateway",
    "EmptyNameError",
    "IncompleteDescriptorError",
    "LEGACY_PROFILE_NAME",
    "ManualConnectionForm",
    "PersistenceError",
    "Profile",
    "ProfileNotFoundError",
    "ProfileRegistry",
    "Screen",
    "SettingsDocument",
    "SettingsPatch",
    "__version__",
    "build_dsn",
]
