"""Shared models and errors used across the settings/profile/bootstrap modules."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator

REQUIRED_CONNECTION_FIELDS: tuple[str, ...] = ("host", "port", "database", "username")


class ConnectionDescriptor(BaseModel):
    """Credentials used to assemble a connection string.

    Every field is kept as text. Port in particular is never coerced to an
    integer so whatever the user typed round-trips unchanged. Keys this
    release does not know about are kept and written back.
    """

    model_config = ConfigDict(frozen=True, extra="allow")

    host: str = ""
    port: str = ""
    database: str = ""
    username: str = ""
    password: str = ""

    @field_validator("host", "port", "database", "username", "password", mode="before")
    @classmethod
    def _coerce_text(cls, value: object) -> object:
        if value is None:
            return ""
        if isinstance(value, bool):
            return str(value).lower()
        if isinstance(value, (int, float)):
            return str(value)
        return value

    def missing_fields(self) -> tuple[str, ...]:
        """Names of required fields that are blank (password may be empty)."""

        return tuple(name for name in REQUIRED_CONNECTION_FIELDS if not getattr(self, name).strip())

    def masked(self) -> ConnectionDescriptor:
        """Return a copy safe to log."""

        return self.model_copy(update={"password": "***" if self.password else ""})


class Profile(BaseModel):
    """Named connection profile persisted in the settings document."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="allow")

    name: str
    connection: ConnectionDescriptor = Field(
        default_factory=ConnectionDescriptor, alias="database_connection"
    )
    images_path: str | None = Field(default=None, alias="blog_images_path")
    content_files_path: str | None = Field(default=None, alias="blog_folder_path")
    created_at: datetime | None = None


@dataclass(frozen=True, slots=True)
class ContentPaths:
    """Directories the CRUD layer reads images and post files from."""

    images_path: str | None = None
    content_files_path: str | None = None


class ContentDeskError(Exception):
    """Base class for errors raised by the bootstrap layer."""


class EmptyNameError(ContentDeskError, ValueError):
    """Raised when a profile is saved without a usable name."""

    def __init__(self, message: str = "Profile name is required.") -> None:
        super().__init__(message)


class ProfileNotFoundError(ContentDeskError, LookupError):
    """Raised when a profile name does not match any saved profile."""

    def __init__(self, name: str) -> None:
        super().__init__(f"Profile '{name}' not found.")
        self.name = name


class IncompleteDescriptorError(ContentDeskError, ValueError):
    """Raised before dialing when required connection fields are blank."""

    def __init__(self, missing: tuple[str, ...]) -> None:
        super().__init__(f"Missing connection details: {', '.join(missing)}.")
        self.missing = missing


class ConnectionGatewayError(ContentDeskError, RuntimeError):
    """Raised when the backend refuses or cannot open a session."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class PersistenceError(ContentDeskError, RuntimeError):
    """Raised when the settings document cannot be read or written."""


__all__ = [
    "ConnectionDescriptor",
    "ConnectionGatewayError",
    "ContentDeskError",
    "ContentPaths",
    "EmptyNameError",
    "IncompleteDescriptorError",
    "PersistenceError",
    "Profile",
    "ProfileNotFoundError",
    "REQUIRED_CONNECTION_FIELDS",
]
