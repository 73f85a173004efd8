"""Named connection profiles stored in the settings document."""

from __future__ import annotations

import logging

from .config import ConfigStore, SettingsDocument, SettingsPatch
from .models import ConnectionDescriptor, ContentPaths, EmptyNameError, Profile, ProfileNotFoundError

LOG = logging.getLogger(__name__)

LEGACY_PROFILE_NAME = "Default"


class ProfileRegistry:
    """CRUD over connection profiles plus the legacy single-connection block.

    All writes go through :meth:`ConfigStore.update` so each operation is one
    read-modify-write. Legacy settings are surfaced as an implicit profile on
    read but are never rewritten into the profile list implicitly.
    """

    def __init__(self, store: ConfigStore) -> None:
        self._store = store

    @property
    def store(self) -> ConfigStore:
        """Backing settings store."""

        return self._store

    async def list(self) -> list[Profile]:
        """Profiles in insertion order, or the migrated legacy profile."""

        document = await self._store.load()
        return profiles_for(document)

    async def upsert(self, profile: Profile) -> Profile:
        """Insert ``profile`` or replace the stored one with the same name."""

        name = profile.name.strip()
        if not name:
            raise EmptyNameError()
        if name != profile.name:
            profile = profile.model_copy(update={"name": name})

        def _apply(document: SettingsDocument) -> SettingsPatch:
            profiles = list(document.current.profiles)
            for index, existing in enumerate(profiles):
                if existing.name == name:
                    profiles[index] = profile
                    break
            else:
                profiles.append(profile)
            return SettingsPatch(profiles=tuple(profiles))

        await self._store.update(_apply)
        LOG.info("Saved connection profile", extra={"profile": name})
        return profile

    async def delete(self, name: str) -> None:
        """Remove a profile; unknown names are ignored."""

        def _apply(document: SettingsDocument) -> SettingsPatch | None:
            stored = document.current.profiles
            remaining = tuple(profile for profile in stored if profile.name != name)
            changes: dict[str, object] = {}
            if len(remaining) != len(stored):
                changes["profiles"] = remaining
            if document.current.current_profile_name == name:
                changes["current_profile_name"] = None
            if not changes:
                return None
            return SettingsPatch(**changes)

        await self._store.update(_apply)
        LOG.info("Deleted connection profile", extra={"profile": name})

    async def get_current(self) -> Profile | None:
        """Resolve the current-profile pointer; stale pointers resolve to None."""

        document = await self._store.load()
        return current_profile_for(document)

    async def set_current(self, name: str) -> None:
        """Point the document at a stored profile."""

        def _apply(document: SettingsDocument) -> SettingsPatch | None:
            if document.profile_named(name) is None:
                raise ProfileNotFoundError(name)
            if document.current.current_profile_name == name:
                return None
            return SettingsPatch(current_profile_name=name)

        await self._store.update(_apply)

    async def save_legacy_connection(self, connection: ConnectionDescriptor) -> None:
        """Remember an unnamed connection for auto-connect on next launch."""

        await self._store.save(
            SettingsPatch(legacy_connection=connection, persist_legacy_connection=True)
        )
        LOG.info("Saved connection for auto-connect", extra={"host": connection.host})

    async def forget_legacy_connection(self) -> None:
        """Drop the remembered connection and opt out of auto-connect."""

        await self._store.save(
            SettingsPatch(legacy_connection=None, persist_legacy_connection=False)
        )
        LOG.info("Cleared saved connection")

    async def set_global_paths(
        self,
        *,
        images_path: str | None = None,
        content_files_path: str | None = None,
    ) -> None:
        """Persist the directory pickers' choices; omitted paths stay as they are."""

        changes: dict[str, object] = {}
        if images_path is not None:
            changes["global_images_path"] = images_path
        if content_files_path is not None:
            changes["global_content_files_path"] = content_files_path
        if changes:
            await self._store.save(SettingsPatch(**changes))

    async def resolve_paths(self) -> ContentPaths:
        """Content directories of the current profile, defaulting to the global ones."""

        document = await self._store.load()
        legacy = document.legacy
        profile = current_profile_for(document)
        if profile is None:
            return ContentPaths(legacy.images_path or None, legacy.content_files_path or None)
        return ContentPaths(
            images_path=profile.images_path or legacy.images_path or None,
            content_files_path=profile.content_files_path or legacy.content_files_path or None,
        )


def migrated_profile(document: SettingsDocument) -> Profile | None:
    """Implicit profile built from legacy settings, when they allow auto-connect."""

    legacy = document.legacy
    if document.current.profiles or not legacy.usable or legacy.connection is None:
        return None
    return Profile(
        name=LEGACY_PROFILE_NAME,
        connection=legacy.connection,
        images_path=legacy.images_path or None,
        content_files_path=legacy.content_files_path or None,
    )


def profiles_for(document: SettingsDocument) -> list[Profile]:
    """Profiles to present for ``document``, including the migrated one."""

    if document.current.profiles:
        return list(document.current.profiles)
    migrated = migrated_profile(document)
    return [migrated] if migrated is not None else []


def current_profile_for(document: SettingsDocument) -> Profile | None:
    pointer = document.current.current_profile_name
    if not pointer:
        return None
    for profile in profiles_for(document):
        if profile.name == pointer:
            return profile
    return None


__all__ = [
    "LEGACY_PROFILE_NAME",
    "ProfileRegistry",
    "current_profile_for",
    "migrated_profile",
    "profiles_for",
]
