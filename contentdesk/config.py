"""Settings document persistence helpers."""

from __future__ import annotations

import asyncio
from datetime import date, datetime, time
import json
import logging
import math
import os
from pathlib import Path
import re
from typing import Any, Callable, Mapping

import tomllib

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .models import ConnectionDescriptor, PersistenceError, Profile

LOG = logging.getLogger(__name__)

SETTINGS_FILE = Path.home() / ".config" / "contentdesk" / "settings.toml"
LEGACY_SETTINGS_NAME = "settings.json"


class LegacyBlock(BaseModel):
    """Single unnamed connection written by releases that predate profiles."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    connection: ConnectionDescriptor | None = Field(default=None, alias="database_connection")
    persist_connection: bool = Field(default=False, alias="save_database_connection")
    images_path: str | None = Field(default=None, alias="blog_images_path")
    content_files_path: str | None = Field(default=None, alias="blog_folder_path")

    @property
    def usable(self) -> bool:
        """True when the saved connection may be used for auto-connect."""

        return self.persist_connection and self.connection is not None


class ProfilesBlock(BaseModel):
    """Named profiles plus the pointer to the one last connected."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    profiles: tuple[Profile, ...] = ()
    current_profile_name: str | None = Field(default=None, alias="current_profile")


_LEGACY_KEYS = frozenset(
    field.alias or name for name, field in LegacyBlock.model_fields.items()
)
_PROFILE_KEYS = frozenset(
    field.alias or name for name, field in ProfilesBlock.model_fields.items()
)


class SettingsDocument(BaseModel):
    """The persisted settings record with both field generations side by side."""

    model_config = ConfigDict(frozen=True)

    legacy: LegacyBlock = Field(default_factory=LegacyBlock)
    current: ProfilesBlock = Field(default_factory=ProfilesBlock)
    extra: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_raw(cls, raw: Mapping[str, object]) -> SettingsDocument:
        """Build a document from decoded file contents, skipping malformed parts."""

        legacy_data = {key: raw[key] for key in _LEGACY_KEYS if key in raw}
        try:
            legacy = LegacyBlock.model_validate(legacy_data)
        except ValidationError as exc:
            LOG.warning("Ignoring malformed legacy connection settings", extra={"error": str(exc)})
            legacy = LegacyBlock()

        profiles: list[Profile] = []
        entries = raw.get("profiles")
        if isinstance(entries, list):
            for entry in entries:
                if not isinstance(entry, dict):
                    continue
                try:
                    profile = Profile.model_validate(entry)
                except ValidationError as exc:
                    LOG.warning("Skipping malformed profile entry", extra={"error": str(exc)})
                    continue
                if profile.name.strip():
                    profiles.append(profile)
        pointer = raw.get("current_profile")
        current = ProfilesBlock(
            profiles=tuple(profiles),
            current_profile_name=pointer if isinstance(pointer, str) and pointer else None,
        )

        extra = {
            key: value
            for key, value in raw.items()
            if key not in _LEGACY_KEYS and key not in _PROFILE_KEYS
        }
        return cls(legacy=legacy, current=current, extra=extra)

    def profile_named(self, name: str) -> Profile | None:
        """Return the stored profile called ``name``, if any."""

        for profile in self.current.profiles:
            if profile.name == name:
                return profile
        return None


class SettingsPatch(BaseModel):
    """Field-level update for the settings document.

    Only fields explicitly passed to the constructor are written. Passing
    ``None`` for a field removes it from the stored document.
    """

    model_config = ConfigDict(populate_by_name=True)

    legacy_connection: ConnectionDescriptor | None = Field(default=None, alias="database_connection")
    persist_legacy_connection: bool | None = Field(default=None, alias="save_database_connection")
    global_images_path: str | None = Field(default=None, alias="blog_images_path")
    global_content_files_path: str | None = Field(default=None, alias="blog_folder_path")
    profiles: tuple[Profile, ...] | None = None
    current_profile_name: str | None = Field(default=None, alias="current_profile")

    def to_raw(self) -> dict[str, object]:
        """Map explicitly set fields to their persisted keys and plain values."""

        raw: dict[str, object] = {}
        for name in sorted(self.model_fields_set):
            field = type(self).model_fields[name]
            raw[field.alias or name] = _plain(getattr(self, name))
        return raw


SettingsMutator = Callable[[SettingsDocument], SettingsPatch | None]


def merge_raw(raw: Mapping[str, object], patch: SettingsPatch) -> dict[str, object]:
    """Apply a patch on top of decoded file contents, keeping untouched keys."""

    merged = dict(raw)
    for key, value in patch.to_raw().items():
        if value is None:
            merged.pop(key, None)
        else:
            merged[key] = value
    return merged


class ConfigStore:
    """Reads and writes the settings document on disk.

    Every read-modify-write runs under one lock so concurrent saves touching
    different fields all survive. Saves racing on the same field resolve in
    whatever order they acquire the lock.

    Until the TOML file exists, reads fall back to the JSON file written by
    releases that predate profiles. That file is never modified; the first
    save copies its contents into the TOML file.
    """

    def __init__(self, path: Path | None = None, legacy_path: Path | None = None) -> None:
        self._path = path or SETTINGS_FILE
        self._legacy_path = legacy_path or self._path.with_name(LEGACY_SETTINGS_NAME)
        self._lock = asyncio.Lock()

    @property
    def path(self) -> Path:
        """Location of the settings file."""

        return self._path

    @property
    def legacy_path(self) -> Path:
        """Location of the JSON settings file read when ``path`` is missing."""

        return self._legacy_path

    async def load(self) -> SettingsDocument:
        """Return the stored document; an empty one when no file exists yet."""

        async with self._lock:
            raw = await asyncio.to_thread(self._read_raw)
        return SettingsDocument.from_raw(raw)

    async def save(self, patch: SettingsPatch) -> SettingsDocument:
        """Merge ``patch`` into the stored document."""

        return await self.update(lambda _document: patch)

    async def update(self, mutator: SettingsMutator) -> SettingsDocument:
        """Atomically derive a patch from the current document and store it.

        ``mutator`` runs while the lock is held; exceptions it raises abort the
        update without writing anything.
        """

        async with self._lock:
            raw = await asyncio.to_thread(self._read_raw)
            document = SettingsDocument.from_raw(raw)
            patch = mutator(document)
            if patch is None:
                return document
            merged = merge_raw(raw, patch)
            await asyncio.to_thread(self._write_raw, merged)
        LOG.debug(
            "Settings saved",
            extra={"path": str(self._path), "fields": sorted(patch.to_raw())},
        )
        return SettingsDocument.from_raw(merged)

    def _read_raw(self) -> dict[str, object]:
        try:
            with self._path.open("rb") as handle:
                data = tomllib.load(handle)
        except FileNotFoundError:
            return self._read_legacy_json()
        except tomllib.TOMLDecodeError as exc:
            raise PersistenceError(f"Settings file {self._path} is not valid TOML: {exc}") from exc
        except OSError as exc:
            raise PersistenceError(f"Failed to read settings from {self._path}: {exc}") from exc
        return dict(data)

    def _read_legacy_json(self) -> dict[str, object]:
        try:
            data = json.loads(self._legacy_path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}
        except ValueError as exc:
            raise PersistenceError(f"Settings file {self._legacy_path} is not valid JSON: {exc}") from exc
        except OSError as exc:
            raise PersistenceError(f"Failed to read settings from {self._legacy_path}: {exc}") from exc
        if not isinstance(data, dict):
            raise PersistenceError(f"Settings file {self._legacy_path} does not hold an object")
        LOG.info("Reading settings from older JSON file", extra={"path": str(self._legacy_path)})
        # JSON null marks an absent field; TOML has no null.
        return {key: value for key, value in data.items() if value is not None}

    def _write_raw(self, raw: Mapping[str, object]) -> None:
        try:
            content = dump_toml(raw)
        except (TypeError, ValueError) as exc:
            raise PersistenceError(f"Settings for {self._path} cannot be written as TOML: {exc}") from exc
        scratch = self._path.with_name(self._path.name + ".tmp")
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            scratch.write_text(content, encoding="utf-8")
            os.replace(scratch, self._path)
        except OSError as exc:
            raise PersistenceError(f"Failed to write settings to {self._path}: {exc}") from exc


def dump_toml(data: Mapping[str, object]) -> str:
    """Serialise plain mappings (as produced by ``tomllib``) back to TOML."""

    lines: list[str] = []
    _emit_values(lines, data)
    for key, value in data.items():
        if isinstance(value, Mapping):
            _emit_table(lines, (key,), value, array=False)
        elif _is_table_array(value):
            for item in value:  # type: ignore[union-attr]
                _emit_table(lines, (key,), item, array=True)
    return "\n".join(lines).strip("\n") + "\n"


def _emit_table(
    lines: list[str],
    path: tuple[str, ...],
    table: Mapping[str, object],
    *,
    array: bool,
) -> None:
    header = ".".join(_format_key(part) for part in path)
    lines.append("")
    lines.append(f"[[{header}]]" if array else f"[{header}]")
    _emit_values(lines, table)
    for key, value in table.items():
        if isinstance(value, Mapping):
            _emit_table(lines, path + (key,), value, array=False)
        elif _is_table_array(value):
            for item in value:  # type: ignore[union-attr]
                _emit_table(lines, path + (key,), item, array=True)


def _emit_values(lines: list[str], table: Mapping[str, object]) -> None:
    for key, value in table.items():
        if value is None or isinstance(value, Mapping) or _is_table_array(value):
            continue
        lines.append(f"{_format_key(key)} = {_format_value(value)}")


def _is_table_array(value: object) -> bool:
    return (
        isinstance(value, (list, tuple))
        and bool(value)
        and all(isinstance(item, Mapping) for item in value)
    )


_BARE_KEY = re.compile(r"^[A-Za-z0-9_-]+$")
_ESCAPES = {'"': '\\"', "\\": "\\\\", "\b": "\\b", "\t": "\\t", "\n": "\\n", "\f": "\\f", "\r": "\\r"}


def _format_key(key: str) -> str:
    return key if _BARE_KEY.match(key) else _quote(key)


def _quote(text: str) -> str:
    chunks: list[str] = []
    for char in text:
        if char in _ESCAPES:
            chunks.append(_ESCAPES[char])
        elif ord(char) < 0x20 or ord(char) == 0x7F:
            chunks.append(f"\\u{ord(char):04x}")
        else:
            chunks.append(char)
    return '"' + "".join(chunks) + '"'


def _format_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        if math.isnan(value):
            return "nan"
        if math.isinf(value):
            return "inf" if value > 0 else "-inf"
        return repr(value)
    if isinstance(value, str):
        return _quote(value)
    if isinstance(value, (datetime, date, time)):
        return value.isoformat()
    if isinstance(value, (list, tuple)):
        items = ", ".join(_format_value(item) for item in value if item is not None)
        return f"[{items}]"
    if isinstance(value, Mapping):
        pairs = ", ".join(
            f"{_format_key(key)} = {_format_value(item)}" for key, item in value.items() if item is not None
        )
        return f"{{{pairs}}}"
    raise TypeError(f"Cannot serialise {type(value).__name__} to TOML")


def _plain(value: object) -> object:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json", by_alias=True, exclude_none=True)
    if isinstance(value, (list, tuple)):
        return [_plain(item) for item in value]
    return value


__all__ = [
    "ConfigStore",
    "LEGACY_SETTINGS_NAME",
    "LegacyBlock",
    "ProfilesBlock",
    "SETTINGS_FILE",
    "SettingsDocument",
    "SettingsMutator",
    "SettingsPatch",
    "dump_toml",
    "merge_raw",
]
