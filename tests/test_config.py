"""Tests for the settings store."""

from __future__ import annotations

import asyncio
from pathlib import Path

import tomllib

import pytest

from contentdesk import config as config_module
from contentdesk.config import ConfigStore, SettingsDocument, SettingsPatch, dump_toml
from contentdesk.models import ConnectionDescriptor, PersistenceError, Profile


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def settings_path(tmp_path: Path) -> Path:
    return tmp_path / "contentdesk" / "settings.toml"


@pytest.mark.anyio
async def test_load_returns_empty_document_when_missing(settings_path: Path) -> None:
    store = ConfigStore(settings_path)

    document = await store.load()

    assert document == SettingsDocument()
    assert document.current.profiles == ()
    assert document.legacy.usable is False
    assert not settings_path.exists()


@pytest.mark.anyio
async def test_default_path_comes_from_module_constant(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(config_module, "SETTINGS_FILE", tmp_path / "settings.toml")

    store = ConfigStore()

    assert store.path == tmp_path / "settings.toml"


@pytest.mark.anyio
async def test_load_reads_files_written_before_profiles_existed(settings_path: Path) -> None:
    settings_path.parent.mkdir(parents=True)
    settings_path.write_text(
        """
blog_images_path = "/srv/images"
blog_folder_path = "/srv/posts"
save_database_connection = true

[database_connection]
host = "db.internal"
port = 5433
database = "blog"
username = "writer"
password = "s3cret"
"""
    )
    store = ConfigStore(settings_path)

    document = await store.load()

    assert document.legacy.persist_connection is True
    assert document.legacy.images_path == "/srv/images"
    assert document.legacy.content_files_path == "/srv/posts"
    assert document.legacy.connection == ConnectionDescriptor(
        host="db.internal", port="5433", database="blog", username="writer", password="s3cret"
    )
    assert document.legacy.usable is True


@pytest.mark.anyio
async def test_partial_saves_keep_sibling_fields(settings_path: Path) -> None:
    store = ConfigStore(settings_path)
    await store.save(SettingsPatch(current_profile_name="Home", global_content_files_path="/posts"))

    await store.save(SettingsPatch(global_images_path="/images"))
    await store.save(SettingsPatch(persist_legacy_connection=False))
    document = await store.load()

    assert document.legacy.images_path == "/images"
    assert document.legacy.persist_connection is False
    assert document.legacy.content_files_path == "/posts"
    assert document.current.current_profile_name == "Home"


@pytest.mark.anyio
async def test_concurrent_saves_to_different_fields_both_survive(settings_path: Path) -> None:
    store = ConfigStore(settings_path)

    await asyncio.gather(
        store.save(SettingsPatch(global_images_path="/images")),
        store.save(SettingsPatch(global_content_files_path="/posts")),
    )
    document = await store.load()

    assert document.legacy.images_path == "/images"
    assert document.legacy.content_files_path == "/posts"


@pytest.mark.anyio
async def test_save_with_none_removes_the_field(settings_path: Path) -> None:
    store = ConfigStore(settings_path)
    connection = ConnectionDescriptor(host="localhost", port="5432", database="db", username="u")
    await store.save(SettingsPatch(legacy_connection=connection, persist_legacy_connection=True))

    await store.save(SettingsPatch(legacy_connection=None, persist_legacy_connection=False))
    raw = tomllib.loads(settings_path.read_text())

    assert "database_connection" not in raw
    assert raw["save_database_connection"] is False


@pytest.mark.anyio
async def test_unknown_keys_survive_writes(settings_path: Path) -> None:
    settings_path.parent.mkdir(parents=True)
    settings_path.write_text(
        """
theme = "light"

[window]
width = 1280
maximized = false
"""
    )
    store = ConfigStore(settings_path)

    await store.save(SettingsPatch(global_images_path="/images"))
    with settings_path.open("rb") as handle:
        raw = tomllib.load(handle)

    assert raw["theme"] == "light"
    assert raw["window"] == {"width": 1280, "maximized": False}
    assert raw["blog_images_path"] == "/images"
    document = await store.load()
    assert document.extra == {"theme": "light", "window": {"width": 1280, "maximized": False}}


@pytest.mark.anyio
async def test_profiles_are_written_as_tables(settings_path: Path) -> None:
    store = ConfigStore(settings_path)
    profile = Profile(
        name="Home",
        connection=ConnectionDescriptor(
            host="localhost", port="5432", database="db1", username="u", password='p"@\\x'
        ),
        images_path="/home/images",
    )

    await store.save(SettingsPatch(profiles=(profile,), current_profile_name="Home"))
    content = settings_path.read_text()
    document = await store.load()

    assert "[[profiles]]" in content
    assert "[profiles.database_connection]" in content
    assert 'current_profile = "Home"' in content
    assert document.current.profiles == (profile,)
    assert document.current.profiles[0].connection.password == 'p"@\\x'


@pytest.mark.anyio
async def test_update_without_changes_does_not_write(settings_path: Path) -> None:
    store = ConfigStore(settings_path)

    document = await store.update(lambda _document: None)

    assert document == SettingsDocument()
    assert not settings_path.exists()


@pytest.mark.anyio
async def test_update_aborts_when_mutator_raises(settings_path: Path) -> None:
    store = ConfigStore(settings_path)
    await store.save(SettingsPatch(global_images_path="/images"))

    def _explode(document: SettingsDocument) -> SettingsPatch:
        raise LookupError("nope")

    with pytest.raises(LookupError):
        await store.update(_explode)

    document = await store.load()
    assert document.legacy.images_path == "/images"


@pytest.mark.anyio
async def test_invalid_toml_raises_persistence_error(settings_path: Path) -> None:
    settings_path.parent.mkdir(parents=True)
    settings_path.write_text("current_profile = [unterminated")
    store = ConfigStore(settings_path)

    with pytest.raises(PersistenceError):
        await store.load()
    with pytest.raises(PersistenceError):
        await store.save(SettingsPatch(global_images_path="/images"))

    assert settings_path.read_text() == "current_profile = [unterminated"


@pytest.mark.anyio
async def test_malformed_profile_entries_are_skipped(settings_path: Path) -> None:
    settings_path.parent.mkdir(parents=True)
    settings_path.write_text(
        """
[[profiles]]
name = ""

[[profiles]]
name = "Work"

[profiles.database_connection]
host = "work.example"
port = "5432"
database = "cms"
username = "editor"
"""
    )
    store = ConfigStore(settings_path)

    document = await store.load()

    assert [profile.name for profile in document.current.profiles] == ["Work"]
    assert document.current.profiles[0].connection.host == "work.example"


def test_dump_toml_quotes_keys_and_control_characters() -> None:
    content = dump_toml({"plain": "a\tb\x7f", "needs quoting": 1, "flags": [True, False]})

    assert tomllib.loads(content) == {"plain": "a\tb\x7f", "needs quoting": 1, "flags": [True, False]}
    assert '"needs quoting" = 1' in content


def test_dump_toml_writes_tables_inside_mixed_arrays_inline() -> None:
    data = {"recent": [1, {"a": 1, "nested": {"b": "x"}}], "pairs": [[1, 2], {"c": True}]}

    content = dump_toml(data)

    assert tomllib.loads(content) == data


@pytest.mark.anyio
async def test_mixed_arrays_survive_writes(settings_path: Path) -> None:
    settings_path.parent.mkdir(parents=True)
    settings_path.write_text("recent = [1, {a = 1}]\n")
    store = ConfigStore(settings_path)

    await store.save(SettingsPatch(global_images_path="/srv/images"))
    raw = tomllib.loads(settings_path.read_text())

    assert raw["recent"] == [1, {"a": 1}]
    assert raw["blog_images_path"] == "/srv/images"


@pytest.mark.anyio
async def test_unserialisable_settings_raise_persistence_error(
    settings_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    settings_path.parent.mkdir(parents=True)
    settings_path.write_text('theme = "light"\n')

    def _refuse(data: object) -> str:
        raise TypeError("Cannot serialise set to TOML")

    monkeypatch.setattr(config_module, "dump_toml", _refuse)
    store = ConfigStore(settings_path)

    with pytest.raises(PersistenceError, match="cannot be written as TOML"):
        await store.save(SettingsPatch(global_images_path="/srv/images"))
    assert settings_path.read_text() == 'theme = "light"\n'
    assert not settings_path.with_name("settings.toml.tmp").exists()


LEGACY_JSON = """{
  "blog_images_path": "/srv/images",
  "blog_folder_path": null,
  "database_connection": {
    "host": "db.internal",
    "port": "5433",
    "database": "blog",
    "username": "writer",
    "password": "s3cret"
  },
  "save_database_connection": true
}"""


@pytest.mark.anyio
async def test_load_falls_back_to_json_settings_from_earlier_releases(settings_path: Path) -> None:
    settings_path.parent.mkdir(parents=True)
    legacy_file = settings_path.with_name("settings.json")
    legacy_file.write_text(LEGACY_JSON)
    store = ConfigStore(settings_path)

    document = await store.load()

    assert store.legacy_path == legacy_file
    assert document.legacy.usable is True
    assert document.legacy.images_path == "/srv/images"
    assert document.legacy.content_files_path is None
    assert document.legacy.connection == ConnectionDescriptor(
        host="db.internal", port="5433", database="blog", username="writer", password="s3cret"
    )


@pytest.mark.anyio
async def test_first_save_copies_json_settings_and_leaves_them_untouched(settings_path: Path) -> None:
    settings_path.parent.mkdir(parents=True)
    legacy_file = settings_path.with_name("settings.json")
    legacy_file.write_text(LEGACY_JSON)
    store = ConfigStore(settings_path)

    await store.save(SettingsPatch(current_profile_name=None))
    raw = tomllib.loads(settings_path.read_text())

    assert legacy_file.read_text() == LEGACY_JSON
    assert raw["blog_images_path"] == "/srv/images"
    assert raw["save_database_connection"] is True
    assert raw["database_connection"]["host"] == "db.internal"
    assert "blog_folder_path" not in raw


@pytest.mark.anyio
async def test_toml_settings_take_precedence_over_json(settings_path: Path) -> None:
    settings_path.parent.mkdir(parents=True)
    settings_path.with_name("settings.json").write_text(LEGACY_JSON)
    settings_path.write_text('blog_images_path = "/new/images"\n')
    store = ConfigStore(settings_path)

    document = await store.load()

    assert document.legacy.images_path == "/new/images"
    assert document.legacy.connection is None


@pytest.mark.anyio
async def test_invalid_json_settings_raise_persistence_error(settings_path: Path) -> None:
    settings_path.parent.mkdir(parents=True)
    settings_path.with_name("settings.json").write_text("{not json")
    store = ConfigStore(settings_path)

    with pytest.raises(PersistenceError, match="not valid JSON"):
        await store.load()
