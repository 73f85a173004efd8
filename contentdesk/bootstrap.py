"""Launch-time state machine that picks an entry screen and opens the session."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
import logging
from typing import Callable

from .config import ConfigStore, SettingsDocument
from .connections import DEFAULT_SCHEME, ConnectionGateway, build_dsn
from .models import (
    ConnectionDescriptor,
    ConnectionGatewayError,
    EmptyNameError,
    IncompleteDescriptorError,
    PersistenceError,
    Profile,
    ProfileNotFoundError,
)
from .profiles import ProfileRegistry, profiles_for

LOG = logging.getLogger(__name__)

DEFAULT_CONNECTION = ConnectionDescriptor(
    host="localhost",
    port="5432",
    database="postgres",
    username="postgres",
)


class Screen(str, Enum):
    """Entry screens and connection phases the shell renders."""

    INIT = "init"
    PROFILE_SELECTION = "profile_selection"
    AUTO_CONNECT_READY = "auto_connect_ready"
    MANUAL_ENTRY = "manual_entry"
    CONNECTING = "connecting"
    CONNECTED = "connected"


@dataclass(frozen=True, slots=True)
class ManualConnectionForm:
    """Values typed into the manual connection form."""

    connection: ConnectionDescriptor = field(default_factory=lambda: DEFAULT_CONNECTION)
    save_as_profile: bool = False
    profile_name: str = ""
    save_connection: bool = False
    images_path: str | None = None
    content_files_path: str | None = None


@dataclass(frozen=True, slots=True)
class ProfileSource:
    profile_name: str


@dataclass(frozen=True, slots=True)
class LegacySource:
    connection: ConnectionDescriptor


@dataclass(frozen=True, slots=True)
class ManualSource:
    form: ManualConnectionForm


ConnectionSource = ProfileSource | LegacySource | ManualSource


@dataclass(frozen=True, slots=True)
class Idle:
    """No session and no attempt in flight."""


@dataclass(frozen=True, slots=True)
class Connecting:
    """A connection attempt is in flight."""

    source: ConnectionSource


@dataclass(frozen=True, slots=True)
class Connected:
    """The backend session is open."""

    profile_name: str | None = None


@dataclass(frozen=True, slots=True)
class Failed:
    """The last attempt failed; the user may resubmit."""

    reason: str


ConnectionSession = Idle | Connecting | Connected | Failed


@dataclass(frozen=True, slots=True)
class BootstrapState:
    """Snapshot handed to the shell on every transition."""

    screen: Screen
    session: ConnectionSession = field(default_factory=Idle)
    profiles: tuple[Profile, ...] = ()
    current_profile_name: str | None = None
    legacy_connection: ConnectionDescriptor | None = None
    form: ManualConnectionForm | None = None
    error: str | None = None


StateListener = Callable[[BootstrapState], None]
ConnectedListener = Callable[[str | None], None]

_SELECTION_SCREENS = (Screen.PROFILE_SELECTION, Screen.AUTO_CONNECT_READY)


class BootstrapOrchestrator:
    """Owns the single backend session and the launch decision flow.

    Connection requests are accepted only from the screen that offers them and
    only while no attempt is in flight and no session is open; anything else is
    ignored. Switching profiles while connected always releases the open
    session before dialing the next one.
    """

    def __init__(
        self,
        registry: ProfileRegistry,
        gateway: ConnectionGateway,
        *,
        connect_timeout: float = 10.0,
        scheme: str = DEFAULT_SCHEME,
    ) -> None:
        self._registry = registry
        self._store: ConfigStore = registry.store
        self._gateway = gateway
        self._connect_timeout = connect_timeout
        self._scheme = scheme
        self._state = BootstrapState(screen=Screen.INIT)
        self._manual_origin: Screen | None = None
        self._listeners: set[StateListener] = set()
        self._connected_listeners: set[ConnectedListener] = set()

    @property
    def state(self) -> BootstrapState:
        """Current snapshot."""

        return self._state

    @property
    def session(self) -> ConnectionSession:
        return self._state.session

    @property
    def is_connected(self) -> bool:
        return isinstance(self._state.session, Connected)

    @property
    def can_connect(self) -> bool:
        """Whether the current screen may start a connection attempt."""

        if isinstance(self._state.session, (Connecting, Connected)):
            return False
        return self._state.screen in (*_SELECTION_SCREENS, Screen.MANUAL_ENTRY)

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        """Subscribe to snapshot changes; returns an unsubscribe handle."""

        self._listeners.add(listener)
        listener(self._state)

        def _unsubscribe() -> None:
            self._listeners.discard(listener)

        return _unsubscribe

    def subscribe_connected(self, listener: ConnectedListener) -> Callable[[], None]:
        """Subscribe to successful connections (receives the profile name, if any)."""

        self._connected_listeners.add(listener)

        def _unsubscribe() -> None:
            self._connected_listeners.discard(listener)

        return _unsubscribe

    async def start(self) -> BootstrapState:
        """Load saved settings and pick the entry screen.

        When the gateway already holds a live session the entry screens are
        skipped and the orchestrator reports ``CONNECTED`` straight away.
        """

        if self._session_active():
            LOG.debug("Ignoring bootstrap while a session is active")
            return self._state
        self._manual_origin = None
        self._set(BootstrapState(screen=Screen.INIT))
        document, profiles = await asyncio.gather(
            self._store.load(), self._registry.list(), return_exceptions=True
        )
        for result in (document, profiles):
            if isinstance(result, BaseException) and not isinstance(result, PersistenceError):
                raise result
        if await self._gateway.check():
            return self._adopt_open_session(document, profiles)
        for result in (document, profiles):
            if isinstance(result, PersistenceError):
                LOG.warning("Saved settings unavailable, falling back to manual entry", extra={"error": str(result)})
                return self._set(
                    BootstrapState(screen=Screen.MANUAL_ENTRY, form=ManualConnectionForm(), error=str(result))
                )
        state = self._entry_state(document, profiles)  # type: ignore[arg-type]
        LOG.info("Bootstrap ready", extra={"screen": state.screen.value, "profiles": len(state.profiles)})
        return self._set(state)

    async def connect_profile(self, name: str) -> BootstrapState:
        """Connect with a saved profile from the selection screen."""

        if not self._accepts(Screen.PROFILE_SELECTION):
            return self._state
        try:
            profile = self._find_profile(name)
            dsn = build_dsn(profile.connection, scheme=self._scheme)
        except (ProfileNotFoundError, IncompleteDescriptorError) as exc:
            self._set(replace(self._state, error=str(exc)))
            raise
        return await self._connect(ProfileSource(profile.name), dsn, self._state)

    async def connect_legacy(self) -> BootstrapState:
        """Connect with the remembered unnamed connection."""

        if not self._accepts(Screen.AUTO_CONNECT_READY):
            return self._state
        connection = self._state.legacy_connection
        if connection is None:  # pragma: no cover - screen is only entered with a connection
            return self._state
        dsn = build_dsn(connection, scheme=self._scheme)
        return await self._connect(LegacySource(connection), dsn, self._state)

    async def submit_manual(self, form: ManualConnectionForm) -> BootstrapState:
        """Connect with the values typed into the manual form.

        Raises :class:`EmptyNameError` or :class:`IncompleteDescriptorError`
        without dialing; the form stays on the snapshot either way.
        """

        if not self._accepts(Screen.MANUAL_ENTRY):
            return self._state
        try:
            if form.save_as_profile and not form.profile_name.strip():
                raise EmptyNameError()
            dsn = build_dsn(form.connection, scheme=self._scheme)
        except (EmptyNameError, IncompleteDescriptorError) as exc:
            self._set(replace(self._state, form=form, error=str(exc)))
            raise
        return await self._connect(ManualSource(form), dsn, replace(self._state, form=form))

    def request_manual_entry(self) -> BootstrapState:
        """Open the manual form from the profile list or auto-connect screen."""

        if not self._accepts(*_SELECTION_SCREENS):
            return self._state
        self._manual_origin = self._state.screen
        form = ManualConnectionForm()
        if self._state.screen is Screen.AUTO_CONNECT_READY and self._state.legacy_connection is not None:
            form = ManualConnectionForm(connection=self._state.legacy_connection, save_connection=True)
        return self._set(
            replace(self._state, screen=Screen.MANUAL_ENTRY, session=Idle(), form=form, error=None)
        )

    def leave_manual_entry(self) -> BootstrapState:
        """Go back to the screen the manual form was opened from."""

        if self._state.screen is not Screen.MANUAL_ENTRY or self._manual_origin is None:
            return self._state
        if self._session_active():
            return self._state
        origin, self._manual_origin = self._manual_origin, None
        return self._set(replace(self._state, screen=origin, session=Idle(), form=None, error=None))

    async def forget_legacy(self) -> BootstrapState:
        """Clear the remembered connection and continue with manual entry."""

        if not self._accepts(Screen.AUTO_CONNECT_READY):
            return self._state
        try:
            await self._registry.forget_legacy_connection()
        except PersistenceError as exc:
            self._set(replace(self._state, error=str(exc)))
            raise
        self._manual_origin = None
        return self._set(
            BootstrapState(
                screen=Screen.MANUAL_ENTRY,
                form=ManualConnectionForm(),
                current_profile_name=self._state.current_profile_name,
            )
        )

    async def switch_profile(self, name: str) -> BootstrapState:
        """Close the open session and connect with another saved profile."""

        if not isinstance(self._state.session, Connected):
            LOG.debug("Ignoring profile switch without an open session", extra={"profile": name})
            return self._state
        profile = self._find_profile(name)
        dsn = build_dsn(profile.connection, scheme=self._scheme)
        origin = replace(self._state, screen=Screen.PROFILE_SELECTION, session=Idle(), form=None, error=None)
        return await self._connect(ProfileSource(profile.name), dsn, origin, release_first=True)

    async def logout(self) -> BootstrapState:
        """Close the session and return to the launch decision."""

        if isinstance(self._state.session, Connecting):
            LOG.debug("Ignoring logout while a connection attempt is in flight")
            return self._state
        if isinstance(self._state.session, Connected):
            await self._gateway.disconnect()
            LOG.info("Logged out", extra={"profile": self._state.session.profile_name})
        self._set(BootstrapState(screen=Screen.INIT))
        return await self.start()

    async def check_connection(self) -> bool:
        """Ask the gateway whether the open session still answers."""

        if not isinstance(self._state.session, Connected):
            return False
        return await self._gateway.check()

    async def list_profiles(self) -> list[Profile]:
        return await self._registry.list()

    async def current_profile(self) -> Profile | None:
        return await self._registry.get_current()

    async def save_profile(self, profile: Profile) -> Profile:
        saved = await self._registry.upsert(profile)
        await self._refresh_listing()
        return saved

    async def delete_profile(self, name: str) -> None:
        await self._registry.delete(name)
        await self._refresh_listing()

    async def set_current_profile(self, name: str) -> None:
        await self._registry.set_current(name)
        await self._refresh_listing()

    async def _connect(
        self,
        source: ConnectionSource,
        dsn: str,
        origin: BootstrapState,
        *,
        release_first: bool = False,
    ) -> BootstrapState:
        # Must run up to the first await without yielding so a second request
        # observes the Connecting session.
        self._set(replace(origin, screen=Screen.CONNECTING, session=Connecting(source), error=None))
        LOG.info("Connecting", extra={"source": _describe(source)})
        try:
            if release_first:
                await self._gateway.disconnect()
            await asyncio.wait_for(self._gateway.connect(dsn), timeout=self._connect_timeout)
        except ConnectionGatewayError as exc:
            return self._fail(source, origin, exc.message)
        except TimeoutError:
            return self._fail(source, origin, f"Connection timed out after {self._connect_timeout:g} seconds.")
        except Exception as exc:
            LOG.exception("Connection gateway raised unexpectedly", extra={"source": _describe(source)})
            return self._fail(source, origin, str(exc) or exc.__class__.__name__)

        error: str | None = None
        profile_name: str | None = None
        try:
            profile_name = await self._persist_outcome(source)
        except (PersistenceError, EmptyNameError) as exc:
            LOG.error("Connected but settings were not saved", extra={"error": str(exc)})
            error = f"Connected, but settings were not saved: {exc}"
        except Exception as exc:
            LOG.exception("Saving settings after connect raised unexpectedly")
            error = f"Connected, but settings were not saved: {str(exc) or exc.__class__.__name__}"
        if profile_name is None and isinstance(source, ProfileSource):
            profile_name = source.profile_name

        listing = await self._load_listing()
        profiles, current = listing if listing is not None else (origin.profiles, origin.current_profile_name)
        state = self._set(
            BootstrapState(
                screen=Screen.CONNECTED,
                session=Connected(profile_name),
                profiles=profiles,
                current_profile_name=current,
                legacy_connection=origin.legacy_connection,
                error=error,
            )
        )
        self._announce_connected(profile_name)
        return state

    def _adopt_open_session(self, document: object, profiles: object) -> BootstrapState:
        # The gateway already holds a live session, so launch skips the entry screens.
        listing: tuple[Profile, ...] = ()
        current: str | None = None
        if isinstance(document, SettingsDocument) and isinstance(profiles, list):
            listing = tuple(profiles)
            current = document.current.current_profile_name
        profile_name = current if current is not None and any(p.name == current for p in listing) else None
        self._set(
            BootstrapState(
                screen=Screen.CONNECTED,
                session=Connected(profile_name),
                profiles=listing,
                current_profile_name=current,
            )
        )
        self._announce_connected(profile_name)
        return self._state

    def _announce_connected(self, profile_name: str | None) -> None:
        self._manual_origin = None
        LOG.info("Connected", extra={"profile": profile_name})
        for listener in tuple(self._connected_listeners):
            listener(profile_name)

    async def _persist_outcome(self, source: ConnectionSource) -> str | None:
        if isinstance(source, ProfileSource):
            try:
                await self._registry.set_current(source.profile_name)
            except ProfileNotFoundError:
                LOG.warning("Connected profile is no longer saved", extra={"profile": source.profile_name})
            return source.profile_name
        if isinstance(source, ManualSource):
            form = source.form
            if form.save_as_profile:
                profile = await self._registry.upsert(
                    Profile(
                        name=form.profile_name,
                        connection=form.connection,
                        images_path=form.images_path or None,
                        content_files_path=form.content_files_path or None,
                        created_at=datetime.now(tz=timezone.utc),
                    )
                )
                await self._registry.set_current(profile.name)
                return profile.name
            if form.save_connection:
                await self._registry.save_legacy_connection(form.connection)
            else:
                await self._registry.forget_legacy_connection()
        return None

    def _fail(self, source: ConnectionSource, origin: BootstrapState, reason: str) -> BootstrapState:
        LOG.warning("Connection attempt failed", extra={"source": _describe(source), "error": reason})
        if isinstance(source, LegacySource):
            self._manual_origin = Screen.AUTO_CONNECT_READY
            form = ManualConnectionForm(connection=source.connection, save_connection=True)
            return self._set(
                replace(origin, screen=Screen.MANUAL_ENTRY, session=Failed(reason), form=form, error=reason)
            )
        return self._set(replace(origin, session=Failed(reason), error=reason))

    async def _refresh_listing(self) -> None:
        if isinstance(self._state.session, Connecting):
            return
        try:
            document = await self._store.load()
        except PersistenceError as exc:
            LOG.warning("Could not refresh profiles", extra={"error": str(exc)})
            return
        if self._state.screen in _SELECTION_SCREENS:
            self._manual_origin = None
            self._set(self._entry_state(document, profiles_for(document)))
            return
        self._set(
            replace(
                self._state,
                profiles=tuple(profiles_for(document)),
                current_profile_name=document.current.current_profile_name,
            )
        )

    async def _load_listing(self) -> tuple[tuple[Profile, ...], str | None] | None:
        try:
            document = await self._store.load()
        except PersistenceError as exc:
            LOG.warning("Could not refresh profiles", extra={"error": str(exc)})
            return None
        return tuple(profiles_for(document)), document.current.current_profile_name

    def _entry_state(self, document: SettingsDocument, profiles: list[Profile]) -> BootstrapState:
        listing = tuple(profiles)
        current = document.current.current_profile_name
        if document.current.profiles:
            return BootstrapState(screen=Screen.PROFILE_SELECTION, profiles=listing, current_profile_name=current)
        if document.legacy.usable:
            return BootstrapState(
                screen=Screen.AUTO_CONNECT_READY,
                profiles=listing,
                current_profile_name=current,
                legacy_connection=document.legacy.connection,
            )
        return BootstrapState(
            screen=Screen.MANUAL_ENTRY,
            profiles=listing,
            current_profile_name=current,
            form=ManualConnectionForm(),
        )

    def _find_profile(self, name: str) -> Profile:
        for profile in self._state.profiles:
            if profile.name == name:
                return profile
        raise ProfileNotFoundError(name)

    def _accepts(self, *screens: Screen) -> bool:
        if self._session_active():
            LOG.debug(
                "Ignoring request while a session is active",
                extra={"session": type(self._state.session).__name__},
            )
            return False
        if self._state.screen not in screens:
            LOG.debug("Ignoring request not offered on this screen", extra={"screen": self._state.screen.value})
            return False
        return True

    def _session_active(self) -> bool:
        return isinstance(self._state.session, (Connecting, Connected))

    def _set(self, state: BootstrapState) -> BootstrapState:
        self._state = state
        for listener in tuple(self._listeners):
            listener(state)
        return state


def _describe(source: ConnectionSource) -> str:
    if isinstance(source, ProfileSource):
        return f"profile:{source.profile_name}"
    if isinstance(source, LegacySource):
        return "saved-connection"
    return "manual"


__all__ = [
    "BootstrapOrchestrator",
    "BootstrapState",
    "Connected",
    "ConnectedListener",
    "Connecting",
    "ConnectionSession",
    "ConnectionSource",
    "DEFAULT_CONNECTION",
    "Failed",
    "Idle",
    "LegacySource",
    "ManualConnectionForm",
    "ManualSource",
    "ProfileSource",
    "Screen",
    "StateListener",
]
