"""Authentication state machine.

Sequences discovery, authorization, the callback wait, the token exchange and
persistence for an interactive login, and restores a stored session at
startup. Every step is an explicit state so callers (and tests) can observe
where an attempt is and where it failed.
"""

import asyncio
import logging
import secrets
import webbrowser
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple, Type, Union

from aiohttp import ClientSession
import sentry_sdk

from social.skyscraper.app.config import Settings
from social.skyscraper.atproto.app_password import create_session, refresh_session
from social.skyscraper.atproto.callback import CallbackListener
from social.skyscraper.atproto.errors import (
    InvalidTransition,
    LoginInProgress,
    SessionCorrupt,
)
from social.skyscraper.atproto.oauth import (
    AuthorizationRequester,
    TokenExchanger,
    loopback_client_id,
    open_in_browser,
)
from social.skyscraper.model.oauth import FlowState, ServerEndpoints
from social.skyscraper.model.session import SessionKind, SessionRecord, SessionStore
from social.skyscraper.resolve.handle import ServerDiscovery

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Idle:
    pass


@dataclass(frozen=True)
class Discovering:
    handle: str


@dataclass(frozen=True)
class AwaitingAuthorization:
    endpoints: ServerEndpoints


@dataclass(frozen=True)
class AwaitingCallback:
    flow: FlowState
    authorization_url: str


@dataclass(frozen=True)
class Exchanging:
    flow: FlowState


@dataclass(frozen=True)
class Authenticated:
    session: SessionRecord


@dataclass(frozen=True)
class Failed:
    reason: str
    error: Optional[BaseException] = None


AuthState = Union[
    Idle,
    Discovering,
    AwaitingAuthorization,
    AwaitingCallback,
    Exchanging,
    Authenticated,
    Failed,
]

IN_FLIGHT_STATES: Tuple[Type, ...] = (
    Discovering,
    AwaitingAuthorization,
    AwaitingCallback,
    Exchanging,
)

# Discovering -> Authenticated is the app password login, which has no
# browser step.
ALLOWED_TRANSITIONS: Dict[Type, Tuple[Type, ...]] = {
    Idle: (Discovering, Authenticated),
    Discovering: (AwaitingAuthorization, Authenticated, Failed),
    AwaitingAuthorization: (AwaitingCallback, Failed),
    AwaitingCallback: (Exchanging, Failed),
    Exchanging: (Authenticated, Failed),
    Authenticated: (Discovering, Idle),
    Failed: (Discovering, Authenticated, Idle),
}

TransitionCallback = Callable[[AuthState, AuthState], None]


class AuthOrchestrator:
    """Drives one authentication attempt at a time.

    ``login`` raises on failure after recording a ``Failed`` state so the caller
    can show the reason and prompt again. ``restore`` never raises: any problem
    with the stored session leaves the orchestrator ``Idle``.
    """

    def __init__(
        self,
        settings: Settings,
        http_session: ClientSession,
        store: SessionStore,
        discovery: Optional[ServerDiscovery] = None,
        requester: Optional[AuthorizationRequester] = None,
        exchanger: Optional[TokenExchanger] = None,
        browser_opener: Callable[[str], bool] = webbrowser.open,
    ) -> None:
        self._settings = settings
        self._http_session = http_session
        self._store = store
        self._discovery = discovery or ServerDiscovery(
            http_session, settings.service, settings.plc_directory
        )
        self._requester = requester or AuthorizationRequester(
            http_session, settings.dpop_nonce_attempts
        )
        self._exchanger = exchanger or TokenExchanger(
            http_session, settings.dpop_nonce_attempts
        )
        self._browser_opener = browser_opener

        self._state: AuthState = Idle()
        self._observers: List[TransitionCallback] = []
        self._lock = asyncio.Lock()

    @property
    def state(self) -> AuthState:
        return self._state

    @property
    def session(self) -> Optional[SessionRecord]:
        if isinstance(self._state, Authenticated):
            return self._state.session
        return None

    def on_transition(self, callback: TransitionCallback) -> None:
        self._observers.append(callback)

    def _transition(self, new_state: AuthState) -> None:
        old_state = self._state
        if type(new_state) not in ALLOWED_TRANSITIONS[type(old_state)]:
            raise InvalidTransition(
                f"Cannot move from {type(old_state).__name__} "
                f"to {type(new_state).__name__}"
            )

        self._state = new_state
        logger.debug(
            "Auth state %s -> %s", type(old_state).__name__, type(new_state).__name__
        )
        for callback in self._observers:
            callback(old_state, new_state)

    def _fail(self, error: BaseException) -> None:
        if isinstance(self._state, IN_FLIGHT_STATES):
            self._transition(Failed(reason=str(error) or type(error).__name__, error=error))

    def _reset(self) -> None:
        if not isinstance(self._state, Idle):
            self._transition(Idle())

    async def login(
        self,
        handle: str,
        on_authorization_url: Optional[Callable[[str], None]] = None,
    ) -> SessionRecord:
        """Run the OAuth login for ``handle`` and store the resulting session.

        Args:
            handle: Handle or DID to log in as
            on_authorization_url: Called with the authorization URL before the
                browser is opened, so it can be shown to the user

        Raises:
            LoginInProgress: If another attempt is running.
            AuthError: Any failure of the attempt. The state is ``Failed``.
        """
        if self._lock.locked():
            raise LoginInProgress("A login attempt is already in progress")

        async with self._lock:
            self._transition(Discovering(handle=handle))
            try:
                return await self._oauth_login(handle, on_authorization_url)
            except BaseException as e:
                self._fail(e)
                raise

    async def _oauth_login(
        self,
        handle: str,
        on_authorization_url: Optional[Callable[[str], None]],
    ) -> SessionRecord:
        settings = self._settings

        endpoints = await self._discovery.discover(handle)
        self._transition(AwaitingAuthorization(endpoints=endpoints))

        state = secrets.token_urlsafe(32)
        async with CallbackListener(
            state,
            host=settings.callback_host,
            port=settings.callback_port,
            path=settings.callback_path,
            timeout=settings.callback_timeout,
        ) as listener:
            flow = FlowState.create(
                endpoints,
                client_id=settings.client_id
                or loopback_client_id(listener.redirect_uri, settings.scope),
                redirect_uri=listener.redirect_uri,
                scope=settings.scope,
                state=state,
            )
            logger.info("[%s] Starting OAuth login for %s", flow.attempt_id, handle)

            authorization_url = await self._requester.build_authorization_url(flow)
            if on_authorization_url is not None:
                on_authorization_url(authorization_url)
            if settings.open_browser:
                await asyncio.to_thread(
                    open_in_browser, authorization_url, self._browser_opener
                )

            self._transition(
                AwaitingCallback(flow=flow, authorization_url=authorization_url)
            )
            authorization_code = await listener.wait()

        self._transition(Exchanging(flow=flow))
        tokens = await self._exchanger.exchange(flow, authorization_code.code)

        record = SessionRecord(
            did=tokens.did,
            handle=endpoints.handle,
            access_jwt=tokens.access_token,
            refresh_jwt=tokens.refresh_token or "",
            pds_endpoint=endpoints.pds,
            kind=SessionKind.oauth,
        )
        self._store.save(record)
        self._transition(Authenticated(session=record))
        logger.info("[%s] Logged in as %s", flow.attempt_id, record.handle)
        return record

    async def login_app_password(self, handle: str, password: str) -> SessionRecord:
        """Log in with an app password and store the server-issued tokens.

        Raises:
            LoginInProgress: If another attempt is running.
            AuthError: Any failure of the attempt. The state is ``Failed``.
        """
        if self._lock.locked():
            raise LoginInProgress("A login attempt is already in progress")

        async with self._lock:
            self._transition(Discovering(handle=handle))
            try:
                record = await create_session(
                    self._http_session, self._settings.service, handle, password
                )
                self._store.save(record)
            except BaseException as e:
                self._fail(e)
                raise
            self._transition(Authenticated(session=record))
            logger.info("Logged in as %s with an app password", record.handle)
            return record

    async def restore(self) -> Optional[SessionRecord]:
        """Restore the stored session, if any, by refreshing it.

        Returns:
            The refreshed session, or None when the user has to log in. OAuth
            sessions always need a new login. Never raises for a missing,
            corrupt or rejected session.
        """
        if isinstance(self._state, Authenticated):
            return self._state.session
        if self._lock.locked():
            return None

        async with self._lock:
            try:
                stored = self._store.load()
            except SessionCorrupt as e:
                sentry_sdk.capture_exception(e)
                logger.warning("Ignoring unreadable session: %s", e)
                self._reset()
                return None

            if stored is None:
                logger.info("No saved session found")
                self._reset()
                return None

            logger.info("Found saved session for %s", stored.handle)
            if stored.kind == SessionKind.oauth:
                logger.info(
                    "Saved OAuth session for %s cannot be renewed, login required",
                    stored.handle,
                )
                self._reset()
                return None

            try:
                refreshed = await refresh_session(
                    self._http_session,
                    stored.pds_endpoint or self._settings.service,
                    stored,
                )
                self._store.save(refreshed)
            except Exception as e:
                sentry_sdk.capture_exception(e)
                logger.warning("Failed to restore session: %s", e)
                self._reset()
                return None

            self._transition(Authenticated(session=refreshed))
            logger.info("Session restored for %s", refreshed.handle)
            return refreshed

    async def logout(self) -> None:
        """Forget the stored session.

        Raises:
            LoginInProgress: If a login attempt is running.
            SessionIOError: If the session file cannot be removed.
        """
        if self._lock.locked():
            raise LoginInProgress("A login attempt is in progress")

        self._store.clear()
        self._reset()
