"""
Session Management Service.

This module defines the `SessionManager`, which owns the authentication state
of the client: restoring a persisted credential at startup, sign-in, sign-up,
sign-out, token refresh, and reacting to auth events pushed by the auth
collaborator.

Key Components:
- `SessionState`: UNAUTHENTICATED, AUTHENTICATING, AUTHENTICATED, REFRESHING.
- `SessionManager.restore`: Loads the persisted blob, refreshes it if expired
  (one retry), and activates it. Any failure clears the blob.
- `SessionManager.on_auth_event`: A sign-in for a different user is a full
  re-initialization. A token refresh for the same user keeps every cache and
  re-arms the live subscriptions. A sign-out clears everything.

Architectural Design:
- Synchronous Teardown: Ending a session drops all per-user state in one step
  before any async cleanup runs, so nothing rendered after a sign-out can
  belong to the previous user.
- Typed Failures: Auth operations raise typed `ChatSyncError`s to the caller
  after raising a notification; unexpected collaborator errors are wrapped
  as `NetworkError`.
"""

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Optional

from pydantic import ValidationError as ModelValidationError

from core.database import CredentialStore
from core.events import AuthEvent, AuthEventKind
from core.exceptions import ChatSyncError, NetworkError
from core.logging_config import log_function_call
from core.models import Attachment, Session
from core.validation import InputValidator
from providers.backend import AuthProvider
from services.profile_directory import ProfileDirectory
from services.state import StateContainer, SyncContext

logger = logging.getLogger(__name__)

ContextHook = Callable[[SyncContext], Awaitable[None]]


class SessionState(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATING = "authenticating"
    AUTHENTICATED = "authenticated"
    REFRESHING = "refreshing"


@dataclass
class ProfileSeed:
    """Profile fields collected by the registration form"""

    username: str
    email: str
    avatar: Optional[Attachment] = None


async def _noop(ctx: SyncContext):
    return None


class SessionManager:
    """Authentication lifecycle of the single signed-in user"""

    REFRESH_ATTEMPTS = 2

    def __init__(
        self,
        auth: AuthProvider,
        credentials: CredentialStore,
        state: StateContainer,
        profiles: ProfileDirectory,
        credentials_key: str,
        on_activate: ContextHook = _noop,
        on_deactivate: ContextHook = _noop,
        on_rearm: ContextHook = _noop,
        clock: Callable[[], float] = time.time,
    ):
        self.auth = auth
        self.credentials = credentials
        self.state = state
        self.profiles = profiles
        self.credentials_key = credentials_key
        self.on_activate = on_activate
        self.on_deactivate = on_deactivate
        self.on_rearm = on_rearm
        self.clock = clock
        self.status = SessionState.UNAUTHENTICATED
        self._detach_auth: Optional[Callable[[], None]] = None
        self._detach_hook: Optional[Callable[[], None]] = None

    @property
    def session(self) -> Optional[Session]:
        return self.state.snapshot.session

    @property
    def context(self) -> Optional[SyncContext]:
        return self.state.context

    def attach(self):
        """Start listening to auth events and authorization failures"""
        if self._detach_auth is None:
            self._detach_auth = self.auth.on_auth_event(self.on_auth_event)
            self._detach_hook = self.state.on_authorization_failure(self._on_authorization_failure)

    def detach(self):
        if self._detach_auth is not None:
            self._detach_auth()
            self._detach_hook()
            self._detach_auth = None
            self._detach_hook = None

    async def restore(self) -> Optional[Session]:
        """Adopt the persisted credential, refreshing it first if it has expired"""
        self.state.commit(is_loading=True)
        try:
            blob = await self._load_credentials()
            if not blob:
                self.status = SessionState.UNAUTHENTICATED
                return None

            try:
                session = Session.model_validate(blob)
            except ModelValidationError:
                logger.warning("Persisted credential is unreadable, discarding it")
                await self._clear_credentials()
                self.status = SessionState.UNAUTHENTICATED
                return None

            if session.is_expired(self.clock()):
                logger.info("Persisted session expired, refreshing")
                session = await self._refresh_with_retry(session)
                if session is None:
                    await self._clear_credentials()
                    self.status = SessionState.UNAUTHENTICATED
                    self.state.notify("warning", "Your session expired, please sign in again")
                    return None

            await self._activate(session)
            return session
        finally:
            self.state.commit(is_loading=False)

    @log_function_call(logger)
    async def sign_in(self, email: str, password: str) -> Session:
        try:
            email = InputValidator.validate_email(email)
            password = InputValidator.validate_password(password)
        except ChatSyncError as e:
            self.state.notify("error", e.message)
            raise

        self.status = SessionState.AUTHENTICATING
        session = await self._call_auth("sign in", self.auth.sign_in(email, password))
        await self._activate(session)
        logger.info(f"Signed in as {session.user_id}")
        return session

    @log_function_call(logger)
    async def sign_up(
        self,
        email: str,
        password: str,
        username: str,
        avatar: Optional[Attachment] = None,
    ) -> Session:
        try:
            email, password, username = InputValidator.validate_registration(
                email, password, username
            )
        except ChatSyncError as e:
            self.state.notify("error", e.message)
            raise

        self.status = SessionState.AUTHENTICATING
        session = await self._call_auth("sign up", self.auth.sign_up(email, password))
        await self._activate(session, ProfileSeed(username=username, email=email, avatar=avatar))
        logger.info(f"Registered {email} as {session.user_id}")
        return session

    async def _call_auth(self, operation: str, call: Awaitable[Session]) -> Session:
        try:
            return await call
        except ChatSyncError as e:
            self._settle_status()
            self.state.notify("error", e.message)
            raise
        except Exception as e:
            self._settle_status()
            self.state.notify("error", f"Could not {operation}: {e}")
            raise NetworkError(operation, str(e)) from e

    def _settle_status(self):
        self.status = (
            SessionState.AUTHENTICATED
            if self.state.context is not None
            else SessionState.UNAUTHENTICATED
        )

    async def sign_out(self):
        """Revoke the session, then drop every trace of it locally"""
        try:
            await self.auth.sign_out()
        except Exception as e:
            logger.warning(f"Sign-out revoke failed, clearing local session anyway: {e}")
        finally:
            await self._end_session("sign out")

    async def refresh(self) -> Optional[Session]:
        """Refresh the current session; failure ends it"""
        current = self.session
        ctx = self.state.context
        if current is None or ctx is None:
            return None

        refreshed = await self._refresh_with_retry(current)
        if not self.state.is_current(ctx):
            return None
        if refreshed is None:
            self.state.notify("warning", "Your session expired, please sign in again")
            await self._end_session("refresh failed")
            return None

        self.state.replace_session(refreshed)
        await self._persist(refreshed)
        await self.on_rearm(ctx)
        return refreshed

    async def _refresh_with_retry(self, session: Session) -> Optional[Session]:
        """Refresh with one retry; None once every attempt has failed"""
        self.status = SessionState.REFRESHING
        try:
            for attempt in range(1, self.REFRESH_ATTEMPTS + 1):
                try:
                    return await self.auth.refresh(session)
                except ChatSyncError as e:
                    logger.warning(f"Token refresh attempt {attempt} failed: {e.message}")
                except Exception as e:
                    logger.warning(f"Token refresh attempt {attempt} failed unexpectedly: {e}")
            return None
        finally:
            self._settle_status()

    async def on_auth_event(self, event: AuthEvent):
        if event.kind == AuthEventKind.SIGNED_OUT:
            await self._end_session("signed out by auth service")
            return

        # the in-flight call adopts its own result
        if self.status in (SessionState.AUTHENTICATING, SessionState.REFRESHING):
            logger.debug(f"Auth event {event.kind.value} arrived during an auth call, ignored")
            return

        session = event.session
        if session is None:
            return

        ctx = self.state.context
        if ctx is None or ctx.user_id != session.user_id:
            logger.info(f"Auth event {event.kind.value} for {session.user_id}, re-initializing")
            await self._activate(session)
            return

        self.state.replace_session(session)
        await self._persist(session)
        if event.kind == AuthEventKind.TOKEN_REFRESHED:
            logger.info("Token refreshed, re-arming subscriptions")
            await self.on_rearm(ctx)

    async def _activate(self, session: Session, seed: Optional[ProfileSeed] = None) -> SyncContext:
        current = self.state.context
        if current is not None and current.user_id == session.user_id:
            self.state.replace_session(session)
            await self._persist(session)
            self.status = SessionState.AUTHENTICATED
            return current

        if current is not None:
            await self._end_session("user changed")

        ctx = self.state.begin_session(session)
        self.status = SessionState.AUTHENTICATED
        await self._persist(session)

        if seed is not None:
            await self.profiles.save_profile(
                ctx, session.user_id, seed.username, seed.email, seed.avatar
            )

        self.state.commit(is_loading=True)
        try:
            await self.on_activate(ctx)
        finally:
            if self.state.is_current(ctx):
                self.state.commit(is_loading=False)
        return ctx

    async def _end_session(self, reason: str):
        self.status = SessionState.UNAUTHENTICATED
        previous = self.state.end_session() if self.state.context is not None else None
        await self._clear_credentials()
        if previous is None:
            return
        logger.info(f"Session {previous.id} ended: {reason}")
        await self.on_deactivate(previous)

    async def _on_authorization_failure(self, ctx: SyncContext):
        if self.state.is_current(ctx):
            await self._end_session("authorization rejected")

    async def _load_credentials(self):
        try:
            return await self.credentials.load(self.credentials_key)
        except Exception as e:
            logger.error(f"Could not read persisted credential: {e}")
            return None

    async def _persist(self, session: Session):
        try:
            await self.credentials.save(self.credentials_key, session.model_dump())
        except Exception as e:
            logger.error(f"Could not persist credential: {e}")

    async def _clear_credentials(self):
        try:
            await self.credentials.clear(self.credentials_key)
        except Exception as e:
            logger.error(f"Could not clear persisted credential: {e}")

    def status_info(self):
        ctx = self.state.context
        return {
            "state": self.status.value,
            "user_id": ctx.user_id if ctx else None,
            "context": ctx.id if ctx else None,
        }
