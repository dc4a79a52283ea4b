"""
Identity Store: the single-writer container for the signed-in profile.

State machine (``transitions``):

    uninitialized -> loading -> {resolved, unauthenticated, failed}

- ``resolved`` returns to ``loading`` only for an explicit sign-in/sign-up
  or a genuinely new external subject
- ``unauthenticated`` is entered on sign-out or when the backend reports
  no subject
- ``loading`` always has a bounded exit: a watchdog forces ``failed`` with
  a WatchdogTimeoutError when nothing settles in time

This is the only component that turns errors into passive state
(``last_error``); its actions never raise domain errors.

Example:
    store = IdentityStore(resolver, auth, settings)
    unsubscribe = store.subscribe(lambda snapshot: render(snapshot))
    await store.initialize()
    profile = await store.sign_in("resident@example.com", "secret")
"""

import asyncio
import logging
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Iterator, List, Optional

from pydantic import ValidationError
from transitions import Machine

from ..core.config import Settings, settings as default_settings
from ..exceptions import (
    AuthProviderError,
    InvalidCredentialError,
    SessionResolutionError,
    SocietyHubError,
    SocietyProvisioningError,
    WatchdogTimeoutError,
)
from ..monitoring.metrics import session_resolutions_deduplicated_total, watchdog_timeouts_total
from ..monitoring.sentry_config import set_user_context
from ..schemas import ExternalSessionChange, Profile, SignIn, SignUp
from ..schemas.credentials import DraftProfile
from .auth_provider import AuthProvider, SessionEvent
from .session_resolver import SessionResolver

logger = logging.getLogger(__name__)


class IdentityState(str, Enum):
    """States of the identity store."""
    UNINITIALIZED = "uninitialized"
    LOADING = "loading"
    RESOLVED = "resolved"
    UNAUTHENTICATED = "unauthenticated"
    FAILED = "failed"


class IdentityTrigger(str, Enum):
    """Triggers that move the identity store between states."""
    START_LOADING = "start_loading"
    SETTLE_RESOLVED = "settle_resolved"
    SETTLE_UNAUTHENTICATED = "settle_unauthenticated"
    SETTLE_FAILED = "settle_failed"


@dataclass(frozen=True)
class IdentitySnapshot:
    """Immutable view handed to subscribers."""

    state: str
    profile: Optional[Profile]
    loading: bool
    last_error: Optional[SocietyHubError]


SnapshotListener = Callable[[IdentitySnapshot], None]


class IdentityStore:
    """
    Holds ``current``, ``loading`` and ``last_error`` for the application.

    Race handling:
        - every resolution captures a generation number; a result whose
          generation is no longer current is discarded
        - a subject already being resolved (or already held) is not
          resolved again, so the initial probe and the session-change
          subscription never fetch the same subject twice
        - SIGNED_IN notifications are ignored while an explicit sign-in or
          sign-up owns the resolution
    """

    TRANSITIONS = [
        {
            'trigger': IdentityTrigger.START_LOADING.value,
            'source': '*',
            'dest': IdentityState.LOADING.value
        },
        {
            'trigger': IdentityTrigger.SETTLE_RESOLVED.value,
            'source': [
                IdentityState.LOADING.value,
                IdentityState.FAILED.value,  # late result after the watchdog fired
                IdentityState.RESOLVED.value,
            ],
            'dest': IdentityState.RESOLVED.value
        },
        {
            'trigger': IdentityTrigger.SETTLE_UNAUTHENTICATED.value,
            'source': '*',
            'dest': IdentityState.UNAUTHENTICATED.value
        },
        {
            'trigger': IdentityTrigger.SETTLE_FAILED.value,
            'source': [
                IdentityState.LOADING.value,
                IdentityState.FAILED.value,
                IdentityState.RESOLVED.value,
            ],
            'dest': IdentityState.FAILED.value
        },
    ]

    def __init__(
        self,
        resolver: SessionResolver,
        auth: AuthProvider,
        config: Optional[Settings] = None,
        watchdog_timeout: Optional[float] = None,
    ):
        """
        Initialize the store.

        Args:
            resolver: Session resolver used for every resolution
            auth: Auth provider whose session changes are followed
            config: Settings (watchdog timeout)
            watchdog_timeout: Override of ``SESSION_WATCHDOG_TIMEOUT`` in seconds
        """
        config = config or default_settings
        self._resolver = resolver
        self._auth = auth
        self._timeout = watchdog_timeout if watchdog_timeout is not None else config.SESSION_WATCHDOG_TIMEOUT

        self._profile: Optional[Profile] = None
        self._last_error: Optional[SocietyHubError] = None
        self._listeners: List[SnapshotListener] = []

        self._generation = 0
        self._inflight_subject: Optional[str] = None
        self._explicit_actions = 0
        self._watchdog: Optional[asyncio.Task] = None
        self._unsubscribe_auth: Optional[Callable[[], None]] = None
        self._closed = False

        self.machine = Machine(
            model=self,
            states=[
                IdentityState.UNINITIALIZED.value,
                {
                    'name': IdentityState.LOADING.value,
                    'on_enter': '_start_watchdog',
                    'on_exit': '_stop_watchdog',
                },
                IdentityState.RESOLVED.value,
                IdentityState.UNAUTHENTICATED.value,
                IdentityState.FAILED.value,
            ],
            transitions=self.TRANSITIONS,
            initial=IdentityState.UNINITIALIZED.value,
            auto_transitions=False,
            after_state_change='_publish',
        )

    # ========================================================================
    # Read API
    # ========================================================================

    @property
    def current(self) -> Optional[Profile]:
        return self._profile

    @property
    def loading(self) -> bool:
        return self.state == IdentityState.LOADING.value

    @property
    def last_error(self) -> Optional[SocietyHubError]:
        return self._last_error

    @property
    def snapshot(self) -> IdentitySnapshot:
        return IdentitySnapshot(
            state=self.state,
            profile=self._profile,
            loading=self.loading,
            last_error=self._last_error,
        )

    def subscribe(self, listener: SnapshotListener) -> Callable[[], None]:
        """
        Register a snapshot listener, called after every change.

        Returns:
            A callable that removes the listener
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    # ========================================================================
    # Lifecycle
    # ========================================================================

    async def initialize(self) -> IdentitySnapshot:
        """
        Subscribe to session changes and run the initial session probe.

        Safe to call once; later calls return the current snapshot.
        """
        if self.state != IdentityState.UNINITIALIZED.value:
            return self.snapshot

        self._unsubscribe_auth = self._auth.on_session_change(self.handle_session_change)
        generation = self._begin_loading()
        logger.info("Probing initial session")

        try:
            subject = await self._auth.get_current_session_subject()
        except SocietyHubError as e:
            if generation == self._generation:
                self._settle_failed(e)
            return self.snapshot
        except Exception as e:
            error = self._unexpected("initial session probe", e)
            if generation == self._generation:
                self._settle_failed(error)
            return self.snapshot

        if generation != self._generation:
            # The subscription delivered a session first; it owns the result
            session_resolutions_deduplicated_total.labels(source="store").inc()
            logger.debug("Initial probe superseded by session-change notification")
            return self.snapshot

        await self._follow_subject(subject)
        return self.snapshot

    async def close(self) -> None:
        """Stop following the auth provider and cancel the watchdog."""
        self._closed = True
        self._generation += 1
        if self._unsubscribe_auth is not None:
            self._unsubscribe_auth()
            self._unsubscribe_auth = None
        self._stop_watchdog()
        self._listeners.clear()

    # ========================================================================
    # Actions
    # ========================================================================

    async def sign_in(self, email: str, secret: str) -> Optional[Profile]:
        """
        Sign in and resolve the profile.

        Returns:
            The resolved profile, or None (see ``last_error``)
        """
        try:
            event = SignIn(email=email, secret=secret)
        except ValidationError as e:
            self._record_error(InvalidCredentialError(f"Malformed sign-in request: {e.error_count()} error(s)"))
            return None

        with self._explicit_action():
            previous = self._profile
            generation = self._begin_loading()
            try:
                profile = await self._resolver.resolve(event)
            except (InvalidCredentialError, AuthProviderError) as e:
                # The previous session is untouched by a rejected or unreachable sign-in
                if generation == self._generation:
                    self._restore(previous, e)
                return None
            except SocietyHubError as e:
                if generation == self._generation:
                    self._settle_failed(e)
                return None
            except Exception as e:
                error = self._unexpected("sign in", e)
                if generation == self._generation:
                    self._settle_failed(error)
                return None

        if generation != self._generation:
            logger.info("Sign in result discarded, superseded by a newer session change")
            return None
        self._settle_resolved(profile)
        return profile

    async def sign_up(
        self,
        email: str,
        secret: str,
        draft: Optional[DraftProfile] = None,
    ) -> Optional[Profile]:
        """
        Register a new identity and resolve it.

        An administrator whose society could not be created still ends up
        resolved with the created profile; ``last_error`` then holds the
        SocietyProvisioningError.
        """
        try:
            event = SignUp(email=email, secret=secret, draft=draft or DraftProfile())
        except ValidationError as e:
            self._record_error(InvalidCredentialError(f"Malformed sign-up request: {e.error_count()} error(s)"))
            return None

        with self._explicit_action():
            previous = self._profile
            generation = self._begin_loading()
            try:
                profile = await self._resolver.resolve(event)
                error: Optional[SocietyHubError] = None
            except SocietyProvisioningError as e:
                if e.profile is None:
                    if generation == self._generation:
                        self._settle_failed(e)
                    return None
                profile, error = e.profile, e
            except (InvalidCredentialError, AuthProviderError) as e:
                if generation == self._generation:
                    self._restore(previous, e)
                return None
            except SocietyHubError as e:
                if generation == self._generation:
                    self._settle_failed(e)
                return None
            except Exception as e:
                failure = self._unexpected("sign up", e)
                if generation == self._generation:
                    self._settle_failed(failure)
                return None

        if generation != self._generation:
            logger.info("Sign up result discarded, superseded by a newer session change")
            return None
        self._settle_resolved(profile, error=error)
        return profile

    async def sign_out(self) -> None:
        """End the session; the store becomes unauthenticated even if the backend call fails."""
        self._generation += 1
        self._inflight_subject = None
        error: Optional[SocietyHubError] = None
        try:
            await self._auth.sign_out()
        except SocietyHubError as e:
            logger.warning(f"Backend sign out failed, clearing local session anyway: {e}")
            error = e
        except Exception as e:
            error = self._unexpected("sign out", e)
        if self.state != IdentityState.UNAUTHENTICATED.value or error is not None:
            self._settle_unauthenticated(error=error)

    async def refresh_profile(self) -> Optional[Profile]:
        """
        Refetch the held profile without leaving ``resolved``.

        Used after an external edit of the profile row, where the subject id
        is unchanged but the data is not.
        """
        if self._profile is None:
            return None

        generation = self._generation
        subject = self._profile.id
        try:
            profile = await self._resolver.resolve(
                ExternalSessionChange(subject_id=subject, force=True),
                current=self._profile,
            )
        except SocietyHubError as e:
            if generation == self._generation:
                self._record_error(e)
            return None
        except Exception as e:
            error = self._unexpected("profile refresh", e)
            if generation == self._generation:
                self._record_error(error)
            return None

        if generation != self._generation:
            return None
        self._settle_resolved(profile)
        return profile

    # ========================================================================
    # Session-change subscription
    # ========================================================================

    async def handle_session_change(self, event: SessionEvent, subject: Optional[str]) -> None:
        """Listener registered with the auth provider."""
        if self._closed:
            return

        if event == SessionEvent.SIGNED_IN and self._explicit_actions:
            logger.debug(f"Ignoring {event.value} for {subject}: explicit action in progress")
            return

        if event == SessionEvent.SIGNED_OUT:
            await self._follow_subject(None)
            return

        if (
            event == SessionEvent.USER_UPDATED
            and self._profile is not None
            and subject == self._profile.id
        ):
            logger.info(f"Profile {subject} updated externally, refreshing")
            await self.refresh_profile()
            return

        await self._follow_subject(subject)

    async def _follow_subject(self, subject: Optional[str]) -> None:
        """Bring the store in line with the backend's current subject."""
        if subject is None:
            self._generation += 1
            self._inflight_subject = None
            if self.state != IdentityState.UNAUTHENTICATED.value:
                self._settle_unauthenticated()
            return

        held = self._profile is not None and self._profile.id == subject
        if subject == self._inflight_subject or (held and self.state == IdentityState.RESOLVED.value):
            session_resolutions_deduplicated_total.labels(source="store").inc()
            logger.debug(f"Subject {subject} already resolved or in flight, skipping")
            return

        self._inflight_subject = subject
        generation = self._begin_loading()
        try:
            profile = await self._resolver.resolve(
                ExternalSessionChange(subject_id=subject),
                current=self._profile,
            )
        except SocietyHubError as e:
            if generation == self._generation:
                self._settle_failed(e)
            return
        except Exception as e:
            error = self._unexpected(f"resolution of subject {subject}", e)
            if generation == self._generation:
                self._settle_failed(error)
            return
        finally:
            if self._inflight_subject == subject:
                self._inflight_subject = None

        if generation != self._generation:
            logger.debug(f"Discarding stale resolution of subject {subject}")
            return
        self._settle_resolved(profile)

    # ========================================================================
    # Internal transitions
    # ========================================================================

    @contextmanager
    def _explicit_action(self) -> Iterator[None]:
        self._explicit_actions += 1
        try:
            yield
        finally:
            self._explicit_actions -= 1

    def _begin_loading(self) -> int:
        """
        Start a new resolution generation.

        Enters ``loading``, or restarts the watchdog when already there so
        every resolution gets the full timeout.
        """
        self._generation += 1
        if self.state != IdentityState.LOADING.value:
            self._fire(IdentityTrigger.START_LOADING)
        else:
            self._start_watchdog()
        return self._generation

    @staticmethod
    def _unexpected(action: str, error: Exception) -> SocietyHubError:
        """Wrap an exception from outside the SocietyHubError hierarchy."""
        logger.error(f"Unexpected failure during {action}: {error!r}", exc_info=error)
        wrapped = SessionResolutionError(f"{action} failed: {error!r}")
        wrapped.__cause__ = error
        return wrapped

    def _settle_resolved(self, profile: Profile, error: Optional[SocietyHubError] = None) -> None:
        self._profile = profile
        self._last_error = error
        set_user_context(profile.id, profile.society_id or None)
        self._fire(IdentityTrigger.SETTLE_RESOLVED)

    def _settle_unauthenticated(self, error: Optional[SocietyHubError] = None) -> None:
        self._profile = None
        self._last_error = error
        set_user_context(None)
        self._fire(IdentityTrigger.SETTLE_UNAUTHENTICATED)

    def _settle_failed(self, error: SocietyHubError) -> None:
        logger.error(f"Session resolution failed: {error}")
        self._profile = None
        self._last_error = error
        self._fire(IdentityTrigger.SETTLE_FAILED)

    def _restore(self, previous: Optional[Profile], error: SocietyHubError) -> None:
        """Leave ``loading`` for the state held before a rejected credential."""
        if previous is not None:
            self._settle_resolved(previous, error=error)
        else:
            self._settle_unauthenticated(error=error)

    def _record_error(self, error: SocietyHubError) -> None:
        self._last_error = error
        self._publish()

    def _fire(self, trigger: IdentityTrigger) -> None:
        state_from = self.state
        getattr(self, trigger.value)()
        logger.info(f"Identity state: {state_from} → {self.state} (trigger: {trigger.value})")

    def _publish(self) -> None:
        snapshot = self.snapshot
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception as e:
                logger.error(f"Identity listener failed: {e}", exc_info=True)

    # ========================================================================
    # Watchdog
    # ========================================================================

    def _start_watchdog(self) -> None:
        self._stop_watchdog()
        self._watchdog = asyncio.get_running_loop().create_task(self._watch())

    def _stop_watchdog(self) -> None:
        if self._watchdog is not None:
            self._watchdog.cancel()
            self._watchdog = None

    async def _watch(self) -> None:
        await asyncio.sleep(self._timeout)
        if self.state != IdentityState.LOADING.value:
            return
        # Detach first so leaving ``loading`` does not cancel this task
        self._watchdog = None
        watchdog_timeouts_total.inc()
        logger.warning(f"Session resolution did not settle within {self._timeout:.1f}s")
        self._settle_failed(WatchdogTimeoutError(self._timeout))
