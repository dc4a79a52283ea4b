"""
Session resolution: credential events -> Profile.

Handles:
- SignIn: authenticate, then fetch exactly one profile keyed by the subject
- SignUp: credential first, then profile, then (admins) society + link
- ExternalSessionChange: refetch only when the subject actually changed

Registration runs as an explicit step sequence. Every step is idempotent
so a failed registration can simply be retried:

    credential   -> existing credential recovered by signing in
    profile      -> existing row with the subject id is reused
    society      -> society already created by this profile is reused
    link_society -> skipped when the profile already points at it

Steps are not compensated: the profile must survive a failed society step
so the user can still sign in.
"""

import logging
import re
import secrets
import string
from dataclasses import dataclass
from typing import Optional

from ..core.config import Settings, settings as default_settings
from ..exceptions import (
    AccountExistsError,
    DuplicateIdentityError,
    DuplicateRecordError,
    InvalidCredentialError,
    ProfileNotFoundError,
    SocietyProvisioningError,
)
from ..monitoring.metrics import profile_fetches_total, session_resolutions_deduplicated_total
from ..persistence.gateway import RecordGateway
from ..schemas import CredentialEvent, ExternalSessionChange, Profile, Role, SignIn, SignUp, Society
from ..schemas.credentials import DraftProfile
from .auth_provider import AuthProvider
from .saga import Saga, SagaError

logger = logging.getLogger(__name__)

USERS = "users"
SOCIETIES = "societies"


@dataclass
class _Registration:
    """Mutable state threaded through the registration steps."""

    event: SignUp
    email: str
    subject: Optional[str] = None
    profile: Optional[Profile] = None
    society: Optional[Society] = None


def society_slug(name: str) -> str:
    """``"Sunshine Apartments"`` -> ``"sunshine-apartments"``."""
    return re.sub(r"\s+", "-", name.strip().lower())


class SessionResolver:
    """
    Converts credential events into resolved profiles.

    Never swallows errors: every failure is raised as a typed
    SocietyHubError for the caller to present.
    """

    SOCIETY_SUFFIX_LENGTH = 5
    SOCIETY_ID_ATTEMPTS = 3

    def __init__(
        self,
        gateway: RecordGateway,
        auth: AuthProvider,
        config: Optional[Settings] = None,
    ):
        self._gateway = gateway
        self._auth = auth
        self._config = config or default_settings

    async def resolve(self, event: CredentialEvent, current: Optional[Profile] = None) -> Profile:
        """
        Resolve a credential event into a profile.

        Args:
            event: SignIn, SignUp or ExternalSessionChange
            current: Profile currently held by the caller (for de-duplication)

        Returns:
            The resolved profile

        Raises:
            InvalidCredentialError: Credential rejected
            ProfileNotFoundError: Authenticated subject has no profile row
            DuplicateIdentityError: Sign-up for an e-mail that has a profile
            SocietyProvisioningError: Admin profile created, society step failed
            AuthProviderError / PersistenceError: Backend failures
        """
        if isinstance(event, SignIn):
            return await self._sign_in(event)
        if isinstance(event, SignUp):
            return await self._sign_up(event)
        if isinstance(event, ExternalSessionChange):
            return await self._session_changed(event, current)
        raise TypeError(f"Unsupported credential event: {type(event).__name__}")

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    async def fetch_profile(self, subject_id: str, reason: str = "session_change") -> Profile:
        """
        Fetch the profile keyed by an auth subject id.

        Raises:
            ProfileNotFoundError: If no row exists
        """
        record = await self._gateway.get(USERS, subject_id)
        profile_fetches_total.labels(reason=reason).inc()
        if record is None:
            logger.error(f"Authenticated subject {subject_id} has no profile row")
            raise ProfileNotFoundError(subject_id)
        return Profile.from_record(record)

    async def find_profile_by_email(self, email: str) -> Optional[Profile]:
        record = await self._gateway.find_one(USERS, email=email.strip().lower())
        return Profile.from_record(record) if record else None

    # ------------------------------------------------------------------
    # SignIn / ExternalSessionChange
    # ------------------------------------------------------------------

    async def _sign_in(self, event: SignIn) -> Profile:
        email = str(event.email).lower()
        session = await self._auth.sign_in(email, event.secret.get_secret_value())
        logger.info(f"Sign in authenticated subject {session.subject}")
        return await self.fetch_profile(session.subject, reason="sign_in")

    async def _session_changed(self, event: ExternalSessionChange, current: Optional[Profile]) -> Profile:
        if current is not None and current.id == event.subject_id and not event.force:
            session_resolutions_deduplicated_total.labels(source="resolver").inc()
            logger.debug(f"Subject {event.subject_id} already resolved, skipping fetch")
            return current
        return await self.fetch_profile(event.subject_id, reason="session_change")

    # ------------------------------------------------------------------
    # SignUp
    # ------------------------------------------------------------------

    async def register(self, email: str, secret: str, draft: DraftProfile) -> Profile:
        """
        Create an identity for someone else (e.g. an administrator adding a
        resident). The caller's own session is left untouched.
        """
        return await self.resolve(
            SignUp(email=email, secret=secret, draft=draft, establish_session=False)
        )

    async def _sign_up(self, event: SignUp) -> Profile:
        email = str(event.email).lower()

        existing = await self.find_profile_by_email(email)
        if existing is not None and not self._resumes_registration(existing, event):
            raise DuplicateIdentityError(email, existing.id)

        registration = _Registration(event=event, email=email)
        saga = Saga("sign_up", compensate=False)
        saga.add_step("credential", "credential", lambda: self._ensure_credential(registration))
        saga.add_step("profile", "profile", lambda: self._ensure_profile(registration))
        if event.draft.creates_society:
            saga.add_step("society", "society", lambda: self._ensure_society(registration))
            saga.add_step("link_society", "profile", lambda: self._link_society(registration))

        try:
            await saga.run()
        except SagaError as e:
            if e.failed_step.name in ("society", "link_society"):
                raise SocietyProvisioningError(
                    f"Profile {registration.subject} created but {e.failed_step.name} failed: {e.cause}",
                    profile=registration.profile,
                    step=e.failed_step.name,
                ) from e.cause
            raise e.cause

        logger.info(f"Registration complete for subject {registration.subject}")
        return registration.profile

    @staticmethod
    def _resumes_registration(existing: Profile, event: SignUp) -> bool:
        """
        An admin whose society step failed may repeat the sign-up; the
        credential step then re-verifies the secret before anything is reused.
        """
        return (
            event.establish_session
            and event.draft.creates_society
            and existing.role == Role.ADMIN.value
            and not existing.society_id
        )

    async def _ensure_credential(self, registration: _Registration) -> str:
        event = registration.event
        secret = event.secret.get_secret_value()
        try:
            session = await self._auth.sign_up(
                registration.email,
                secret,
                establish_session=event.establish_session,
            )
        except AccountExistsError:
            if not event.establish_session:
                raise
            # A previous registration created the credential but not the
            # profile; recover the subject with the same secret.
            logger.warning(f"Credential for {registration.email} exists without profile, recovering")
            try:
                session = await self._auth.sign_in(registration.email, secret)
            except InvalidCredentialError:
                raise AccountExistsError(registration.email)
        registration.subject = session.subject
        return session.subject

    async def _ensure_profile(self, registration: _Registration) -> Profile:
        subject = registration.subject
        draft = registration.event.draft

        existing = await self._gateway.get(USERS, subject)
        profile_fetches_total.labels(reason="sign_up").inc()
        if existing is not None:
            logger.info(f"Profile {subject} already exists, reusing")
            registration.profile = Profile.from_record(existing)
            return registration.profile

        profile = Profile(
            id=subject,
            email=registration.email,
            name=draft.name,
            phone=draft.phone,
            role=draft.role.value,
            society_id=draft.society_id or "",
            flat_memberships=draft.flat_memberships,
            status="active",
            move_in_date=draft.move_in_date,
        )
        record = profile.to_record()
        record.pop("createdAt", None)
        record.pop("updatedAt", None)

        try:
            stored = await self._gateway.insert(USERS, record)
        except DuplicateRecordError:
            # Inserted by a concurrent or earlier attempt
            stored = await self._gateway.get(USERS, subject)
            if stored is None:
                raise DuplicateIdentityError(registration.email)

        registration.profile = Profile.from_record(stored)
        logger.info(f"Created profile {subject} (role={profile.role})")
        return registration.profile

    async def _ensure_society(self, registration: _Registration) -> Society:
        name = registration.event.draft.society_name

        existing = await self._gateway.find_one(SOCIETIES, createdBy=registration.subject)
        if existing is not None:
            logger.info(f"Society {existing['id']} already created by {registration.subject}, reusing")
            registration.society = Society.from_record(existing)
            return registration.society

        last_error: Optional[DuplicateRecordError] = None
        for _ in range(self.SOCIETY_ID_ATTEMPTS):
            society = Society(
                id=self._society_id(name),
                name=name,
                total_flats=self._config.DEFAULT_SOCIETY_TOTAL_FLATS,
                created_by=registration.subject,
            )
            record = society.to_record(exclude_none=True)
            try:
                stored = await self._gateway.insert(SOCIETIES, record)
            except DuplicateRecordError as e:
                last_error = e
                continue
            registration.society = Society.from_record(stored)
            logger.info(f"Created society {society.id} for admin {registration.subject}")
            return registration.society

        raise last_error

    async def _link_society(self, registration: _Registration) -> Profile:
        society_id = registration.society.id
        if registration.profile.society_id == society_id:
            return registration.profile

        updated = await self._gateway.update(USERS, registration.subject, {"societyId": society_id})
        registration.profile = Profile.from_record(updated)
        logger.info(f"Linked admin {registration.subject} to society {society_id}")
        return registration.profile

    def _society_id(self, name: str) -> str:
        alphabet = string.ascii_lowercase + string.digits
        suffix = "".join(secrets.choice(alphabet) for _ in range(self.SOCIETY_SUFFIX_LENGTH))
        return f"{society_slug(name)}-{suffix}"
