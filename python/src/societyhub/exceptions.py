"""
Exception hierarchy for the identity and occupancy core.

Every error carries two messages:
- ``str(exc)``: the technical description, meant for logs
- ``exc.user_message``: the actionable text shown to the person at the screen

Session and occupancy services raise these; only the identity store turns
them into passive state (``last_error``).
"""

from typing import Any, List, Optional


class SocietyHubError(Exception):
    """Base exception for all societyhub errors."""

    default_user_message = "Something went wrong. Please try again."

    def __init__(self, message: str = "", user_message: Optional[str] = None):
        self.user_message = user_message or self.default_user_message
        super().__init__(message or self.user_message)


# ============================================================================
# Authentication / session errors
# ============================================================================

class InvalidCredentialError(SocietyHubError):
    """Raised when the auth backend rejects an e-mail/secret pair."""

    default_user_message = "Incorrect e-mail or password."


class ProfileNotFoundError(SocietyHubError):
    """
    Raised when authentication succeeded but no profile row exists.

    This is data corruption (an incomplete registration) and is never
    healed automatically.
    """

    default_user_message = (
        "Your account is misconfigured: no profile is linked to it. "
        "Please contact your society administrator."
    )

    def __init__(self, subject_id: str, message: str = ""):
        self.subject_id = subject_id
        super().__init__(message or f"No profile row for subject {subject_id}")


class DuplicateIdentityError(SocietyHubError):
    """Raised when sign-up is attempted for an e-mail that already has a profile."""

    default_user_message = "An account with this e-mail already exists. Please sign in instead."

    def __init__(self, email: str, profile_id: Optional[str] = None):
        self.email = email
        self.profile_id = profile_id
        super().__init__(f"E-mail {email} already resolves to profile {profile_id}")


class AccountExistsError(SocietyHubError):
    """Raised by an auth provider when the credential is already registered."""

    default_user_message = "An account with this e-mail already exists. Please sign in instead."

    def __init__(self, email: str):
        self.email = email
        super().__init__(f"Auth backend already has a credential for {email}")


class AuthProviderError(SocietyHubError):
    """Raised when the auth backend is unreachable or misconfigured."""

    default_user_message = "The sign-in service is unavailable. Please try again shortly."

    def __init__(self, message: str, status_code: Optional[int] = None, user_message: Optional[str] = None):
        self.status_code = status_code
        super().__init__(message, user_message=user_message)


class SocietyProvisioningError(SocietyHubError):
    """
    Raised when an administrator's society could not be created or linked.

    The profile created earlier in the registration stays valid; it is
    attached so callers can still sign the user in.
    """

    default_user_message = (
        "Your account was created but the society could not be set up. "
        "Please sign in and retry, or contact support."
    )

    def __init__(self, message: str, profile: Any = None, step: str = "society"):
        self.profile = profile
        self.step = step
        super().__init__(message)


class WatchdogTimeoutError(SocietyHubError):
    """Raised (recorded) when the initial session probe did not settle in time."""

    default_user_message = "Signing you in is taking longer than expected. Please reload."

    def __init__(self, timeout: float):
        self.timeout = timeout
        super().__init__(f"Session initialisation exceeded {timeout:.1f}s")


class SessionResolutionError(SocietyHubError):
    """
    Recorded by the identity store when a resolution fails with an
    exception outside this hierarchy (malformed backend payload, bad row).

    The original exception is chained as ``__cause__``.
    """

    default_user_message = "Something went wrong while signing you in. Please try again."


# ============================================================================
# Persistence errors
# ============================================================================

class PersistenceError(SocietyHubError):
    """Raised when the record store fails."""

    default_user_message = "Could not save your changes. Please try again."

    def __init__(self, message: str, collection: Optional[str] = None, record_id: Optional[str] = None):
        self.collection = collection
        self.record_id = record_id
        super().__init__(message)


class DuplicateRecordError(PersistenceError):
    """Raised when an insert hits an existing primary key or unique value."""


class StaleRecordError(PersistenceError):
    """Raised when a guarded update no longer matches the stored row."""

    default_user_message = "This record was changed by someone else. Please reload and try again."


# ============================================================================
# Occupancy errors
# ============================================================================

class AmbiguousTargetError(SocietyHubError):
    """Raised when a flat has to be chosen among several memberships."""

    default_user_message = "Please choose which flat this applies to."

    def __init__(self, profile_id: str, candidates: List[str]):
        self.profile_id = profile_id
        self.candidates = list(candidates)
        super().__init__(
            f"Profile {profile_id} has {len(self.candidates)} candidate flats: "
            f"{', '.join(self.candidates)}"
        )


class FlatNotFoundError(SocietyHubError):
    """Raised when the flat an operation targets does not exist."""

    default_user_message = "The selected flat does not exist."

    def __init__(self, message: str, flat_id: Optional[str] = None):
        self.flat_id = flat_id
        super().__init__(message)


class CrossSocietyError(SocietyHubError):
    """Raised when a membership would cross a society boundary."""

    default_user_message = "This flat belongs to a different society."


class InactiveProfileError(SocietyHubError):
    """Raised when an inactive profile is assigned to a flat."""

    default_user_message = "This resident is inactive. Reactivate them before assigning a flat."

    def __init__(self, profile_id: str):
        self.profile_id = profile_id
        super().__init__(f"Profile {profile_id} is inactive")


class PartialWriteError(SocietyHubError):
    """
    Raised when a two-sided membership write did not complete.

    Attributes:
        profile_written: True if the profile side still holds the new state
        flat_written: True if the flat side still holds the new state
        compensated: True if every completed step was rolled back
        steps_completed: Labels of the steps that ran before the failure
        failed_step: Label of the step that raised
    """

    default_user_message = (
        "The change was only partly saved. Please retry; if the problem "
        "persists, contact your society administrator."
    )

    def __init__(
        self,
        message: str,
        *,
        profile_written: bool,
        flat_written: bool,
        compensated: bool,
        steps_completed: Optional[List[str]] = None,
        failed_step: Optional[str] = None,
    ):
        self.profile_written = profile_written
        self.flat_written = flat_written
        self.compensated = compensated
        self.steps_completed = list(steps_completed or [])
        self.failed_step = failed_step
        super().__init__(message)
