"""
Identity and occupancy services.

- auth_provider: credential backend interface and Supabase client
- session_resolver: credential events -> Profile
- identity_store: observable single-writer state of the signed-in profile
- role_router: pure role-based navigation
- occupancy: flat <-> profile membership coordinator
- saga: step/compensation runner for non-transactional writes
"""

from .auth_provider import AuthProvider, AuthSession, SessionEvent, SupabaseAuthProvider
from .identity_store import IdentitySnapshot, IdentityState, IdentityStore
from .occupancy import OccupancyCoordinator, OccupancyResult, derive_occupancy
from .role_router import (
    NavigationAction,
    NavigationDecision,
    PROTECTED_ROUTES,
    can_enter,
    landing_route,
    resolve_navigation,
    role_display_name,
)
from .saga import Saga, SagaError
from .session_resolver import SessionResolver

__all__ = [
    "AuthProvider",
    "AuthSession",
    "SessionEvent",
    "SupabaseAuthProvider",
    "IdentitySnapshot",
    "IdentityState",
    "IdentityStore",
    "OccupancyCoordinator",
    "OccupancyResult",
    "derive_occupancy",
    "NavigationAction",
    "NavigationDecision",
    "PROTECTED_ROUTES",
    "can_enter",
    "landing_route",
    "resolve_navigation",
    "role_display_name",
    "Saga",
    "SagaError",
    "SessionResolver",
]
