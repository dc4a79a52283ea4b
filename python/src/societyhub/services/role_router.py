"""
Role-based navigation.

Pure functions, no I/O. Role gating is a navigational convenience: a
profile outside a route's allowed roles is sent to its own landing page.
Authorization proper is enforced by the record store's access rules.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, FrozenSet, Iterable, Optional

from ..schemas import Profile, Role

LOGIN_ROUTE = "/login"

LANDING_ROUTES: Dict[str, str] = {
    Role.ADMIN.value: "/dashboard/admin",
    Role.OWNER.value: "/dashboard/owner",
    Role.TENANT.value: "/dashboard/tenant",
    Role.SECURITY.value: "/dashboard/security",
    Role.STAFF.value: "/dashboard/staff",
}

# Unknown roles land on the least privileged dashboard
DEFAULT_LANDING_ROUTE = LANDING_ROUTES[Role.TENANT.value]

ROLE_DISPLAY_NAMES: Dict[str, str] = {
    Role.ADMIN.value: "Administrator",
    Role.OWNER.value: "Property Owner",
    Role.TENANT.value: "Tenant",
    Role.SECURITY.value: "Security Personnel",
    Role.STAFF.value: "Staff Member",
}

ALL_ROLES: FrozenSet[str] = frozenset(role.value for role in Role)


def _roles(*roles: Role) -> FrozenSet[str]:
    return frozenset(role.value for role in roles)


PUBLIC_ROUTES: FrozenSet[str] = frozenset({LOGIN_ROUTE, "/register"})

# Path -> roles allowed to enter. ALL_ROLES means "any signed-in profile".
PROTECTED_ROUTES: Dict[str, FrozenSet[str]] = {
    "/dashboard/admin": _roles(Role.ADMIN),
    "/dashboard/owner": _roles(Role.OWNER),
    "/dashboard/tenant": _roles(Role.TENANT),
    "/dashboard/security": _roles(Role.SECURITY),
    "/dashboard/staff": _roles(Role.STAFF),
    "/flats": ALL_ROLES,
    "/residents": _roles(Role.ADMIN),
    "/visitors": ALL_ROLES,
    "/payments": ALL_ROLES,
    "/complaints": ALL_ROLES,
    "/announcements": ALL_ROLES,
    "/vehicles": ALL_ROLES,
    "/settings": _roles(Role.ADMIN),
    "/profile": ALL_ROLES,
    "/owner/tenants": _roles(Role.OWNER),
    "/owner/staff": _roles(Role.OWNER, Role.TENANT),
    "/salary/requests": _roles(Role.SECURITY, Role.STAFF),
    "/security/cctv": _roles(Role.SECURITY, Role.ADMIN),
    "/security/residents": _roles(Role.SECURITY),
    "/admin/salary": _roles(Role.ADMIN),
    "/admin/staff": _roles(Role.ADMIN),
}


def _role_value(role) -> str:
    return role.value if isinstance(role, Enum) else str(role or "")


def landing_route(role) -> str:
    """Dashboard path for a role; unknown roles get the tenant dashboard."""
    return LANDING_ROUTES.get(_role_value(role), DEFAULT_LANDING_ROUTE)


def can_enter(role, allowed_roles: Iterable) -> bool:
    return _role_value(role) in {_role_value(r) for r in allowed_roles}


def role_display_name(role) -> str:
    return ROLE_DISPLAY_NAMES.get(_role_value(role), "User")


class NavigationAction(str, Enum):
    ALLOW = "allow"
    REDIRECT = "redirect"
    WAIT = "wait"


@dataclass(frozen=True)
class NavigationDecision:
    """Outcome of a navigation request."""

    action: NavigationAction
    target: Optional[str] = None

    @classmethod
    def allow(cls) -> "NavigationDecision":
        return cls(NavigationAction.ALLOW)

    @classmethod
    def redirect(cls, target: str) -> "NavigationDecision":
        return cls(NavigationAction.REDIRECT, target)

    @classmethod
    def wait(cls) -> "NavigationDecision":
        return cls(NavigationAction.WAIT)


def _normalize(path: str) -> str:
    path = (path or "/").split("?", 1)[0].split("#", 1)[0]
    if len(path) > 1:
        path = path.rstrip("/")
    return path or "/"


def resolve_navigation(profile: Optional[Profile], path: str, loading: bool = False) -> NavigationDecision:
    """
    Decide what happens when ``profile`` navigates to ``path``.

    Args:
        profile: The signed-in profile, or None
        path: Requested path
        loading: True while the identity store is still resolving

    Returns:
        ALLOW, REDIRECT (with target) or WAIT
    """
    path = _normalize(path)

    if path in PUBLIC_ROUTES:
        return NavigationDecision.allow()
    if loading:
        return NavigationDecision.wait()
    if profile is None:
        return NavigationDecision.redirect(LOGIN_ROUTE)

    allowed = PROTECTED_ROUTES.get(path)
    if allowed is None:
        # "/", "/dashboard" and unknown paths
        return NavigationDecision.redirect(landing_route(profile.role))
    if not can_enter(profile.role, allowed):
        return NavigationDecision.redirect(landing_route(profile.role))
    return NavigationDecision.allow()
