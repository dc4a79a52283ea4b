"""
Pydantic domain types.

Field names are snake_case in Python and camelCase on the wire between the
services and the persistence gateway (``by_alias=True``).
"""

from .domain import (
    Capacity,
    DomainModel,
    Flat,
    OccupancyStatus,
    Profile,
    ProfileStatus,
    Role,
    Society,
    SocietyAddress,
    SocietySettings,
)
from .credentials import (
    CredentialEvent,
    DraftProfile,
    ExternalSessionChange,
    SignIn,
    SignUp,
)

__all__ = [
    "Capacity",
    "DomainModel",
    "Flat",
    "OccupancyStatus",
    "Profile",
    "ProfileStatus",
    "Role",
    "Society",
    "SocietyAddress",
    "SocietySettings",
    "CredentialEvent",
    "DraftProfile",
    "ExternalSessionChange",
    "SignIn",
    "SignUp",
]
