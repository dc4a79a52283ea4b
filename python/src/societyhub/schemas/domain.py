"""
Domain models: Profile, Society, Flat.

These mirror the camelCase records exchanged with the persistence gateway.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class Role(str, Enum):
    """Profile roles."""
    ADMIN = "admin"
    OWNER = "owner"
    TENANT = "tenant"
    SECURITY = "security"
    STAFF = "staff"


class ProfileStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


class OccupancyStatus(str, Enum):
    """Occupancy of a flat. Only the occupancy coordinator changes it."""
    VACANT = "vacant"
    OWNER_OCCUPIED = "owner-occupied"
    RENTED = "rented"


class Capacity(str, Enum):
    """Capacity in which a profile occupies a flat."""
    OWNER = "owner"
    TENANT = "tenant"


class DomainModel(BaseModel):
    """Base model translating between snake_case attributes and camelCase records."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        use_enum_values=True,
        extra="ignore",
    )

    @classmethod
    def from_record(cls, record: Dict[str, Any]):
        """Build a model from an internal (camelCase) gateway record."""
        return cls.model_validate(record)

    def to_record(self, *, exclude_none: bool = False) -> Dict[str, Any]:
        """Dump to an internal (camelCase) gateway record."""
        return self.model_dump(by_alias=True, exclude_none=exclude_none)


class Profile(DomainModel):
    """
    Identity record binding an authenticated subject to a role and society.

    ``id`` equals the auth backend's subject id. ``flat_memberships`` is a
    set in meaning: duplicates are dropped and order is irrelevant.
    """

    id: str
    email: str
    name: str = ""
    phone: str = ""
    role: str = Role.TENANT.value
    society_id: str = ""
    flat_memberships: List[str] = Field(default_factory=list)
    status: str = ProfileStatus.ACTIVE.value
    move_in_date: Optional[str] = None
    emergency_contact: Optional[Dict[str, str]] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("flat_memberships", mode="before")
    @classmethod
    def dedupe_memberships(cls, v):
        if v is None:
            return []
        seen: List[str] = []
        for flat_id in v:
            if flat_id and flat_id not in seen:
                seen.append(flat_id)
        return seen

    @field_validator("email")
    @classmethod
    def normalize_email(cls, v: str) -> str:
        return v.strip().lower()

    @property
    def is_active(self) -> bool:
        return self.status == ProfileStatus.ACTIVE.value

    def member_of(self, flat_id: str) -> bool:
        return flat_id in self.flat_memberships


class SocietyAddress(DomainModel):
    street: str = ""
    area: str = ""
    city: str = ""
    state: str = ""
    pincode: str = ""


class SocietySettings(DomainModel):
    maintenance_day: int = 5
    late_payment_penalty: float = 0
    visitor_approval_required: bool = True


class Society(DomainModel):
    """Tenant boundary: every profile and flat references exactly one society."""

    id: str
    name: str
    address: Optional[SocietyAddress] = None
    settings: Optional[SocietySettings] = None
    total_flats: int = 0
    total_buildings: int = 0
    contact_email: str = ""
    contact_phone: str = ""
    amenities: List[str] = Field(default_factory=list)
    created_by: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class Flat(DomainModel):
    """A flat and its occupancy references."""

    id: str
    society_id: str
    flat_number: str
    floor: Optional[int] = None
    building_id: Optional[str] = None
    bhk_type: Optional[str] = None
    area: Optional[float] = None
    occupancy_status: str = OccupancyStatus.VACANT.value
    owner_id: Optional[str] = None
    current_tenant_id: Optional[str] = None
    parking_slots: List[str] = Field(default_factory=list)
    version: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_vacant(self) -> bool:
        return self.occupancy_status == OccupancyStatus.VACANT.value
