"""
Profile (users) table.

The primary key is the auth backend's subject id, so a profile can always
be fetched with the id carried by a session.
"""

from datetime import datetime, timezone
from typing import Dict, List, Optional

from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel


class ProfileRow(SQLModel, table=True):
    """
    Stored profile.
    
    Profiles are soft-retired (status=inactive, memberships cleared) and
    never hard-deleted while payment or complaint history points at them.
    """
    
    __tablename__ = "users"
    
    id: str = Field(primary_key=True, max_length=64)
    email: str = Field(index=True, unique=True, max_length=255)
    name: str = Field(default="", max_length=255)
    phone: str = Field(default="", max_length=32)
    role: str = Field(default="tenant", max_length=20, index=True)
    society_id: str = Field(default="", max_length=128, index=True)
    flat_memberships: List[str] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    status: str = Field(default="active", max_length=20)
    move_in_date: Optional[str] = Field(default=None, max_length=32)
    emergency_contact: Optional[Dict[str, str]] = Field(default=None, sa_column=Column(JSON))
    
    # Timestamps
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
