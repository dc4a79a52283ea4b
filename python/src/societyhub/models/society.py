"""Society table (tenant boundary)."""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel


class SocietyRow(SQLModel, table=True):
    """Stored society. Address and settings are nested documents."""
    
    __tablename__ = "societies"
    
    id: str = Field(primary_key=True, max_length=128)
    name: str = Field(max_length=255)
    address: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))
    settings: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))
    total_flats: int = Field(default=0)
    total_buildings: int = Field(default=0)
    contact_email: str = Field(default="", max_length=255)
    contact_phone: str = Field(default="", max_length=32)
    amenities: List[str] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    
    # Admin profile that registered the society; lets a retried
    # registration find the society it already created.
    created_by: Optional[str] = Field(default=None, max_length=64, index=True)
    
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
