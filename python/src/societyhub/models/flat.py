"""Flat table."""

from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import JSON, Column, UniqueConstraint
from sqlmodel import Field, SQLModel


class FlatRow(SQLModel, table=True):
    """
    Stored flat.
    
    occupancy_status is one of vacant, owner-occupied, rented and is only
    written by the occupancy coordinator. ``version`` is bumped by the
    gateway on every update for optimistic concurrency checks.
    """
    
    __tablename__ = "flats"
    __table_args__ = (
        UniqueConstraint("society_id", "flat_number", name="uq_flats_society_number"),
    )
    
    id: str = Field(primary_key=True, max_length=64)
    society_id: str = Field(max_length=128, index=True)
    flat_number: str = Field(max_length=32)
    floor: Optional[int] = None
    building_id: Optional[str] = Field(default=None, max_length=64)
    bhk_type: Optional[str] = Field(default=None, max_length=16)
    area: Optional[float] = None
    occupancy_status: str = Field(default="vacant", max_length=20)
    owner_id: Optional[str] = Field(default=None, max_length=64, index=True)
    current_tenant_id: Optional[str] = Field(default=None, max_length=64, index=True)
    parking_slots: List[str] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    version: int = Field(default=0)
    
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
