"""
backend/schemas_venues.py

Pydantic schemas for venues and spaces.
"""

from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


def _trim(v):
    if isinstance(v, str):
        return v.strip()
    return v


# ========================================================================
# VENUES
# ========================================================================

class VenueCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=200, description="Venue name")
    description: Optional[str] = Field(None, max_length=2000)
    address: Optional[str] = Field(None, max_length=300)
    city: Optional[str] = Field(None, max_length=100)
    capacity: Optional[int] = Field(None, ge=0, description="Total venue capacity")
    is_active: bool = True

    @field_validator("name", mode="before")
    @classmethod
    def trim_name(cls, v):
        return _trim(v)

    @field_validator("name")
    @classmethod
    def validate_name_non_empty(cls, v):
        if not v:
            raise ValueError("name must not be empty")
        return v


class VenueUpdateRequest(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    description: Optional[str] = Field(None, max_length=2000)
    address: Optional[str] = Field(None, max_length=300)
    city: Optional[str] = Field(None, max_length=100)
    capacity: Optional[int] = Field(None, ge=0)
    is_active: Optional[bool] = None

    @field_validator("name", mode="before")
    @classmethod
    def trim_name(cls, v):
        return _trim(v)


class VenueResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: int
    name: str
    description: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    capacity: Optional[int] = None
    is_active: bool = True
    space_count: int = 0
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class VenueListResponse(BaseModel):
    items: List[VenueResponse] = Field(default_factory=list)
    total: int = 0


# ========================================================================
# SPACES
# ========================================================================

class SpaceCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=200, description="Space name, unique in intent per venue")
    description: Optional[str] = Field(None, max_length=2000)
    capacity: Optional[int] = Field(None, ge=0, description="Maximum guests")
    hourly_rate: Optional[float] = Field(None, ge=0)
    setup_styles: List[str] = Field(default_factory=list, description="e.g. theater, banquet, cocktail")
    is_active: bool = True

    @field_validator("name", mode="before")
    @classmethod
    def trim_name(cls, v):
        return _trim(v)

    @field_validator("setup_styles")
    @classmethod
    def clean_styles(cls, v):
        return [s.strip() for s in v if s and s.strip()]


class SpaceUpdateRequest(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    description: Optional[str] = Field(None, max_length=2000)
    capacity: Optional[int] = Field(None, ge=0)
    hourly_rate: Optional[float] = Field(None, ge=0)
    setup_styles: Optional[List[str]] = None
    is_active: Optional[bool] = None

    @field_validator("name", mode="before")
    @classmethod
    def trim_name(cls, v):
        return _trim(v)


class SpaceResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: int
    venue_id: int
    name: str
    description: Optional[str] = None
    capacity: Optional[int] = None
    hourly_rate: Optional[float] = None
    setup_styles: List[str] = Field(default_factory=list)
    is_active: bool = True
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class VenueWithSpaces(VenueResponse):
    spaces: List[SpaceResponse] = Field(default_factory=list)
