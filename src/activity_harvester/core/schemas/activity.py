"""Pydantic model of an activity document.

``ActivityPayload`` is shared by three paths:

- the execution engine validates extraction candidates against it (invalid
  candidates are dropped and counted as warnings);
- the conversion service produces one from a raw admin event;
- the activities repository persists one on approval and the public read
  interface returns them.
"""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class _Part(BaseModel):
    model_config = ConfigDict(extra="ignore", from_attributes=True)


class Coordinates(_Part):
    lat: float = Field(ge=-90.0, le=90.0)
    lng: float = Field(ge=-180.0, le=180.0)


class Location(_Part):
    name: str = ""
    address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None
    neighborhood: Optional[str] = None
    coordinates: Optional[Coordinates] = None
    venue_type: str = "indoor"


class Schedule(_Part):
    start_date: Optional[str] = None
    end_date: Optional[str] = None
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    duration: Optional[str] = None
    recurring: bool = False
    frequency: Optional[str] = None
    days_of_week: List[str] = Field(default_factory=list)


class Pricing(_Part):
    type: str = "free"
    cost: Optional[float] = None
    currency: str = "USD"
    description: Optional[str] = None


class Registration(_Part):
    required: bool = False
    url: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    deadline: Optional[str] = None
    status: str = "open"


class AgeGroup(_Part):
    category: str
    description: Optional[str] = None
    min_age: Optional[int] = None
    max_age: Optional[int] = None


class Image(_Part):
    url: str
    alt_text: Optional[str] = None


class Provider(_Part):
    name: str = ""
    website: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    verified: bool = False


class SourceInfo(_Part):
    url: Optional[str] = None
    domain: Optional[str] = None
    scraped_at: Optional[str] = None
    extracted_by: Optional[str] = None


class ActivityPayload(_Part):
    """A user-facing activity, as extracted, converted or published.

    Only ``title`` is required so that thin extraction candidates still
    validate; conversion fills in the remaining parts before publication.
    """

    id: Optional[str] = None
    type: str = "event"
    title: str = Field(min_length=1)
    description: Optional[str] = None
    category: Optional[str] = None
    subcategory: Optional[str] = None
    age_groups: List[AgeGroup] = Field(default_factory=list)
    schedule: Optional[Schedule] = None
    location: Optional[Location] = None
    pricing: Optional[Pricing] = None
    registration: Optional[Registration] = None
    images: List[Image] = Field(default_factory=list)
    provider: Optional[Provider] = None
    detail_url: Optional[str] = None
    source: Optional[SourceInfo] = None
    tags: List[str] = Field(default_factory=list)

    @property
    def start_date(self) -> Optional[str]:
        return self.schedule.start_date if self.schedule else None

    @property
    def location_name(self) -> str:
        return self.location.name if self.location else ""


class ActivityRead(ActivityPayload):
    """A published activity as returned by the public read interface."""

    type: str = Field(default="event", validation_alias=AliasChoices("activity_type", "type"))
    status: str = "active"
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
