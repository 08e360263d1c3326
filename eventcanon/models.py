from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any, Dict, List, Optional

from pydantic import BaseModel, BeforeValidator, Field, field_validator

from .occurrences import OCCURRENCE_TYPES, Occurrences


def _coerce_id(v: Any) -> Any:
    return str(v) if v is not None else v


# Row ids may come back as uuid strings or ints depending on the table.
RowId = Annotated[str, BeforeValidator(_coerce_id)]
OptionalRowId = Annotated[Optional[str], BeforeValidator(_coerce_id)]
# jsonb columns come back as null for rows written before the column existed.
JsonDict = Annotated[Dict[str, Any], BeforeValidator(lambda v: v or {})]


class VenueHint(BaseModel):
    name: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    address: Optional[str] = None
    city: Optional[str] = None
    country: Optional[str] = None
    external_id: Optional[str] = None  # upstream venue id, when the source has one

    @property
    def has_coordinates(self) -> bool:
        return self.latitude is not None and self.longitude is not None


class CandidateEvent(BaseModel):
    """
    One normalized listing handed over by the extraction stage.
    Either start_at or raw_date_string (or both) may be set.
    """
    source_id: str
    title: str
    external_id_hint: Optional[str] = None

    start_at: Optional[datetime] = None
    raw_date_string: Optional[str] = None

    venue_hint: Optional[VenueHint] = None
    performer_hints: List[str] = Field(default_factory=list)

    recurrence_rule: Optional[Dict[str, Any]] = None
    occurrence_type_hint: Optional[str] = None  # explicit | exhibition | movie | recurring | unknown
    label: Optional[str] = None
    cancellation_reason: Optional[str] = None

    extra: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("occurrence_type_hint", mode="before")
    @classmethod
    def _known_type_only(cls, v: Any) -> Any:
        if not isinstance(v, str):
            return None
        v = v.strip().lower()
        return v if v in OCCURRENCE_TYPES else None


class Source(BaseModel):
    source_id: str  # slug, e.g. "inquizition"
    name: Optional[str] = None
    aggregate_on_index: bool = True
    identity_policy: str = "date_embedded"  # venue_only | date_embedded
    freshness_window_hours: Optional[int] = None
    is_enabled: bool = True


class Venue(BaseModel):
    id: RowId
    name: str
    normalized_name: str
    address: Optional[str] = None
    city: Optional[str] = None
    city_key: Optional[str] = None
    country: Optional[str] = None
    latitude: float
    longitude: float
    dedupe_key: Optional[str] = None
    metadata: JsonDict = Field(default_factory=dict)

    @property
    def is_placeholder(self) -> bool:
        return bool(self.metadata.get("placeholder"))


class Performer(BaseModel):
    id: RowId
    name: str
    normalized_name: str


class CanonicalEvent(BaseModel):
    id: RowId
    title: str
    normalized_title: str
    starts_at: Optional[datetime] = None
    venue_id: OptionalRowId = None
    status: str = "active"
    occurrences: Occurrences
    isolated: bool = False
    lock_version: int = 0
    metadata: JsonDict = Field(default_factory=dict)
    updated_at: Optional[datetime] = None


class SourceLink(BaseModel):
    source_id: str
    external_id: str
    event_id: RowId
    metadata: JsonDict = Field(default_factory=dict)
    last_seen_at: Optional[datetime] = None
