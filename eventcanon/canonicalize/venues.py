# eventcanon/canonicalize/venues.py
"""
Venue resolution: hint (name + optional coordinates/city) -> canonical venue.

Invariant: no two rows in public.venues share a normalized name while lying
within `venue_radius_meters` of each other in the same city scope.

Lookup:
  with coordinates     same normalized_name, bounding box prefilter in SQL,
                       geodesic distance <= radius in Python, nearest wins
  without coordinates  same normalized_name and city_key

Coordinate degradation chain for new venues:
  provided coordinates -> city centre -> placeholder (0.0, 0.0)

Creation is insert-or-retrieve on venues.dedupe_key: a concurrent insert of
the same venue surfaces as 23505 and we re-select the winner's row. Two
inserts on opposite sides of a key cell both succeed; the radius lookup is
re-run after every insert and a surviving twin is written as a
venue_duplicate signal for manual merge.
"""
from __future__ import annotations

import logging
from typing import Any, Mapping, Optional

from postgrest.exceptions import APIError
from supabase import Client

from ..config import EngineConfig
from ..db.data_quality import SIGNAL_VENUE_DUPLICATE, signal_fingerprint, write_signal
from ..db.retry import execute_with_retry, is_unique_violation
from ..errors import RateLimitedError, TransientError
from ..geocoding import CityCenterLookup
from ..models import Venue, VenueHint
from .dedupe_key import compute_venue_dedupe_key
from .matching import bounding_box, city_key, distance_meters, normalize_name

logger = logging.getLogger(__name__)

VENUE_COLUMNS = (
    "id,name,normalized_name,address,city,city_key,country,"
    "latitude,longitude,dedupe_key,metadata"
)
UNKNOWN_VENUE_NAME = "Unknown venue"
PLACEHOLDER_COORDINATES = (0.0, 0.0)


def _display_name(hint: VenueHint) -> str:
    return (hint.name or "").strip() or (hint.external_id or "").strip() or UNKNOWN_VENUE_NAME


def _same_city_scope(row: Mapping[str, Any], ck: Optional[str]) -> bool:
    row_ck = row.get("city_key")
    return not ck or not row_ck or row_ck == ck


class VenueDeduplicator:
    def __init__(
        self,
        supabase: Client,
        config: EngineConfig,
        *,
        city_lookup: Optional[CityCenterLookup] = None,
    ) -> None:
        self.supabase = supabase
        self.config = config
        self.city_lookup = city_lookup

    # ------------------------------------------------------------------
    # Lookup (read-only, also used by the freshness predictor)
    # ------------------------------------------------------------------

    def find_existing(self, hint: Optional[VenueHint]) -> Optional[Venue]:
        if hint is None:
            return None
        norm = normalize_name(_display_name(hint))
        if not norm:
            return None
        ck = city_key(hint.city)

        if hint.has_coordinates:
            return self._find_near(norm, ck, float(hint.latitude), float(hint.longitude))
        return self._find_by_name(norm, ck)

    def _find_by_name(self, norm: str, ck: Optional[str]) -> Optional[Venue]:
        rows = (
            execute_with_retry(
                self.supabase.table("venues")
                .select(VENUE_COLUMNS)
                .eq("normalized_name", norm)
                .order("id", desc=False)
                .limit(20)
            ).data
            or []
        )
        for r in rows:
            if (r.get("city_key") or None) == ck:
                return Venue.model_validate(r)
        return None

    def _find_near(self, norm: str, ck: Optional[str], lat: float, lng: float) -> Optional[Venue]:
        near = self._nearby(norm, ck, lat, lng)
        return Venue.model_validate(near[0][1]) if near else None

    def _nearby(
        self, norm: str, ck: Optional[str], lat: float, lng: float,
    ) -> list[tuple[float, Mapping[str, Any]]]:
        """Same-name rows within the radius, nearest first."""
        radius = self.config.venue_radius_meters
        min_lat, max_lat, min_lng, max_lng = bounding_box(lat, lng, radius)
        rows = (
            execute_with_retry(
                self.supabase.table("venues")
                .select(VENUE_COLUMNS)
                .eq("normalized_name", norm)
                .gte("latitude", min_lat)
                .lte("latitude", max_lat)
                .gte("longitude", min_lng)
                .lte("longitude", max_lng)
                .limit(50)
            ).data
            or []
        )

        near = []
        for r in rows:
            if not _same_city_scope(r, ck):
                continue
            d = distance_meters(lat, lng, float(r["latitude"]), float(r["longitude"]))
            if d <= radius:
                near.append((d, r))
        near.sort(key=lambda pair: (pair[0], str(pair[1].get("id"))))
        return near

    # ------------------------------------------------------------------
    # Resolve (lookup or create)
    # ------------------------------------------------------------------

    def resolve(self, hint: Optional[VenueHint], *, source_id: Optional[str] = None) -> Venue:
        """source_id only labels a venue_duplicate signal, should one be written."""
        hint = hint or VenueHint()

        existing = self.find_existing(hint)
        if existing is not None:
            return existing

        if hint.has_coordinates:
            # A placeholder created from a coordinate-less hint sits at (0, 0)
            # and is invisible to the radius lookup.
            by_name = self._find_by_name(normalize_name(_display_name(hint)), city_key(hint.city))
            if by_name is not None and by_name.is_placeholder:
                return self._enrich_placeholder(by_name, hint)

        (lat, lng), coordinates_source = self._coordinates_for(hint)
        venue = self._insert_or_retrieve(hint, lat, lng, coordinates_source)
        if coordinates_source != "none":
            self._flag_twins(venue, source_id)
        return venue

    def _coordinates_for(self, hint: VenueHint) -> tuple[tuple[float, float], str]:
        if hint.has_coordinates:
            return (float(hint.latitude), float(hint.longitude)), "provided"

        if self.city_lookup is not None and hint.city:
            try:
                coords = self.city_lookup.city_center(hint.city, hint.country)
            except RateLimitedError:
                raise
            except TransientError as e:
                logger.warning("[venues] city centre lookup failed city=%r err=%r", hint.city, e)
                coords = None
            if coords is not None:
                return coords, "city_center"

        logger.info("[venues] PLACEHOLDER name=%r city=%r", hint.name, hint.city)
        return PLACEHOLDER_COORDINATES, "none"

    def _insert_or_retrieve(
        self,
        hint: VenueHint,
        lat: float,
        lng: float,
        coordinates_source: str,
    ) -> Venue:
        name = _display_name(hint)
        dedupe_key = compute_venue_dedupe_key(
            name=name, city=hint.city, latitude=lat, longitude=lng,
        )
        metadata: dict[str, Any] = {"coordinates_source": coordinates_source}
        if coordinates_source == "none":
            metadata["placeholder"] = True
        if hint.external_id:
            metadata["upstream_venue_id"] = hint.external_id

        payload = {
            "name": name,
            "normalized_name": normalize_name(name),
            "address": hint.address,
            "city": hint.city,
            "city_key": city_key(hint.city),
            "country": hint.country,
            "latitude": lat,
            "longitude": lng,
            "dedupe_key": dedupe_key,
            "metadata": metadata,
        }
        payload = {k: v for k, v in payload.items() if v is not None}

        try:
            res = execute_with_retry(self.supabase.table("venues").insert(payload))
            row = (res.data or [None])[0]
            if row:
                logger.info("[venues] CREATED id=%s name=%r source=%s", row.get("id"), name, coordinates_source)
                return Venue.model_validate(row)
        except APIError as e:
            if not is_unique_violation(e):
                raise

        # Lost the race (or insert returned nothing): the row exists now.
        rows = (
            execute_with_retry(
                self.supabase.table("venues")
                .select(VENUE_COLUMNS)
                .eq("dedupe_key", dedupe_key)
                .limit(1)
            ).data
            or []
        )
        if not rows:
            raise TransientError(f"venue insert conflicted but dedupe_key={dedupe_key} not found")
        return Venue.model_validate(rows[0])

    def _flag_twins(self, venue: Venue, source_id: Optional[str]) -> None:
        """A fresh insert that can see another same-name row in range lost a cell-edge race."""
        twins = [
            (d, r)
            for d, r in self._nearby(venue.normalized_name, venue.city_key, venue.latitude, venue.longitude)
            if str(r.get("id")) != str(venue.id)
        ]
        if not twins:
            return
        distance, twin = twins[0]
        ids = sorted([str(venue.id), str(twin["id"])])
        logger.warning(
            "[venues] DUPLICATE name=%r ids=%s distance_m=%.1f",
            venue.name, ids, distance,
        )
        write_signal(
            supabase=self.supabase,
            signal_type=SIGNAL_VENUE_DUPLICATE,
            source_id=source_id or "unknown",
            external_id=None,
            fingerprint=signal_fingerprint(SIGNAL_VENUE_DUPLICATE, *ids),
            details={
                "venue_ids": ids,
                "normalized_name": venue.normalized_name,
                "distance_m": round(distance, 1),
            },
        )

    def _enrich_placeholder(self, venue: Venue, hint: VenueHint) -> Venue:
        """A placeholder venue learns real coordinates; dedupe_key stays as created."""
        metadata = {**venue.metadata, "placeholder": False, "coordinates_source": "provided"}
        update = {
            "latitude": float(hint.latitude),
            "longitude": float(hint.longitude),
            "metadata": metadata,
        }
        if hint.address and not venue.address:
            update["address"] = hint.address

        res = execute_with_retry(
            self.supabase.table("venues").update(update).eq("id", venue.id)
        )
        rows = res.data or []
        logger.info("[venues] ENRICHED id=%s name=%r", venue.id, venue.name)
        if rows:
            return Venue.model_validate(rows[0])
        return venue.model_copy(update=update)
