from __future__ import annotations

import logging
import threading
import time
from typing import Optional, Protocol

import requests
from supabase import Client

from .canonicalize.matching import city_key
from .db.retry import execute_with_retry
from .errors import RateLimitedError, TransientError

logger = logging.getLogger(__name__)

Coordinates = tuple[float, float]


class CityCenterLookup(Protocol):
    def city_center(self, city: Optional[str], country: Optional[str] = None) -> Optional[Coordinates]:
        ...


class CityCenterResolver:
    """
    City centres from public.cities. Results (including misses) are cached
    for the lifetime of the resolver; the table is small and static.
    """

    def __init__(self, supabase: Client) -> None:
        self.supabase = supabase
        self._cache: dict[tuple[str, str], Optional[Coordinates]] = {}
        self._lock = threading.Lock()

    def city_center(self, city: Optional[str], country: Optional[str] = None) -> Optional[Coordinates]:
        key = city_key(city)
        if not key:
            return None
        cache_key = (key, (country or "").strip().lower())
        with self._lock:
            if cache_key in self._cache:
                return self._cache[cache_key]

        q = self.supabase.table("cities").select("latitude,longitude,country").eq("city_key", key)
        rows = execute_with_retry(q.limit(5)).data or []
        if country:
            same_country = [r for r in rows if (r.get("country") or "").lower() == country.strip().lower()]
            rows = same_country or rows

        coords: Optional[Coordinates] = None
        for r in rows:
            if r.get("latitude") is not None and r.get("longitude") is not None:
                coords = (float(r["latitude"]), float(r["longitude"]))
                break

        with self._lock:
            self._cache[cache_key] = coords
        return coords


class NominatimCityGeocoder:
    """
    Optional network resolver for cities missing from public.cities.

    Nominatim allows roughly one request per second; requests are spaced
    accordingly and HTTP 429 surfaces as RateLimitedError so the job layer
    retries the whole candidate with backoff.
    """

    BASE_URL = "https://nominatim.openstreetmap.org/search"

    def __init__(
        self,
        *,
        user_agent: str = "eventcanon/0.1",
        timeout_s: int = 10,
        min_interval_s: float = 1.0,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.user_agent = user_agent
        self.timeout_s = timeout_s
        self.min_interval_s = min_interval_s
        self.session = session or requests.Session()
        self._last_call = 0.0
        self._lock = threading.Lock()

    def _throttle(self) -> None:
        with self._lock:
            wait = self._last_call + self.min_interval_s - time.monotonic()
            if wait > 0:
                time.sleep(wait)
            self._last_call = time.monotonic()

    def city_center(self, city: Optional[str], country: Optional[str] = None) -> Optional[Coordinates]:
        if not (city or "").strip():
            return None

        params = {"city": city.strip(), "format": "json", "limit": 1}
        if country:
            params["country"] = country.strip()

        self._throttle()
        try:
            r = self.session.get(
                self.BASE_URL,
                params=params,
                headers={"User-Agent": self.user_agent},
                timeout=self.timeout_s,
            )
        except requests.RequestException as e:
            raise TransientError(f"geocoder request failed: {e!r}") from e

        if r.status_code == 429:
            retry_after = r.headers.get("Retry-After")
            try:
                delay = float(retry_after) if retry_after else None
            except ValueError:
                delay = None
            raise RateLimitedError("geocoder rate limited", retry_after=delay)
        if r.status_code >= 500:
            raise TransientError(f"geocoder http {r.status_code}")
        if r.status_code != 200:
            logger.warning("[geocoding] city=%r http=%d, treating as not found", city, r.status_code)
            return None

        results = r.json() or []
        if not results:
            return None
        return (float(results[0]["lat"]), float(results[0]["lon"]))


class ChainedCityLookup:
    """First lookup that knows the city wins."""

    def __init__(self, *lookups: CityCenterLookup) -> None:
        self.lookups = lookups

    def city_center(self, city: Optional[str], country: Optional[str] = None) -> Optional[Coordinates]:
        for lookup in self.lookups:
            coords = lookup.city_center(city, country)
            if coords is not None:
                return coords
        return None
