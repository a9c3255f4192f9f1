"""
Nearby-spot search.

A latitude band is fetched from the store (only one field can carry a range
predicate per query), then longitude bounds, exact great-circle distance,
radius, ordering and truncation are applied in memory. The band fetch is capped
by ``prefetch_limit``; in a dense band that cap can hide spots that are really
in range, so it is a tuning knob and not a correctness bound.
"""
from dataclasses import dataclass
from math import radians, sin, cos, sqrt, atan2
from typing import Callable, Iterable, List, Optional

from schemas import Location, NearbySpot, ParkingSpot

KM_PER_DEGREE = 111.0
EARTH_RADIUS_KM = 6371.0


@dataclass(frozen=True)
class BoundingBox:
    min_lat: float
    max_lat: float
    min_lng: float
    max_lng: float

    def contains_longitude(self, lng: float) -> bool:
        return self.min_lng <= lng <= self.max_lng


CandidateSource = Callable[[BoundingBox, Optional[int]], Iterable[ParkingSpot]]


def haversine(lat1, lon1, lat2, lon2):
    R = EARTH_RADIUS_KM
    dlat = radians(lat2 - lat1)
    dlon = radians(lon2 - lon1)
    a = sin(dlat / 2) ** 2 + cos(radians(lat1)) * cos(radians(lat2)) * sin(dlon / 2) ** 2
    c = 2 * atan2(sqrt(a), sqrt(1 - a))
    return R * c


def distance_m(a: Location, b: Location) -> float:
    return haversine(a.latitude, a.longitude, b.latitude, b.longitude) * 1000


def bounding_box(center: Location, radius_km: float) -> BoundingBox:
    lat_degrees = radius_km / KM_PER_DEGREE
    km_per_lng_degree = KM_PER_DEGREE * cos(radians(center.latitude))
    if km_per_lng_degree < 1e-9:
        # At the poles every longitude is in range
        min_lng, max_lng = -180.0, 180.0
    else:
        lng_degrees = radius_km / km_per_lng_degree
        min_lng, max_lng = center.longitude - lng_degrees, center.longitude + lng_degrees
    return BoundingBox(
        min_lat=center.latitude - lat_degrees,
        max_lat=center.latitude + lat_degrees,
        min_lng=min_lng,
        max_lng=max_lng,
    )


def prefetch_limit_for(max_results: int, factor: int) -> Optional[int]:
    if factor <= 0:
        return None
    return max_results * factor


def find_nearby(
    center: Location,
    radius_km: float,
    max_results: int,
    candidates: CandidateSource,
    prefetch_limit: Optional[int] = None,
) -> List[NearbySpot]:
    """Available spots within ``radius_km`` of ``center``, nearest first.

    ``candidates`` is called once with the bounding box and ``prefetch_limit``
    and should yield available spots whose latitude falls inside the box.
    Equal distances keep the order the source produced them in.
    """
    box = bounding_box(center, radius_km)
    radius_m = radius_km * 1000

    in_range = []
    for spot in candidates(box, prefetch_limit):
        if spot.status != "available":
            continue
        if not box.contains_longitude(spot.location.longitude):
            continue
        d = distance_m(center, spot.location)
        if d <= radius_m:
            in_range.append((d, spot))

    in_range.sort(key=lambda pair: pair[0])
    return [
        NearbySpot(**spot.model_dump(), distance_m=d)
        for d, spot in in_range[:max_results]
    ]
