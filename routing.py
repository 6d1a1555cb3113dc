"""Geocoding and road distance providers, and the distance fallback chain.

Nominatim is used for geocoding and OSRM for road distances. Both talk HTTP
through ``requests`` with a timeout; any provider failure degrades to the
next strategy:

    road distance (OSRM) -> great-circle distance (haversine)

Geocoding has no fallback: an address that cannot be located raises
DistanceUnavailable and the caller decides how to degrade.
"""

import logging
from typing import List, NamedTuple, Optional, Sequence

import requests
from flask import current_app

from errors import DistanceUnavailable
from geo import Coordinate, METERS_PER_MILE, path_miles

logger = logging.getLogger(__name__)


class RoutingError(Exception):
    """The routing provider could not produce a route."""


class RouteDistance(NamedTuple):
    miles: float
    source: str  # "road" or "great_circle"
    points: List[Coordinate]


class Geocoder:
    """Nominatim search client returning the first hit for an address."""

    def __init__(self, base_url: str, user_agent: str, timeout: float = 5):
        self.base_url = base_url.rstrip("/") if base_url else None
        self.user_agent = user_agent
        self.timeout = timeout

    def geocode(self, address: str) -> Optional[Coordinate]:
        if not self.base_url or not address:
            return None

        logger.info(f"Geocoding lookup: {address}")
        try:
            response = requests.get(
                f"{self.base_url}/search",
                params={"format": "json", "q": address, "limit": 1},
                # Nominatim rejects requests without a User-Agent
                headers={"User-Agent": self.user_agent},
                timeout=self.timeout,
            )
            response.raise_for_status()
            data = response.json()
        except (requests.RequestException, ValueError) as e:
            logger.warning(f"Geocoding failed for {address!r}: {e}")
            return None

        if not data:
            logger.warning(f"Geocoding found no match for {address!r}")
            return None

        try:
            return Coordinate.of(data[0]["lat"], data[0]["lon"])
        except (KeyError, IndexError, ValueError) as e:
            logger.warning(f"Geocoding returned an unusable result for {address!r}: {e}")
            return None


class OSRMClient:
    """
    OSRM route client.

    Converts internal (lat, lng) into OSRM's lon,lat order and returns the
    road distance in miles.
    """

    def __init__(self, base_url: str, profile: str = "driving", timeout: float = 5):
        self.base_url = base_url.rstrip("/")
        self.profile = profile
        self.timeout = timeout

    def format_coordinates(self, coords: Sequence[Coordinate]) -> str:
        """Convert list of (lat, lng) to OSRM format 'lon,lat;lon,lat;...'"""
        return ';'.join(f"{c.lng},{c.lat}" for c in coords)

    def route_miles(self, coordinates: Sequence[Coordinate]) -> float:
        if len(coordinates) < 2:
            raise ValueError("At least two coordinates are required to compute a route.")

        url = f"{self.base_url}/route/v1/{self.profile}/{self.format_coordinates(coordinates)}"
        try:
            response = requests.get(url, params={"overview": "false"}, timeout=self.timeout)
            data = response.json()
        except (requests.RequestException, ValueError) as e:
            raise RoutingError(f"OSRM request failed: {e}") from e

        if data.get("code") != "Ok" or not data.get("routes"):
            raise RoutingError(f"OSRM error: {data.get('message', data.get('code', 'Unknown error'))}")

        return data["routes"][0]["distance"] / METERS_PER_MILE


class DistanceResolver:
    def __init__(self, geocoder: Optional[Geocoder] = None, router: Optional[OSRMClient] = None):
        self.geocoder = geocoder
        self.router = router

    def locate(self, address: Optional[str], coord: Optional[Coordinate] = None) -> Coordinate:
        """Return ``coord`` if given, otherwise geocode ``address``."""
        if coord is not None:
            return coord
        found = self.geocoder.geocode(address) if self.geocoder and address else None
        if found is None:
            raise DistanceUnavailable(f"Could not geocode {address!r}")
        return found

    def measure(self, points: Sequence[Coordinate]) -> RouteDistance:
        points = list(points)
        if self.router is not None:
            try:
                return RouteDistance(self.router.route_miles(points), "road", points)
            except RoutingError as e:
                logger.warning(f"Road distance unavailable, using great-circle distance: {e}")
        return RouteDistance(path_miles(points), "great_circle", points)

    def resolve_route(self, pickup, dropoff, pickup_coord=None, dropoff_coord=None, vias=()) -> RouteDistance:
        points = [self.locate(pickup, pickup_coord)]
        points.extend(self.locate(via) for via in vias or ())
        points.append(self.locate(dropoff, dropoff_coord))
        return self.measure(points)

    def resolve_distance(self, pickup, dropoff, pickup_coord=None, dropoff_coord=None, vias=()) -> float:
        """Distance in miles between two places, via any intermediate stops."""
        return self.resolve_route(pickup, dropoff, pickup_coord, dropoff_coord, vias).miles


def build_distance_resolver(config) -> DistanceResolver:
    timeout = config["ROUTING_TIMEOUT_SECONDS"]
    geocoder = None
    if config.get("NOMINATIM_URL"):
        geocoder = Geocoder(config["NOMINATIM_URL"], config["GEOCODER_USER_AGENT"], timeout=timeout)
    router = OSRMClient(config["OSRM_BASE_URL"], timeout=timeout) if config.get("OSRM_BASE_URL") else None
    return DistanceResolver(geocoder=geocoder, router=router)


def get_distance_resolver() -> DistanceResolver:
    """The application's resolver, built from config on first use."""
    resolver = current_app.extensions.get("distance_resolver")
    if resolver is None:
        resolver = build_distance_resolver(current_app.config)
        current_app.extensions["distance_resolver"] = resolver
    return resolver
