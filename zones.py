import logging
from typing import Iterable, Optional

from errors import MalformedLocation
from geo import Coordinate, point_in_polygon
from models import Zone, ZonePrice

logger = logging.getLogger(__name__)


def tenant_zones(tenant_id):
    """Zones in creation order, which is the containment tie-break."""
    return Zone.query.filter_by(tenant_id=tenant_id).order_by(Zone.created_at, Zone.id).all()


def locate_zone(zones: Iterable[Zone], coordinate: Optional[Coordinate]) -> Optional[Zone]:
    """First zone whose polygon contains ``coordinate``."""
    if coordinate is None:
        return None
    for zone in zones:
        try:
            polygon = zone.polygon
        except MalformedLocation as e:
            logger.error(f"Zone {zone.id} ({zone.name}) has invalid coordinates: {e}")
            continue
        if point_in_polygon(coordinate, polygon):
            return zone
    return None


def find_zone(tenant_id, coordinate: Optional[Coordinate]) -> Optional[Zone]:
    return locate_zone(tenant_zones(tenant_id), coordinate)


def match_zone_price(tenant_id, pickup_zone: Zone, dropoff_zone: Zone, vehicle_type: str) -> Optional[ZonePrice]:
    """Zone-pair flat fare for the trip, trying the reverse pair for reversible rules."""
    direct = ZonePrice.query.filter_by(
        tenant_id=tenant_id,
        pickup_zone_id=pickup_zone.id,
        dropoff_zone_id=dropoff_zone.id,
        vehicle_type=vehicle_type,
    ).order_by(ZonePrice.id).first()
    if direct:
        return direct

    return ZonePrice.query.filter_by(
        tenant_id=tenant_id,
        pickup_zone_id=dropoff_zone.id,
        dropoff_zone_id=pickup_zone.id,
        vehicle_type=vehicle_type,
        is_reverse=True,
    ).order_by(ZonePrice.id).first()
