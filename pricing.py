"""Fare calculation.

``calculate_price`` tries, in order: a tenant fixed-route fare, a zone-pair
fare (when the tenant prices by zone), and finally the metered tariff
``base_rate + per_mile * miles`` floored at ``min_fare``. Time-windowed
surcharges are then added on top and the result is rounded to the tenant's
currency. Pricing never raises into the booking flow: failures come back as
a flat degraded fare with ``breakdown.error`` set.
"""

import logging
import re
from dataclasses import asdict, dataclass, field
from datetime import datetime, time, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import List, Optional, Sequence, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from flask import current_app

from app import db
from errors import DistanceUnavailable, InvalidTariff, RecordNotFound
from geo import Coordinate
from models import FixedPrice, PricingRule, Surcharge, SurchargeType, Tenant, utcnow
from routing import get_distance_resolver
from zones import locate_zone, match_zone_price, tenant_zones

logger = logging.getLogger(__name__)

CURRENCY_MINOR_UNITS = {"GBP": 2, "EUR": 2, "USD": 2, "JPY": 0}


@dataclass
class PricingRequest:
    pickup: str
    dropoff: str
    tenant_id: int
    pickup_time: Optional[datetime] = None  # naive values are UTC
    vehicle_type: Optional[str] = None
    vias: Sequence[str] = ()
    distance_miles: Optional[float] = None
    is_wait_and_return: bool = False
    waiting_time: int = 0
    pickup_coord: Optional[Coordinate] = None
    dropoff_coord: Optional[Coordinate] = None


@dataclass
class SurchargeLine:
    name: str
    type: str
    value: Decimal
    amount: Decimal


@dataclass
class FareBreakdown:
    base: Decimal = Decimal("0")
    is_fixed: bool = False
    vehicle_type: Optional[str] = None
    tariff_source: Optional[str] = None
    base_rate: Optional[Decimal] = None
    mileage: Optional[Decimal] = None
    min_fare_applied: bool = False
    distance_miles: Optional[float] = None
    distance_source: Optional[str] = None
    fixed_price_id: Optional[int] = None
    zone_used: Optional[str] = None
    zone_price_id: Optional[int] = None
    surcharges: List[SurchargeLine] = field(default_factory=list)
    surcharge_total: Decimal = Decimal("0")
    is_wait_and_return: bool = False
    waiting_time: int = 0
    degraded: bool = False
    error: Optional[str] = None

    def to_dict(self):
        return _jsonable(asdict(self))


@dataclass
class PriceResult:
    price: Decimal
    breakdown: FareBreakdown

    def to_dict(self):
        return {"price": float(self.price), "breakdown": self.breakdown.to_dict()}


@dataclass
class Tariff:
    vehicle_type: str
    base_rate: Decimal
    per_mile: Decimal
    min_fare: Decimal
    source: str  # "tenant", "default_class" or "built_in"

    @classmethod
    def from_rule(cls, rule: PricingRule, source: str) -> "Tariff":
        return cls(rule.vehicle_type, to_money(rule.base_rate), to_money(rule.per_mile), to_money(rule.min_fare), source)


def _jsonable(value):
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_jsonable(v) for v in value]
    return value


def to_money(value) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def round_fare(amount: Decimal, currency: str = "GBP") -> Decimal:
    places = CURRENCY_MINOR_UNITS.get((currency or "GBP").upper(), 2)
    return amount.quantize(Decimal(1).scaleb(-places), rounding=ROUND_HALF_UP)


# ---------------- FIXED ROUTES ----------------
def normalize_address(text: Optional[str]) -> str:
    """Lower-case, punctuation to spaces, collapsed whitespace."""
    return re.sub(r"[^a-z0-9]+", " ", (text or "").lower()).strip()


def _equals(route_text, address):
    route_text = normalize_address(route_text)
    return bool(route_text) and route_text == address


def _contains(route_text, address):
    # Word-aligned so "ham" does not match "birmingham".
    route_text = normalize_address(route_text)
    return bool(route_text) and f" {route_text} " in f" {address} "


def match_fixed_price(tenant_id, pickup: str, dropoff: str, vehicle_type: str) -> Optional[FixedPrice]:
    """Find the tenant's named route for this trip.

    Exact matches beat contained matches, and direct matches beat reverse
    matches (only tried for ``is_reverse`` routes). Ties go to the oldest
    route.
    """
    routes = FixedPrice.query.filter_by(tenant_id=tenant_id, vehicle_type=vehicle_type).order_by(FixedPrice.id).all()
    if not routes:
        return None

    pickup_norm, dropoff_norm = normalize_address(pickup), normalize_address(dropoff)
    passes = ((False, _equals), (False, _contains), (True, _equals), (True, _contains))
    for reverse, matches in passes:
        start, end = (dropoff_norm, pickup_norm) if reverse else (pickup_norm, dropoff_norm)
        for route in routes:
            if reverse and not route.is_reverse:
                continue
            if matches(route.pickup, start) and matches(route.dropoff, end):
                return route
    return None


# ---------------- TARIFFS ----------------
def get_tariff(tenant_id, vehicle_type: str) -> PricingRule:
    rule = PricingRule.query.filter_by(tenant_id=tenant_id, vehicle_type=vehicle_type).first()
    if rule is None:
        raise InvalidTariff(f"Tenant {tenant_id} has no tariff for {vehicle_type!r}")
    return rule


def resolve_tariff(tenant_id, vehicle_type: str) -> Tariff:
    """Tenant tariff for the class, else the default class, else built-in rates."""
    default_type = current_app.config["DEFAULT_VEHICLE_TYPE"]
    try:
        return Tariff.from_rule(get_tariff(tenant_id, vehicle_type), "tenant")
    except InvalidTariff as e:
        logger.warning(f"{e}; falling back to {default_type}")

    if vehicle_type != default_type:
        try:
            return Tariff.from_rule(get_tariff(tenant_id, default_type), "default_class")
        except InvalidTariff as e:
            logger.warning(f"{e}; using built-in rates")

    config = current_app.config
    return Tariff(
        default_type,
        to_money(config["DEFAULT_BASE_RATE"]),
        to_money(config["DEFAULT_PER_MILE"]),
        to_money(config["DEFAULT_MIN_FARE"]),
        "built_in",
    )


def upsert_pricing_rule(tenant_id, vehicle_type, base_rate, per_mile, min_fare, name=None) -> PricingRule:
    rule = PricingRule.query.filter_by(tenant_id=tenant_id, vehicle_type=vehicle_type).first()
    if rule is None:
        rule = PricingRule(tenant_id=tenant_id, vehicle_type=vehicle_type)
        db.session.add(rule)
    rule.name = name or rule.name or vehicle_type
    rule.base_rate = to_money(base_rate)
    rule.per_mile = to_money(per_mile)
    rule.min_fare = to_money(min_fare)
    db.session.commit()
    logger.info(f"Tenant {tenant_id} - {vehicle_type} tariff: base={rule.base_rate}, per mile={rule.per_mile}, min={rule.min_fare}")
    return rule


def metered_fare(tariff: Tariff, miles: float) -> Tuple[Decimal, Decimal, bool]:
    """Return (fare, mileage, min_fare_applied) for a metered trip."""
    mileage = tariff.per_mile * Decimal(str(miles))
    fare = tariff.base_rate + mileage
    if fare < tariff.min_fare:
        return tariff.min_fare, mileage, True
    return fare, mileage, False


# ---------------- SURCHARGES ----------------
def _tz(name: Optional[str]):
    if not name or name.upper() == "UTC":
        return timezone.utc
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning(f"Unknown timezone {name!r}, using UTC")
        return timezone.utc


def local_wall_clock(at_time: datetime, tz_name: Optional[str]) -> datetime:
    """Naive tenant-local time for ``at_time`` (naive input is taken as UTC)."""
    if at_time.tzinfo is None:
        at_time = at_time.replace(tzinfo=timezone.utc)
    return at_time.astimezone(_tz(tz_name)).replace(tzinfo=None)


def _hhmm(text: str) -> time:
    hours, minutes = text.strip().split(":")[:2]
    return time(int(hours), int(minutes))


def surcharge_applies(surcharge: Surcharge, local_time: datetime) -> bool:
    """All configured conditions must hold; unset conditions always hold."""
    if surcharge.start_date and local_time < surcharge.start_date:
        return False
    if surcharge.end_date:
        # A bare date as end bound covers that whole day.
        if surcharge.end_date.time() == time.min:
            if local_time.date() > surcharge.end_date.date():
                return False
        elif local_time > surcharge.end_date:
            return False

    if surcharge.start_time and surcharge.end_time:
        start, end = _hhmm(surcharge.start_time), _hhmm(surcharge.end_time)
        now = local_time.time().replace(second=0, microsecond=0)
        if start <= end:
            in_window = start <= now <= end
        else:
            # Overnight window, e.g. 22:00 to 06:00
            in_window = now >= start or now <= end
        if not in_window:
            return False

    days = surcharge.days
    if days is not None and local_time.isoweekday() % 7 not in days:
        return False
    return True


def applicable_surcharges(tenant_id, at_time: datetime, tz_name: Optional[str] = None) -> List[Surcharge]:
    if tz_name is None:
        tenant = db.session.get(Tenant, tenant_id)
        tz_name = tenant.timezone if tenant else None
    local_time = local_wall_clock(at_time, tz_name)

    applicable = []
    for surcharge in Surcharge.query.filter_by(tenant_id=tenant_id).order_by(Surcharge.id).all():
        try:
            if surcharge_applies(surcharge, local_time):
                applicable.append(surcharge)
        except ValueError as e:
            logger.warning(f"Surcharge {surcharge.id} ({surcharge.name}) has an invalid window: {e}")
    return applicable


def apply_surcharges(base: Decimal, surcharges: Sequence[Surcharge]) -> Tuple[Decimal, List[SurchargeLine]]:
    """Total extra charge; every PERCENT surcharge is a share of the same ``base``."""
    total = Decimal("0")
    lines = []
    for surcharge in surcharges:
        value = to_money(surcharge.value)
        if surcharge.type == SurchargeType.PERCENT.value:
            amount = base * value / Decimal(100)
        else:
            amount = value
        total += amount
        lines.append(SurchargeLine(surcharge.name, surcharge.type, value, round_fare(amount)))
    return total, lines


# ---------------- COMPOSER ----------------
def degraded_price(request: PricingRequest, error: str) -> PriceResult:
    fare = round_fare(to_money(current_app.config["DEGRADED_FARE"]))
    breakdown = FareBreakdown(
        base=fare,
        vehicle_type=request.vehicle_type or current_app.config["DEFAULT_VEHICLE_TYPE"],
        is_wait_and_return=bool(request.is_wait_and_return),
        waiting_time=request.waiting_time or 0,
        degraded=True,
        error=error,
    )
    return PriceResult(fare, breakdown)


def _zone_fare(tenant, vehicle_type, endpoints, breakdown) -> Optional[Decimal]:
    zones = tenant_zones(tenant.id)
    if not zones:
        return None
    pickup_zone = locate_zone(zones, endpoints[0])
    dropoff_zone = locate_zone(zones, endpoints[1])
    if pickup_zone is None or dropoff_zone is None:
        return None

    rule = match_zone_price(tenant.id, pickup_zone, dropoff_zone, vehicle_type)
    if rule is None:
        logger.info(f"Tenant {tenant.id} - no zone fare for {pickup_zone.name} -> {dropoff_zone.name}")
        return None

    breakdown.zone_used = f"{pickup_zone.name} -> {dropoff_zone.name}"
    breakdown.zone_price_id = rule.id
    return to_money(rule.price)


def _calculate_price(request: PricingRequest) -> PriceResult:
    tenant = db.session.get(Tenant, request.tenant_id)
    if tenant is None:
        raise RecordNotFound(f"Unknown tenant {request.tenant_id}")

    vehicle_type = (request.vehicle_type or "").strip() or current_app.config["DEFAULT_VEHICLE_TYPE"]
    pickup_time = request.pickup_time or utcnow()
    breakdown = FareBreakdown(
        vehicle_type=vehicle_type,
        is_wait_and_return=bool(request.is_wait_and_return),
        waiting_time=request.waiting_time or 0,
    )

    # 1. Fixed route
    fixed = match_fixed_price(tenant.id, request.pickup, request.dropoff, vehicle_type)
    if fixed:
        base = to_money(fixed.price)
        breakdown.is_fixed = True
        breakdown.fixed_price_id = fixed.id
        with_surcharges = tenant.surcharge_fixed_prices
        logger.info(f"Tenant {tenant.id} - fixed route {fixed.id} matched: {base}")
    else:
        base = None
        with_surcharges = True
        resolver = get_distance_resolver()
        endpoints = (request.pickup_coord, request.dropoff_coord)

        # 2. Zone pair
        if tenant.zone_pricing:
            try:
                endpoints = (
                    resolver.locate(request.pickup, request.pickup_coord),
                    resolver.locate(request.dropoff, request.dropoff_coord),
                )
                base = _zone_fare(tenant, vehicle_type, endpoints, breakdown)
            except DistanceUnavailable as e:
                logger.warning(f"Tenant {tenant.id} - zone pricing skipped: {e}")

        # 3. Metered
        if base is None:
            tariff = resolve_tariff(tenant.id, vehicle_type)
            if request.distance_miles is not None:
                miles, source = float(request.distance_miles), "client"
            else:
                route = resolver.resolve_route(request.pickup, request.dropoff, endpoints[0], endpoints[1], request.vias)
                miles, source = route.miles, route.source
            base, mileage, floored = metered_fare(tariff, miles)
            breakdown.vehicle_type = tariff.vehicle_type
            breakdown.tariff_source = tariff.source
            breakdown.base_rate = tariff.base_rate
            breakdown.mileage = round_fare(mileage)
            breakdown.min_fare_applied = floored
            breakdown.distance_miles = round(miles, 2)
            breakdown.distance_source = source
            logger.info(f"Tenant {tenant.id} - metered fare: {tariff.base_rate} + {miles:.2f} mi x {tariff.per_mile} = {base}")

    breakdown.base = round_fare(base, tenant.currency)

    # 4. Surcharges
    extra = Decimal("0")
    if with_surcharges:
        extra, lines = apply_surcharges(base, applicable_surcharges(tenant.id, pickup_time, tenant.timezone))
        breakdown.surcharges = lines
        breakdown.surcharge_total = round_fare(extra, tenant.currency)

    price = round_fare(base + extra, tenant.currency)
    logger.info(f"Tenant {tenant.id} - price {price} (base {breakdown.base}, surcharges {breakdown.surcharge_total})")
    return PriceResult(price, breakdown)


def calculate_price(request: PricingRequest) -> PriceResult:
    """Price a trip. Always returns a fare; see ``breakdown.error`` for degraded results."""
    try:
        return _calculate_price(request)
    except DistanceUnavailable as e:
        logger.warning(f"Tenant {request.tenant_id} - distance unavailable, degraded fare: {e}")
        return degraded_price(request, f"Distance unavailable: {e}")
    except Exception as e:
        logger.exception(f"Tenant {request.tenant_id} - pricing failed, degraded fare")
        return degraded_price(request, f"Calculation failed: {e}")
