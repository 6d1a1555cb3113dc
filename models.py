import json
from datetime import datetime, timezone
from enum import Enum

from app import db
from errors import MalformedLocation
from geo import Coordinate, parse_location, serialize_location, parse_polygon


def utcnow():
    """Naive UTC timestamp; every DateTime column stores UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class JobStatus(str, Enum):
    PENDING = "PENDING"
    UNASSIGNED = "UNASSIGNED"
    DISPATCHED = "DISPATCHED"
    EN_ROUTE = "EN_ROUTE"
    ARRIVED = "ARRIVED"
    POB = "POB"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    NO_SHOW = "NO_SHOW"


class DriverStatus(str, Enum):
    OFF_DUTY = "OFF_DUTY"
    FREE = "FREE"
    BUSY = "BUSY"
    POB = "POB"


class SurchargeType(str, Enum):
    PERCENT = "PERCENT"
    FLAT = "FLAT"


ASSIGNABLE_JOB_STATUSES = (JobStatus.PENDING.value, JobStatus.UNASSIGNED.value)
TERMINAL_JOB_STATUSES = (JobStatus.COMPLETED.value, JobStatus.CANCELLED.value, JobStatus.NO_SHOW.value)
ACTIVE_JOB_STATUSES = (
    JobStatus.DISPATCHED.value,
    JobStatus.EN_ROUTE.value,
    JobStatus.ARRIVED.value,
    JobStatus.POB.value,
)


class Tenant(db.Model):
    __tablename__ = 'tenants'
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), nullable=False)
    slug = db.Column(db.String(100), unique=True, nullable=False)
    home_lat = db.Column(db.Float)
    home_lng = db.Column(db.Float)
    auto_dispatch = db.Column(db.Boolean, default=True, nullable=False)
    zone_pricing = db.Column(db.Boolean, default=False, nullable=False)
    zone_dispatch = db.Column(db.Boolean, default=False, nullable=False)
    surcharge_fixed_prices = db.Column(db.Boolean, default=True, nullable=False)
    currency = db.Column(db.String(3), default="GBP", nullable=False)
    timezone = db.Column(db.String(64), default="Europe/London", nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow)

    @property
    def home(self):
        return Coordinate.optional(self.home_lat, self.home_lng)


class PricingRule(db.Model):
    __tablename__ = 'pricing_rules'
    __table_args__ = (db.UniqueConstraint('tenant_id', 'vehicle_type', name='uq_pricing_rule_tenant_vehicle'),)
    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey('tenants.id'), nullable=False, index=True)
    name = db.Column(db.String(100))
    vehicle_type = db.Column(db.String(50), nullable=False)
    base_rate = db.Column(db.Numeric(10, 2), nullable=False)
    per_mile = db.Column(db.Numeric(10, 2), nullable=False)
    min_fare = db.Column(db.Numeric(10, 2), nullable=False, default=0)


class FixedPrice(db.Model):
    __tablename__ = 'fixed_prices'
    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey('tenants.id'), nullable=False, index=True)
    name = db.Column(db.String(100))
    pickup = db.Column(db.String(255), nullable=False)
    dropoff = db.Column(db.String(255), nullable=False)
    vehicle_type = db.Column(db.String(50), nullable=False, default="Saloon")
    price = db.Column(db.Numeric(10, 2), nullable=False)
    is_reverse = db.Column(db.Boolean, default=False, nullable=False)


class Surcharge(db.Model):
    __tablename__ = 'surcharges'
    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey('tenants.id'), nullable=False, index=True)
    name = db.Column(db.String(100), nullable=False)
    type = db.Column(db.String(10), nullable=False, default=SurchargeType.PERCENT.value)
    value = db.Column(db.Numeric(10, 2), nullable=False)
    start_date = db.Column(db.DateTime)
    end_date = db.Column(db.DateTime)
    start_time = db.Column(db.String(5))  # "HH:MM", tenant wall-clock
    end_time = db.Column(db.String(5))
    days_of_week = db.Column(db.String(20))  # "0,6" with 0 = Sunday

    @property
    def days(self):
        if not self.days_of_week:
            return None
        return {int(d) for d in self.days_of_week.split(",") if d.strip()}


class Zone(db.Model):
    __tablename__ = 'zones'
    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey('tenants.id'), nullable=False, index=True)
    name = db.Column(db.String(100), nullable=False)
    color = db.Column(db.String(20))
    coordinates = db.Column(db.Text, nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow)

    @property
    def polygon(self):
        return parse_polygon(self.coordinates)


class ZonePrice(db.Model):
    __tablename__ = 'zone_prices'
    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey('tenants.id'), nullable=False, index=True)
    pickup_zone_id = db.Column(db.Integer, db.ForeignKey('zones.id'), nullable=False)
    dropoff_zone_id = db.Column(db.Integer, db.ForeignKey('zones.id'), nullable=False)
    vehicle_type = db.Column(db.String(50), nullable=False, default="Saloon")
    price = db.Column(db.Numeric(10, 2), nullable=False)
    is_reverse = db.Column(db.Boolean, default=True, nullable=False)


class Driver(db.Model):
    __tablename__ = 'drivers'
    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey('tenants.id'), nullable=False, index=True)
    callsign = db.Column(db.String(20))
    name = db.Column(db.String(100))
    phone = db.Column(db.String(30))
    status = db.Column(db.String(10), default=DriverStatus.OFF_DUTY.value, nullable=False)
    location = db.Column(db.Text)  # {"lat": .., "lng": ..}
    location_updated_at = db.Column(db.DateTime)
    version = db.Column(db.Integer, default=0, nullable=False)

    @property
    def coordinate(self):
        """Last known location; raises MalformedLocation if the stored text is bad."""
        return parse_location(self.location)

    @coordinate.setter
    def coordinate(self, coord):
        self.location = serialize_location(coord)
        self.location_updated_at = utcnow()

    def to_dict(self):
        try:
            coord = self.coordinate
        except MalformedLocation:
            coord = None
        return {
            'id': self.id,
            'tenant_id': self.tenant_id,
            'callsign': self.callsign,
            'name': self.name,
            'status': self.status,
            'location': coord._asdict() if coord else None,
            'version': self.version,
        }


class Job(db.Model):
    __tablename__ = 'jobs'
    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey('tenants.id'), nullable=False, index=True)
    passenger_name = db.Column(db.String(100))
    passenger_phone = db.Column(db.String(30))
    passengers = db.Column(db.Integer, default=1)
    notes = db.Column(db.Text)
    pickup_address = db.Column(db.String(255), nullable=False)
    dropoff_address = db.Column(db.String(255), nullable=False)
    vias = db.Column(db.Text)  # JSON list of addresses
    pickup_lat = db.Column(db.Float)
    pickup_lng = db.Column(db.Float)
    dropoff_lat = db.Column(db.Float)
    dropoff_lng = db.Column(db.Float)
    vehicle_type = db.Column(db.String(50), default="Saloon", nullable=False)
    pickup_time = db.Column(db.DateTime, nullable=False, index=True)
    fare = db.Column(db.Numeric(10, 2))
    is_fixed_price = db.Column(db.Boolean, default=False, nullable=False)
    price_breakdown = db.Column(db.Text)
    is_wait_and_return = db.Column(db.Boolean, default=False, nullable=False)
    waiting_time = db.Column(db.Integer, default=0)
    is_return = db.Column(db.Boolean, default=False, nullable=False)
    parent_job_id = db.Column(db.Integer, db.ForeignKey('jobs.id'))
    return_job_id = db.Column(db.Integer, db.ForeignKey('jobs.id'))
    status = db.Column(db.String(20), default=JobStatus.PENDING.value, nullable=False, index=True)
    driver_id = db.Column(db.Integer, db.ForeignKey('drivers.id'), nullable=True)
    pre_assigned_driver_id = db.Column(db.Integer, db.ForeignKey('drivers.id'), nullable=True)
    dispatched_at = db.Column(db.DateTime)
    completed_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=utcnow)

    @property
    def pickup(self):
        return Coordinate.optional(self.pickup_lat, self.pickup_lng)

    @property
    def dropoff(self):
        return Coordinate.optional(self.dropoff_lat, self.dropoff_lng)

    @property
    def via_list(self):
        return json.loads(self.vias) if self.vias else []

    def to_dict(self):
        return {
            'id': self.id,
            'tenant_id': self.tenant_id,
            'status': self.status,
            'driver_id': self.driver_id,
            'pre_assigned_driver_id': self.pre_assigned_driver_id,
            'pickup_address': self.pickup_address,
            'dropoff_address': self.dropoff_address,
            'vias': self.via_list,
            'pickup_location': (self.pickup_lat, self.pickup_lng),
            'dropoff_location': (self.dropoff_lat, self.dropoff_lng),
            'vehicle_type': self.vehicle_type,
            'pickup_time': self.pickup_time.isoformat() if self.pickup_time else None,
            'fare': str(self.fare) if self.fare is not None else None,
            'is_fixed_price': self.is_fixed_price,
            'is_wait_and_return': self.is_wait_and_return,
            'waiting_time': self.waiting_time,
            'is_return': self.is_return,
            'parent_job_id': self.parent_job_id,
            'return_job_id': self.return_job_id,
            'price_breakdown': json.loads(self.price_breakdown) if self.price_breakdown else None,
            'dispatched_at': self.dispatched_at.isoformat() if self.dispatched_at else None,
        }
