import json
from datetime import timedelta

import pytest

from app import create_app, db
from geo import Coordinate
from models import Driver, DriverStatus, Job, PricingRule, Tenant, Zone, utcnow
from routing import DistanceResolver

# Addresses the fake geocoder knows about.
PLACES = {
    "Station Road": Coordinate(51.5000, -0.1000),
    "High Street": Coordinate(51.5000, -0.0800),
    "Market Square": Coordinate(51.5100, -0.1000),
    "Canary Wharf": Coordinate(51.5054, -0.0235),
}


class FakeGeocoder:
    def __init__(self, places):
        self.places = dict(places)
        self.calls = []

    def geocode(self, address):
        self.calls.append(address)
        return self.places.get(address)


@pytest.fixture
def geocoder():
    return FakeGeocoder(PLACES)


@pytest.fixture
def app(geocoder):
    app = create_app('config.TestConfig')
    app.extensions["distance_resolver"] = DistanceResolver(geocoder=geocoder)
    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def make_tenant(app):
    def _make(slug="acme", **fields):
        fields.setdefault("name", slug.title())
        fields.setdefault("timezone", "UTC")
        tenant = Tenant(slug=slug, **fields)
        db.session.add(tenant)
        db.session.commit()
        return tenant
    return _make


@pytest.fixture
def tenant(make_tenant):
    tenant = make_tenant()
    db.session.add(PricingRule(tenant_id=tenant.id, name="Saloon", vehicle_type="Saloon",
                               base_rate=3.50, per_mile=2.20, min_fare=5.00))
    db.session.commit()
    return tenant


@pytest.fixture
def make_driver(app):
    def _make(tenant, lat=None, lng=None, status=DriverStatus.FREE.value, callsign=None, location=None):
        driver = Driver(tenant_id=tenant.id, callsign=callsign, name=callsign or "Driver", status=status)
        if location is not None:
            driver.location = location
        elif lat is not None:
            driver.coordinate = Coordinate(lat, lng)
        db.session.add(driver)
        db.session.commit()
        return driver
    return _make


@pytest.fixture
def make_job(app):
    def _make(tenant, lat=None, lng=None, minutes=10, **fields):
        fields.setdefault("pickup_address", "Station Road")
        fields.setdefault("dropoff_address", "High Street")
        job = Job(
            tenant_id=tenant.id,
            pickup_lat=lat,
            pickup_lng=lng,
            pickup_time=utcnow() + timedelta(minutes=minutes),
            **fields,
        )
        db.session.add(job)
        db.session.commit()
        return job
    return _make


@pytest.fixture
def make_zone(app):
    def _make(tenant, name, south, west, north, east):
        zone = Zone(
            tenant_id=tenant.id,
            name=name,
            coordinates=json.dumps([
                {"lat": south, "lng": west},
                {"lat": south, "lng": east},
                {"lat": north, "lng": east},
                {"lat": north, "lng": west},
            ]),
        )
        db.session.add(zone)
        db.session.commit()
        return zone
    return _make
