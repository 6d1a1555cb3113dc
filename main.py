"""Taxi Dispatch Backend

Multi-tenant fare calculation and automatic driver dispatch for taxi operators.
Each tenant (operator) has its own tariffs, fixed routes, surcharges, zones and
drivers; a background scheduler offers unassigned jobs to the nearest FREE
driver every few seconds.

Commands:
  - Initialize DB (creates tables):
      python main.py init_db

  - Seed a demo operator (tariffs, routes, zones, drivers and pending jobs):
      python main.py seed

  - Run one dispatch pass for every auto-dispatch tenant:
      python main.py dispatch

  - Run server (JSON API under /api, scheduler included):
      python main.py runserver

Job Lifecycle:
  - PENDING: booked, waiting for a driver
  - DISPATCHED: assigned to a driver (automatically or by a dispatcher)
  - EN_ROUTE / ARRIVED / POB: reported by the driver
  - COMPLETED / CANCELLED / NO_SHOW: terminal, the driver is freed
"""

import json
import math
import random
import sys
import logging
from datetime import timedelta
from faker import Faker

# Set up logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Demo constants
CITY_CENTER = (51.5074, -0.1278)  # London
CITY_RADIUS_MILES = 6
NUM_DRIVERS = 12
NUM_JOBS = 8

faker = Faker('en_GB')

from app import create_app, db
from geo import Coordinate
from models import (
    Driver,
    DriverStatus,
    FixedPrice,
    Job,
    Surcharge,
    SurchargeType,
    Tenant,
    Zone,
    ZonePrice,
    utcnow,
)
from pricing import PricingRequest, calculate_price, upsert_pricing_rule
from allocation import run_dispatch_for_all_tenants

# Create Flask application
app = create_app()


# ---------------- HELPERS ----------------
def random_point_within_miles(center, radius_miles):
    """Random point within ``radius_miles`` of ``center``."""
    # 1 deg lat ~ 69 miles; 1 deg lng ~ 69 miles * cos(lat)
    r = random.random() ** 0.5 * radius_miles
    theta = random.random() * 2 * math.pi
    dlat = r * math.sin(theta) / 69.0
    dlng = r * math.cos(theta) / (69.0 * math.cos(math.radians(center[0])))
    return Coordinate.of(center[0] + dlat, center[1] + dlng)


def box(center, half_side_miles):
    """Square zone polygon around ``center`` as a JSON vertex list."""
    dlat = half_side_miles / 69.0
    dlng = half_side_miles / (69.0 * math.cos(math.radians(center[0])))
    lat, lng = center
    return json.dumps([
        {"lat": lat - dlat, "lng": lng - dlng},
        {"lat": lat - dlat, "lng": lng + dlng},
        {"lat": lat + dlat, "lng": lng + dlng},
        {"lat": lat + dlat, "lng": lng - dlng},
    ])


# ---------------- SEEDING ----------------
def seed_tenant():
    """Create the demo operator with its tariffs and pricing rules."""
    tenant = Tenant.query.filter_by(slug='demo-cars').first()
    if tenant:
        logger.info("Demo tenant already exists")
        return tenant

    tenant = Tenant(
        name='Demo Cars',
        slug='demo-cars',
        home_lat=CITY_CENTER[0],
        home_lng=CITY_CENTER[1],
        zone_pricing=True,
        zone_dispatch=True,
    )
    db.session.add(tenant)
    db.session.commit()

    rates = {
        'Saloon': (3.50, 2.20, 5.00),
        'Estate': (4.00, 2.50, 6.00),
        'MPV': (5.00, 3.00, 8.00),
        'Executive': (8.00, 3.80, 15.00),
    }
    for vehicle_type, (base_rate, per_mile, min_fare) in rates.items():
        upsert_pricing_rule(tenant.id, vehicle_type, base_rate, per_mile, min_fare)

    db.session.add(FixedPrice(
        tenant_id=tenant.id, name='Heathrow run', pickup='London Victoria',
        dropoff='Heathrow Airport', vehicle_type='Saloon', price=55, is_reverse=True,
    ))
    db.session.add(Surcharge(
        tenant_id=tenant.id, name='Night rate', type=SurchargeType.PERCENT.value,
        value=20, start_time='23:00', end_time='05:00',
    ))
    db.session.add(Surcharge(
        tenant_id=tenant.id, name='Weekend', type=SurchargeType.FLAT.value,
        value=2, days_of_week='0,6',
    ))

    central = Zone(tenant_id=tenant.id, name='Central', color='#2b8a3e', coordinates=box(CITY_CENTER, 2))
    east = Zone(tenant_id=tenant.id, name='Canary Wharf', color='#1864ab', coordinates=box((51.5054, -0.0235), 1))
    db.session.add_all([central, east])
    db.session.flush()
    db.session.add(ZonePrice(
        tenant_id=tenant.id, pickup_zone_id=central.id, dropoff_zone_id=east.id,
        vehicle_type='Saloon', price=22, is_reverse=True,
    ))
    db.session.commit()
    logger.info(f"Seeded tenant {tenant.id} ({tenant.name})")
    return tenant


def seed_drivers(tenant):
    """Put demo drivers on shift around the city centre."""
    if Driver.query.filter_by(tenant_id=tenant.id).count() > 0:
        logger.info("Drivers already seeded")
        return

    for i in range(NUM_DRIVERS):
        driver = Driver(
            tenant_id=tenant.id,
            callsign=f"D{i + 1:02d}",
            name=faker.name(),
            phone=faker.phone_number(),
            status=random.choice([DriverStatus.FREE.value] * 3 + [DriverStatus.OFF_DUTY.value]),
        )
        driver.coordinate = random_point_within_miles(CITY_CENTER, CITY_RADIUS_MILES)
        db.session.add(driver)
    db.session.commit()
    logger.info(f"Seeded {NUM_DRIVERS} drivers")


def seed_jobs(tenant):
    """Book a handful of priced jobs due within the next hour."""
    now = utcnow()
    for _ in range(NUM_JOBS):
        pickup = random_point_within_miles(CITY_CENTER, CITY_RADIUS_MILES)
        dropoff = random_point_within_miles(CITY_CENTER, CITY_RADIUS_MILES)
        pickup_address = faker.street_address()
        dropoff_address = faker.street_address()
        pickup_time = now + timedelta(minutes=random.randint(5, 55))

        result = calculate_price(PricingRequest(
            pickup=pickup_address,
            dropoff=dropoff_address,
            tenant_id=tenant.id,
            pickup_time=pickup_time,
            vehicle_type='Saloon',
            pickup_coord=pickup,
            dropoff_coord=dropoff,
        ))
        db.session.add(Job(
            tenant_id=tenant.id,
            passenger_name=faker.name(),
            passenger_phone=faker.phone_number(),
            pickup_address=pickup_address,
            dropoff_address=dropoff_address,
            pickup_lat=pickup.lat,
            pickup_lng=pickup.lng,
            dropoff_lat=dropoff.lat,
            dropoff_lng=dropoff.lng,
            pickup_time=pickup_time,
            fare=result.price,
            is_fixed_price=result.breakdown.is_fixed,
            price_breakdown=json.dumps(result.breakdown.to_dict()),
        ))
    db.session.commit()
    logger.info(f"Seeded {NUM_JOBS} pending jobs")


# ---------------- CLI ENTRYPOINT ----------------
def init_db():
    """Initialize the database tables"""
    with app.app_context():
        db.create_all()
        logger.info("Database initialized")


def seed():
    with app.app_context():
        db.create_all()
        tenant = seed_tenant()
        seed_drivers(tenant)
        seed_jobs(tenant)


def dispatch():
    """Run one dispatch pass and print what happened"""
    with app.app_context():
        reports = run_dispatch_for_all_tenants()
        if not reports:
            logger.info("Nothing to dispatch")
        for report in reports:
            logger.info(f"Tenant {report.tenant_id}: {report.assigned} assigned, "
                        f"{report.failed} failed of {report.total_pending} pending")
            for line in report.details:
                logger.info(f"  {line}")


def run_server():
    """Run the Flask server"""
    with app.app_context():
        db.create_all()

    # The reloader would start a second scheduler
    app.run(debug=True, host='0.0.0.0', port=5000, use_reloader=False)


if __name__ == '__main__':
    if len(sys.argv) < 2:
        print("Usage: python main.py [init_db|seed|dispatch|runserver]")
        sys.exit(1)

    command = sys.argv[1]

    if command == 'init_db':
        init_db()
    elif command == 'seed':
        seed()
    elif command == 'dispatch':
        dispatch()
    elif command == 'runserver':
        run_server()
    else:
        print("Unknown command. Available commands: init_db, seed, dispatch, runserver")
        sys.exit(1)
