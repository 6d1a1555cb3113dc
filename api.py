import json
import logging
from datetime import timedelta, timezone
from decimal import Decimal

from flask import Blueprint, jsonify, request
from pydantic import ValidationError

from app import db
from allocation import (
    assign_job,
    run_dispatch_for_all_tenants,
    run_dispatch_loop,
    set_driver_status,
    update_driver_location,
    update_job_status,
)
from errors import DriverUnavailable, InvalidTransition, JobUnavailable, RecordNotFound, StaleDriverState
from geo import Coordinate
from models import Driver, Job, Tenant, utcnow
from pricing import PricingRequest, calculate_price, degraded_price
from schemas import (
    AssignRequest,
    BookingRequest,
    DriverStatusUpdate,
    JobStatusUpdate,
    LocationUpdate,
    PriceQuoteRequest,
)

logger = logging.getLogger(__name__)

bp = Blueprint('api', __name__, url_prefix='/api')


def _utc_naive(value):
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _json_body():
    body = request.get_json(silent=True)
    return body if isinstance(body, dict) else {}


def _invalid(e: ValidationError):
    return jsonify({'error': 'Invalid data', 'details': json.loads(e.json(include_url=False))}), 400


@bp.errorhandler(RecordNotFound)
def not_found(e):
    return jsonify({'error': str(e)}), 404


@bp.errorhandler(InvalidTransition)
def invalid_transition(e):
    return jsonify({'error': str(e)}), 400


@bp.errorhandler(DriverUnavailable)
@bp.errorhandler(JobUnavailable)
@bp.errorhandler(StaleDriverState)
def conflict(e):
    return jsonify({'error': str(e), 'reason': type(e).__name__}), 409


@bp.route('/health')
def health():
    return jsonify({'status': 'ok'})


# ---------------- PRICING ----------------
@bp.route('/pricing/calculate', methods=['POST'])
def pricing_calculate():
    body = _json_body()
    try:
        quote = PriceQuoteRequest.model_validate(body)
    except ValidationError as e:
        # Still answer with a fare so the booking form can carry on.
        logger.warning(f"Pricing request validation failed: {e.error_count()} errors")
        fallback = degraded_price(
            PricingRequest(pickup='', dropoff='', tenant_id=0, vehicle_type=body.get('vehicle_type')),
            'Invalid data',
        )
        payload = fallback.to_dict()
        payload['error'] = 'Invalid data'
        payload['details'] = json.loads(e.json(include_url=False))
        return jsonify(payload)

    result = calculate_price(PricingRequest(
        pickup=quote.pickup,
        dropoff=quote.dropoff,
        tenant_id=quote.tenant_id,
        pickup_time=quote.pickup_time,
        vehicle_type=quote.vehicle_type,
        vias=[v.address for v in quote.vias],
        distance_miles=quote.distance,
        is_wait_and_return=quote.is_wait_and_return,
        waiting_time=quote.waiting_time,
        pickup_coord=Coordinate.optional(quote.pickup_lat, quote.pickup_lng),
        dropoff_coord=Coordinate.optional(quote.dropoff_lat, quote.dropoff_lng),
    ))
    payload = result.to_dict()
    if result.breakdown.error:
        payload['error'] = result.breakdown.error
    return jsonify(payload)


# ---------------- JOBS ----------------
def _priced_job(booking, tenant, pickup, dropoff, pickup_coord, dropoff_coord, pickup_time, vias, fare=None):
    job = Job(
        tenant_id=tenant.id,
        passenger_name=booking.passenger_name,
        passenger_phone=booking.passenger_phone,
        passengers=booking.passengers,
        notes=booking.notes,
        pickup_address=pickup,
        dropoff_address=dropoff,
        vias=json.dumps(vias) if vias else None,
        pickup_lat=pickup_coord.lat if pickup_coord else None,
        pickup_lng=pickup_coord.lng if pickup_coord else None,
        dropoff_lat=dropoff_coord.lat if dropoff_coord else None,
        dropoff_lng=dropoff_coord.lng if dropoff_coord else None,
        vehicle_type=booking.vehicle_type,
        pickup_time=pickup_time,
    )
    if fare is not None:
        job.fare = Decimal(str(fare))
        return job

    result = calculate_price(PricingRequest(
        pickup=pickup,
        dropoff=dropoff,
        tenant_id=tenant.id,
        pickup_time=pickup_time,
        vehicle_type=booking.vehicle_type,
        vias=vias,
        distance_miles=booking.distance,
        is_wait_and_return=booking.is_wait_and_return,
        waiting_time=booking.waiting_time,
        pickup_coord=pickup_coord,
        dropoff_coord=dropoff_coord,
    ))
    job.fare = result.price
    job.is_fixed_price = result.breakdown.is_fixed
    job.price_breakdown = json.dumps(result.breakdown.to_dict())
    return job


@bp.route('/jobs', methods=['POST'])
def create_job():
    try:
        booking = BookingRequest.model_validate(_json_body())
    except ValidationError as e:
        return _invalid(e)

    tenant = db.session.get(Tenant, booking.tenant_id)
    if tenant is None:
        raise RecordNotFound(f"Tenant {booking.tenant_id} not found")

    pickup_time = _utc_naive(booking.pickup_time) or utcnow()
    pickup_coord = Coordinate.optional(booking.pickup_lat, booking.pickup_lng)
    dropoff_coord = Coordinate.optional(booking.dropoff_lat, booking.dropoff_lng)
    vias = [v.address for v in booking.vias]

    job = _priced_job(booking, tenant, booking.pickup_address, booking.dropoff_address,
                      pickup_coord, dropoff_coord, pickup_time, vias, fare=booking.fare)
    job.is_wait_and_return = booking.is_wait_and_return
    job.waiting_time = booking.waiting_time if booking.is_wait_and_return else 0
    job.pre_assigned_driver_id = booking.pre_assigned_driver_id
    db.session.add(job)
    db.session.flush()

    return_job = None
    if booking.is_wait_and_return:
        return_time = _utc_naive(booking.return_time) or pickup_time + timedelta(minutes=booking.waiting_time)
        return_job = _priced_job(booking, tenant, booking.dropoff_address, booking.pickup_address,
                                 dropoff_coord, pickup_coord, return_time, list(reversed(vias)))
        return_job.is_return = True
        return_job.parent_job_id = job.id
        return_job.pre_assigned_driver_id = booking.pre_assigned_driver_id
        db.session.add(return_job)
        db.session.flush()
        job.return_job_id = return_job.id

    db.session.commit()
    logger.info(f"Job {job.id} created for tenant {tenant.id} with fare {job.fare}")

    job_id, return_job_id, tenant_id = job.id, return_job.id if return_job else None, tenant.id
    dispatch = None
    try:
        dispatch = run_dispatch_loop(tenant_id).to_dict()
    except Exception as e:
        # The booking is already stored; the scheduler will pick it up.
        db.session.rollback()
        logger.error(f"Post-creation dispatch failed for tenant {tenant_id}: {e}")

    created = db.session.get(Job, job_id)
    returned = db.session.get(Job, return_job_id) if return_job_id else None
    return jsonify({
        'job': created.to_dict(),
        'return_job': returned.to_dict() if returned else None,
        'dispatch': dispatch,
    }), 201


@bp.route('/jobs')
def list_jobs():
    query = Job.query
    if request.args.get('tenant_id'):
        query = query.filter_by(tenant_id=request.args.get('tenant_id', type=int))
    if request.args.get('status'):
        query = query.filter_by(status=request.args['status'].upper())
    return jsonify([job.to_dict() for job in query.order_by(Job.pickup_time, Job.id).all()])


@bp.route('/jobs/<int:job_id>/assign', methods=['PATCH'])
def assign(job_id):
    try:
        body = AssignRequest.model_validate(_json_body())
    except ValidationError as e:
        return _invalid(e)

    if db.session.get(Job, job_id) is None:
        raise RecordNotFound(f"Job {job_id} not found")
    if db.session.get(Driver, body.driver_id) is None:
        raise RecordNotFound(f"Driver {body.driver_id} not found")

    job = assign_job(job_id, body.driver_id)
    return jsonify(job.to_dict())


@bp.route('/jobs/<int:job_id>/status', methods=['POST'])
def job_status(job_id):
    try:
        body = JobStatusUpdate.model_validate(_json_body())
    except ValidationError as e:
        return _invalid(e)

    job = update_job_status(job_id, body.status, driver_id=body.driver_id,
                            location=Coordinate.optional(body.lat, body.lng))
    return jsonify(job.to_dict())


# ---------------- DRIVERS ----------------
@bp.route('/drivers')
def list_drivers():
    query = Driver.query
    if request.args.get('tenant_id'):
        query = query.filter_by(tenant_id=request.args.get('tenant_id', type=int))
    return jsonify([driver.to_dict() for driver in query.order_by(Driver.id).all()])


@bp.route('/drivers/<int:driver_id>/status', methods=['POST'])
def driver_status(driver_id):
    try:
        body = DriverStatusUpdate.model_validate(_json_body())
    except ValidationError as e:
        return _invalid(e)

    driver = set_driver_status(driver_id, body.status, expected_version=body.version)
    return jsonify({'success': True, 'status': driver.status, 'version': driver.version})


@bp.route('/drivers/<int:driver_id>/location', methods=['POST'])
def driver_location(driver_id):
    try:
        body = LocationUpdate.model_validate(_json_body())
    except ValidationError as e:
        return _invalid(e)

    zone = update_driver_location(driver_id, Coordinate.of(body.lat, body.lng))
    return jsonify({'success': True, 'current_zone_id': zone.id if zone else None})


# ---------------- DISPATCH ----------------
@bp.route('/dispatch/auto', methods=['POST'])
def dispatch_all():
    reports = run_dispatch_for_all_tenants()
    return jsonify({'success': True, 'results': [r.to_dict() for r in reports]})


@bp.route('/dispatch/<int:tenant_id>', methods=['POST'])
def dispatch_tenant(tenant_id):
    if db.session.get(Tenant, tenant_id) is None:
        raise RecordNotFound(f"Tenant {tenant_id} not found")
    return jsonify(run_dispatch_loop(tenant_id).to_dict())
