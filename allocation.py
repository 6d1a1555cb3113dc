"""Driver allocation.

The dispatch pass scans a tenant's unassigned jobs that are due soon,
earliest pickup first, and offers each one to the nearest FREE driver.
Every assignment goes through ``assign_job``, which flips the job and the
driver together in one transaction using conditional updates, so a pass that
loses a race to another pass (or to a dispatcher, or to the driver going off
duty) fails cleanly instead of double-booking anybody.
"""

import logging
import threading
from collections import defaultdict
from dataclasses import asdict, dataclass, field
from datetime import timedelta
from typing import List, NamedTuple, Optional, Tuple

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from app import db
from errors import (
    DispatchError,
    DriverUnavailable,
    InvalidTransition,
    JobUnavailable,
    MalformedLocation,
    NoCandidateDriver,
    RecordNotFound,
    StaleDriverState,
)
from geo import Coordinate, haversine_miles, point_in_polygon
from models import (
    ACTIVE_JOB_STATUSES,
    ASSIGNABLE_JOB_STATUSES,
    TERMINAL_JOB_STATUSES,
    Driver,
    DriverStatus,
    Job,
    JobStatus,
    Tenant,
    utcnow,
)
from zones import find_zone, locate_zone, tenant_zones

logger = logging.getLogger(__name__)

# Job progress a driver may report; assignment (-> DISPATCHED) only happens in assign_job.
JOB_TRANSITIONS = {
    JobStatus.DISPATCHED.value: {JobStatus.EN_ROUTE.value},
    JobStatus.EN_ROUTE.value: {JobStatus.ARRIVED.value},
    JobStatus.ARRIVED.value: {JobStatus.POB.value},
    JobStatus.POB.value: {JobStatus.COMPLETED.value},
}
SELF_REPORTED_DRIVER_STATUSES = (DriverStatus.FREE.value, DriverStatus.OFF_DUTY.value)

_tenant_locks = defaultdict(threading.Lock)
_tenant_locks_guard = threading.Lock()


class Candidate(NamedTuple):
    id: int
    callsign: Optional[str]
    coordinate: Coordinate


@dataclass
class DispatchReport:
    tenant_id: int
    total_pending: int = 0
    assigned: int = 0
    failed: int = 0
    skipped: int = 0
    skipped_reason: Optional[str] = None
    details: List[str] = field(default_factory=list)

    def to_dict(self):
        return asdict(self)


def _tenant_lock(tenant_id) -> threading.Lock:
    with _tenant_locks_guard:
        return _tenant_locks[tenant_id]


# ---------------- CANDIDATES ----------------
def find_available_drivers(tenant_id) -> List[Driver]:
    """FREE drivers with a usable last-known location."""
    drivers = Driver.query.filter_by(tenant_id=tenant_id, status=DriverStatus.FREE.value).order_by(Driver.id).all()
    available = []
    excluded = {"no_location": 0, "bad_location": 0}
    for driver in drivers:
        try:
            coordinate = driver.coordinate
        except MalformedLocation as e:
            logger.warning(f"Driver {driver.id} excluded: unreadable location ({e})")
            excluded["bad_location"] += 1
            continue
        if coordinate is None:
            excluded["no_location"] += 1
            continue
        available.append(driver)

    logger.info(f"Tenant {tenant_id} - {len(available)} available drivers, exclusion stats: {excluded}")
    return available


def rank_by_proximity(pickup: Coordinate, drivers) -> List[Tuple[object, float]]:
    """(driver, miles) pairs, nearest first; ties go to the lower driver id."""
    ranked = [(driver, haversine_miles(driver.coordinate, pickup)) for driver in drivers]
    ranked.sort(key=lambda item: (item[1], item[0].id))
    return ranked


# ---------------- STATE TRANSITIONS ----------------
def has_active_job(driver_id, exclude_job_id=None) -> bool:
    query = Job.query.filter(Job.driver_id == driver_id, Job.status.in_(ACTIVE_JOB_STATUSES))
    if exclude_job_id is not None:
        query = query.filter(Job.id != exclude_job_id)
    return db.session.query(query.exists()).scalar()


def assign_job(job_id, driver_id) -> Job:
    """Give ``job_id`` to ``driver_id``: job -> DISPATCHED and driver -> BUSY, atomically.

    Both writes are conditional, so whichever concurrent caller commits first
    wins and the other sees zero rows updated and gets rolled back.

    Raises DriverUnavailable when the driver is not FREE (or not in the job's
    tenant) and JobUnavailable when the job is no longer waiting for a driver.
    """
    try:
        job = db.session.get(Job, job_id)
        if job is None:
            raise JobUnavailable(f"Job {job_id} not found")

        driver_claimed = Driver.query.filter(
            Driver.id == driver_id,
            Driver.tenant_id == job.tenant_id,
            Driver.status == DriverStatus.FREE.value,
        ).update(
            {Driver.status: DriverStatus.BUSY.value, Driver.version: Driver.version + 1},
            synchronize_session=False,
        )
        if not driver_claimed:
            raise DriverUnavailable(f"Driver {driver_id} is not available")

        job_claimed = Job.query.filter(
            Job.id == job_id,
            Job.status.in_(ASSIGNABLE_JOB_STATUSES),
            Job.driver_id.is_(None),
        ).update(
            {Job.status: JobStatus.DISPATCHED.value, Job.driver_id: driver_id, Job.dispatched_at: utcnow()},
            synchronize_session=False,
        )
        if not job_claimed:
            raise JobUnavailable(f"Job {job_id} is no longer waiting for a driver")

        db.session.commit()
    except (DispatchError, SQLAlchemyError):
        db.session.rollback()
        raise

    logger.info(f"Job {job_id} dispatched to driver {driver_id}")
    return job


def _release_driver(driver_id, job_id):
    if has_active_job(driver_id, exclude_job_id=job_id):
        return
    Driver.query.filter(
        Driver.id == driver_id,
        Driver.status.in_((DriverStatus.BUSY.value, DriverStatus.POB.value)),
    ).update(
        {Driver.status: DriverStatus.FREE.value, Driver.version: Driver.version + 1},
        synchronize_session=False,
    )


def update_job_status(job_id, status, driver_id=None, location: Optional[Coordinate] = None) -> Job:
    """Move a job along its lifecycle as reported by its driver (or a dispatcher).

    POB also puts the driver in POB; a terminal status frees the driver
    unless they still hold another active job.
    """
    job = db.session.get(Job, job_id)
    if job is None:
        raise RecordNotFound(f"Job {job_id} not found")
    if driver_id is not None and job.driver_id != driver_id:
        raise InvalidTransition(f"Driver {driver_id} is not assigned to job {job_id}")

    try:
        new_status = JobStatus(status).value
    except ValueError:
        raise InvalidTransition(f"Unknown job status {status!r}")

    current = job.status
    if current in TERMINAL_JOB_STATUSES:
        raise InvalidTransition(f"Job {job_id} is already {current}")
    allowed = set(JOB_TRANSITIONS.get(current, ())) | {JobStatus.CANCELLED.value, JobStatus.NO_SHOW.value}
    if new_status not in allowed:
        raise InvalidTransition(f"Job {job_id} cannot go from {current} to {new_status}")

    holder = job.driver_id
    values = {Job.status: new_status}
    if new_status == JobStatus.COMPLETED.value:
        values[Job.completed_at] = utcnow()

    try:
        updated = Job.query.filter(Job.id == job_id, Job.status == current).update(values, synchronize_session=False)
        if not updated:
            raise JobUnavailable(f"Job {job_id} changed while updating it")

        if holder is not None:
            if new_status == JobStatus.POB.value:
                Driver.query.filter(Driver.id == holder, Driver.status == DriverStatus.BUSY.value).update(
                    {Driver.status: DriverStatus.POB.value, Driver.version: Driver.version + 1},
                    synchronize_session=False,
                )
            elif new_status in TERMINAL_JOB_STATUSES:
                _release_driver(holder, job_id)

            if location is not None:
                driver = db.session.get(Driver, holder)
                driver.coordinate = location

        db.session.commit()
    except (DispatchError, SQLAlchemyError):
        db.session.rollback()
        raise

    logger.info(f"Job {job_id} - {current} -> {new_status}")
    return job


def set_driver_status(driver_id, status, expected_version=None) -> Driver:
    """Driver self-report (FREE / OFF_DUTY) guarded by an optimistic version check.

    A driver cannot be auto-assigned and go off duty at the same time: one of
    the two writes finds the version or status changed and loses.
    """
    driver = db.session.get(Driver, driver_id)
    if driver is None:
        raise RecordNotFound(f"Driver {driver_id} not found")

    try:
        new_status = DriverStatus(status).value
    except ValueError:
        raise InvalidTransition(f"Unknown driver status {status!r}")
    if new_status not in SELF_REPORTED_DRIVER_STATUSES:
        raise InvalidTransition(f"Drivers cannot set themselves {new_status}")

    version = driver.version if expected_version is None else expected_version
    if driver.status == new_status and driver.version == version:
        return driver
    if has_active_job(driver_id):
        raise DriverUnavailable(f"Driver {driver_id} has an active job")

    try:
        updated = Driver.query.filter(Driver.id == driver_id, Driver.version == version).update(
            {Driver.status: new_status, Driver.version: version + 1},
            synchronize_session=False,
        )
        if not updated:
            raise StaleDriverState(f"Driver {driver_id} changed since version {version}")
        db.session.commit()
    except (DispatchError, SQLAlchemyError):
        db.session.rollback()
        raise

    logger.info(f"Driver {driver_id} - status {new_status}")
    return driver


def update_driver_location(driver_id, coordinate: Coordinate):
    """Store the driver's position and return the tenant zone they are in, if any."""
    driver = db.session.get(Driver, driver_id)
    if driver is None:
        raise RecordNotFound(f"Driver {driver_id} not found")
    driver.coordinate = coordinate
    db.session.commit()
    return find_zone(driver.tenant_id, coordinate)


# ---------------- DISPATCH LOOP ----------------
def pending_jobs(tenant_id, now=None) -> List[Job]:
    """Unassigned jobs due within the dispatch window, earliest pickup first."""
    now = now or utcnow()
    config = current_app.config
    window_start = now - timedelta(minutes=config["DISPATCH_LOOKBACK_MINUTES"])
    window_end = now + timedelta(minutes=config["DISPATCH_LOOKAHEAD_MINUTES"])
    return Job.query.filter(
        Job.tenant_id == tenant_id,
        Job.status.in_(ASSIGNABLE_JOB_STATUSES),
        Job.driver_id.is_(None),
        Job.pickup_time >= window_start,
        Job.pickup_time <= window_end,
    ).order_by(Job.pickup_time, Job.id).all()


def _candidate_order(job: Job, pool: List[Candidate], zones) -> List[Tuple[Candidate, Optional[float]]]:
    pickup = job.pickup
    choices = pool

    # Zone dispatch: prefer drivers already inside the pickup zone.
    if zones and pickup is not None:
        zone = locate_zone(zones, pickup)
        if zone is not None:
            polygon = zone.polygon
            in_zone = [c for c in pool if point_in_polygon(c.coordinate, polygon)]
            if in_zone:
                choices = in_zone

    if pickup is not None:
        ordered = rank_by_proximity(pickup, choices)
    else:
        ordered = [(c, None) for c in choices]

    # A soft reservation goes first when that driver is free.
    if job.pre_assigned_driver_id is not None:
        reserved = [item for item in ordered if item[0].id == job.pre_assigned_driver_id]
        if not reserved:
            reserved = [(c, None) for c in pool if c.id == job.pre_assigned_driver_id]
        if reserved:
            ordered = reserved + [item for item in ordered if item[0].id != job.pre_assigned_driver_id]
    return ordered


def _dispatch_job(job: Job, pool: List[Candidate], zones, max_attempts: int) -> Tuple[Candidate, Optional[float]]:
    job_id = job.id
    ordered = _candidate_order(job, pool, zones)
    if not ordered:
        raise NoCandidateDriver(f"Job {job_id} could not find a driver.")

    for candidate, miles in ordered[:max_attempts]:
        try:
            assign_job(job_id, candidate.id)
            return candidate, miles
        except DriverUnavailable as e:
            logger.info(f"Job {job_id} - {e}; trying next candidate")
            pool.remove(candidate)

    raise NoCandidateDriver(f"Job {job_id} lost every candidate to other assignments.")


def _dispatch_pass(tenant_id, report: DispatchReport) -> DispatchReport:
    tenant = db.session.get(Tenant, tenant_id)
    if tenant is None:
        report.skipped_reason = "unknown tenant"
        return report
    if not tenant.auto_dispatch:
        logger.info(f"Auto-dispatch disabled for tenant {tenant_id}")
        report.skipped_reason = "auto-dispatch disabled"
        return report

    jobs = pending_jobs(tenant_id)
    report.total_pending = len(jobs)
    logger.info(f"Tenant {tenant_id} - found {len(jobs)} unassigned jobs in the dispatch window")
    if not jobs:
        return report

    pool = [Candidate(d.id, d.callsign, d.coordinate) for d in find_available_drivers(tenant_id)]
    zones = tenant_zones(tenant_id) if tenant.zone_dispatch else []
    max_attempts = max(1, current_app.config["DISPATCH_MAX_ATTEMPTS"])

    for job in jobs:
        job_id = job.id
        try:
            candidate, miles = _dispatch_job(job, pool, zones, max_attempts)
        except NoCandidateDriver as e:
            report.failed += 1
            report.details.append(str(e))
            logger.warning(f"FAILED: {e}")
        except JobUnavailable as e:
            report.skipped += 1
            report.details.append(f"Job {job_id} skipped: {e}")
            logger.info(f"Job {job_id} skipped: {e}")
        except MalformedLocation as e:
            report.failed += 1
            report.details.append(f"Job {job_id} failed: bad pickup location")
            logger.error(f"Job {job_id} has an unreadable pickup location: {e}")
        except SQLAlchemyError as e:
            db.session.rollback()
            report.failed += 1
            report.details.append(f"Job {job_id} failed: database error")
            logger.error(f"Error dispatching job {job_id}: {e}")
        else:
            pool.remove(candidate)
            report.assigned += 1
            distance = f" at {miles:.2f} mi" if miles is not None else ""
            report.details.append(f"Job {job_id} assigned to {candidate.callsign or candidate.id}{distance}")
            logger.info(f"SUCCESS: Job {job_id} assigned to driver {candidate.id}{distance}")

    return report


def run_dispatch_loop(tenant_id) -> DispatchReport:
    """One dispatch pass for a tenant; concurrent passes for the same tenant are skipped."""
    report = DispatchReport(tenant_id=tenant_id)
    lock = _tenant_lock(tenant_id)
    if not lock.acquire(blocking=False):
        logger.info(f"Tenant {tenant_id} - dispatch pass already running, skipping")
        report.skipped_reason = "pass already running"
        return report
    try:
        return _dispatch_pass(tenant_id, report)
    finally:
        lock.release()


def run_dispatch_for_all_tenants() -> List[DispatchReport]:
    """Background job: one pass per auto-dispatch tenant; returns the reports that did something."""
    tenant_ids = [t.id for t in Tenant.query.filter_by(auto_dispatch=True).order_by(Tenant.id).all()]
    results = []
    for tenant_id in tenant_ids:
        try:
            report = run_dispatch_loop(tenant_id)
        except Exception as e:
            logger.error(f"Error in driver allocation for tenant {tenant_id}: {str(e)}")
            db.session.rollback()
            continue
        if report.assigned or report.failed:
            results.append(report)
    return results
