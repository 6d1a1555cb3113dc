import threading

import pytest

import allocation
from allocation import (
    assign_job,
    find_available_drivers,
    pending_jobs,
    rank_by_proximity,
    run_dispatch_for_all_tenants,
    run_dispatch_loop,
    set_driver_status,
    update_driver_location,
    update_job_status,
)
from app import create_app, db
from config import TestConfig
from errors import DriverUnavailable, InvalidTransition, JobUnavailable, StaleDriverState
from geo import Coordinate
from models import Driver, DriverStatus, Job, JobStatus, Tenant, utcnow


def reload(model, id_):
    db.session.expire_all()
    return db.session.get(model, id_)


# ---------------- CANDIDATES ----------------
def test_available_drivers_need_free_status_and_readable_location(tenant, make_driver):
    good = make_driver(tenant, 51.50, -0.10)
    make_driver(tenant, 51.50, -0.10, status=DriverStatus.OFF_DUTY.value)
    make_driver(tenant, 51.50, -0.10, status=DriverStatus.BUSY.value)
    make_driver(tenant)
    make_driver(tenant, location="not json")
    make_driver(tenant, location='{"lat": "north", "lng": 0}')

    assert [d.id for d in find_available_drivers(tenant.id)] == [good.id]


def test_available_drivers_are_tenant_scoped(tenant, make_tenant, make_driver):
    other = make_tenant("other")
    make_driver(other, 51.50, -0.10)
    assert find_available_drivers(tenant.id) == []


def test_rank_by_proximity_breaks_ties_by_id(tenant, make_driver):
    far = make_driver(tenant, 51.60, -0.10)
    first = make_driver(tenant, 51.51, -0.10)
    second = make_driver(tenant, 51.51, -0.10)
    ranked = rank_by_proximity(Coordinate(51.50, -0.10), [far, second, first])
    assert [d.id for d, _ in ranked] == [first.id, second.id, far.id]


# ---------------- ASSIGNMENT ----------------
def test_assign_job_updates_job_and_driver_together(tenant, make_driver, make_job):
    driver = make_driver(tenant, 51.50, -0.10)
    job = make_job(tenant, 51.50, -0.10)

    assign_job(job.id, driver.id)

    job, driver = reload(Job, job.id), reload(Driver, driver.id)
    assert job.status == JobStatus.DISPATCHED.value
    assert job.driver_id == driver.id
    assert job.dispatched_at is not None
    assert driver.status == DriverStatus.BUSY.value
    assert driver.version == 1


def test_second_assignment_of_same_driver_loses(tenant, make_driver, make_job):
    driver = make_driver(tenant, 51.50, -0.10)
    first = make_job(tenant, 51.50, -0.10)
    second = make_job(tenant, 51.50, -0.10)

    assign_job(first.id, driver.id)
    with pytest.raises(DriverUnavailable):
        assign_job(second.id, driver.id)

    second = reload(Job, second.id)
    assert second.status == JobStatus.PENDING.value
    assert second.driver_id is None
    assert Job.query.filter_by(driver_id=driver.id).count() == 1


def test_job_already_taken_rolls_back_driver_claim(tenant, make_driver, make_job):
    first, other = make_driver(tenant, 51.50, -0.10), make_driver(tenant, 51.50, -0.10)
    job = make_job(tenant, 51.50, -0.10)

    assign_job(job.id, first.id)
    with pytest.raises(JobUnavailable):
        assign_job(job.id, other.id)

    other = reload(Driver, other.id)
    assert other.status == DriverStatus.FREE.value
    assert other.version == 0
    assert reload(Job, job.id).driver_id == first.id


def test_cannot_assign_driver_from_another_tenant(tenant, make_tenant, make_driver, make_job):
    stranger = make_driver(make_tenant("other"), 51.50, -0.10)
    job = make_job(tenant, 51.50, -0.10)
    with pytest.raises(DriverUnavailable):
        assign_job(job.id, stranger.id)


def test_off_duty_driver_cannot_be_assigned(tenant, make_driver, make_job):
    driver = make_driver(tenant, 51.50, -0.10, status=DriverStatus.OFF_DUTY.value)
    job = make_job(tenant, 51.50, -0.10)
    with pytest.raises(DriverUnavailable):
        assign_job(job.id, driver.id)


# ---------------- JOB LIFECYCLE ----------------
@pytest.fixture
def dispatched(tenant, make_driver, make_job):
    driver = make_driver(tenant, 51.50, -0.10)
    job = make_job(tenant, 51.50, -0.10)
    assign_job(job.id, driver.id)
    return job.id, driver.id


def test_job_progresses_to_completion_and_frees_driver(dispatched):
    job_id, driver_id = dispatched
    for status in ("EN_ROUTE", "ARRIVED", "POB"):
        update_job_status(job_id, status, driver_id=driver_id)
    assert reload(Driver, driver_id).status == DriverStatus.POB.value

    update_job_status(job_id, "COMPLETED", driver_id=driver_id)
    job, driver = reload(Job, job_id), reload(Driver, driver_id)
    assert job.status == JobStatus.COMPLETED.value
    assert job.completed_at is not None
    assert driver.status == DriverStatus.FREE.value


def test_skipping_a_step_is_rejected(dispatched):
    job_id, driver_id = dispatched
    with pytest.raises(InvalidTransition):
        update_job_status(job_id, "POB", driver_id=driver_id)
    assert reload(Job, job_id).status == JobStatus.DISPATCHED.value


def test_terminal_job_cannot_change(dispatched):
    job_id, _ = dispatched
    update_job_status(job_id, "CANCELLED")
    with pytest.raises(InvalidTransition):
        update_job_status(job_id, "EN_ROUTE")


def test_unknown_status_is_rejected(dispatched):
    with pytest.raises(InvalidTransition):
        update_job_status(dispatched[0], "TELEPORTED")


def test_only_assigned_driver_may_report(dispatched, tenant, make_driver):
    job_id, _ = dispatched
    intruder = make_driver(tenant, 51.50, -0.10)
    with pytest.raises(InvalidTransition):
        update_job_status(job_id, "EN_ROUTE", driver_id=intruder.id)


def test_cancel_keeps_driver_busy_with_another_active_job(tenant, make_driver, make_job):
    driver = make_driver(tenant, 51.50, -0.10)
    first = make_job(tenant, 51.50, -0.10)
    second = make_job(tenant, 51.50, -0.10)
    assign_job(first.id, driver.id)
    # Manual double-booking is the only way a driver holds two jobs.
    Job.query.filter_by(id=second.id).update({"status": JobStatus.DISPATCHED.value, "driver_id": driver.id})
    db.session.commit()

    update_job_status(first.id, "CANCELLED")
    assert reload(Driver, driver.id).status == DriverStatus.BUSY.value


def test_status_report_can_carry_location(dispatched):
    job_id, driver_id = dispatched
    update_job_status(job_id, "EN_ROUTE", location=Coordinate(51.52, -0.11))
    assert reload(Driver, driver_id).coordinate == Coordinate(51.52, -0.11)


# ---------------- DRIVER SELF-REPORT ----------------
def test_driver_goes_off_duty(tenant, make_driver):
    driver = make_driver(tenant, 51.50, -0.10)
    set_driver_status(driver.id, "OFF_DUTY", expected_version=0)
    driver = reload(Driver, driver.id)
    assert driver.status == DriverStatus.OFF_DUTY.value
    assert driver.version == 1


def test_stale_version_loses(tenant, make_driver, make_job):
    driver = make_driver(tenant, 51.50, -0.10)
    job = make_job(tenant, 51.50, -0.10)
    version_seen_by_app = driver.version
    assign_job(job.id, driver.id)
    update_job_status(job.id, "CANCELLED")

    with pytest.raises(StaleDriverState):
        set_driver_status(driver.id, "OFF_DUTY", expected_version=version_seen_by_app)
    assert reload(Driver, driver.id).status == DriverStatus.FREE.value


def test_busy_driver_cannot_go_off_duty(dispatched):
    _, driver_id = dispatched
    with pytest.raises(DriverUnavailable):
        set_driver_status(driver_id, "OFF_DUTY")
    assert reload(Driver, driver_id).status == DriverStatus.BUSY.value


def test_drivers_cannot_report_busy(tenant, make_driver):
    driver = make_driver(tenant, 51.50, -0.10)
    with pytest.raises(InvalidTransition):
        set_driver_status(driver.id, "BUSY")


def test_location_update_reports_zone(tenant, make_driver, make_zone):
    zone = make_zone(tenant, "Centre", 51.49, -0.11, 51.51, -0.09)
    driver = make_driver(tenant)
    assert update_driver_location(driver.id, Coordinate(51.50, -0.10)).id == zone.id
    assert update_driver_location(driver.id, Coordinate(52.0, -1.0)) is None
    assert reload(Driver, driver.id).location_updated_at is not None


# ---------------- DISPATCH PASS ----------------
def test_pending_jobs_window(app, tenant, make_job):
    due = make_job(tenant, minutes=30)
    make_job(tenant, minutes=24 * 60)
    make_job(tenant, minutes=-24 * 60)
    make_job(tenant, minutes=10, status=JobStatus.CANCELLED.value)
    assert [j.id for j in pending_jobs(tenant.id)] == [due.id]


def test_dispatch_assigns_nearest_driver(tenant, make_driver, make_job):
    near = make_driver(tenant, 51.501, -0.10, callsign="N1")
    make_driver(tenant, 51.60, -0.10, callsign="F1")
    job = make_job(tenant, 51.50, -0.10)

    report = run_dispatch_loop(tenant.id)

    assert report.assigned == 1
    assert report.failed == 0
    assert reload(Job, job.id).driver_id == near.id


def test_earlier_job_gets_the_nearest_driver_first(tenant, make_driver, make_job):
    driver = make_driver(tenant, 51.50, -0.10)
    soon = make_job(tenant, 51.501, -0.10, minutes=5)
    later = make_job(tenant, 51.502, -0.10, minutes=20)

    report = run_dispatch_loop(tenant.id)

    assert report.assigned == 1
    assert report.failed == 1
    assert reload(Job, soon.id).driver_id == driver.id
    assert reload(Job, later.id).status == JobStatus.PENDING.value


def test_second_pass_changes_nothing(tenant, make_driver, make_job):
    make_driver(tenant, 51.50, -0.10)
    make_job(tenant, 51.50, -0.10)
    make_job(tenant, 51.50, -0.10)

    first = run_dispatch_loop(tenant.id)
    snapshot = [(j.id, j.status, j.driver_id) for j in Job.query.order_by(Job.id).all()]
    second = run_dispatch_loop(tenant.id)

    assert first.assigned == 1
    assert second.assigned == 0
    assert second.total_pending == 1
    db.session.expire_all()
    assert [(j.id, j.status, j.driver_id) for j in Job.query.order_by(Job.id).all()] == snapshot


def test_no_driver_available_is_a_failure_not_an_error(tenant, make_job):
    job = make_job(tenant, 51.50, -0.10)
    report = run_dispatch_loop(tenant.id)
    assert report.failed == 1
    assert reload(Job, job.id).status == JobStatus.PENDING.value


def test_driver_with_bad_location_is_never_dispatched(tenant, make_driver, make_job):
    broken = make_driver(tenant, location="{oops")
    job = make_job(tenant, 51.50, -0.10)
    report = run_dispatch_loop(tenant.id)
    assert report.assigned == 0
    assert reload(Driver, broken.id).status == DriverStatus.FREE.value
    assert reload(Job, job.id).driver_id is None


def test_auto_dispatch_off_assigns_nothing(make_tenant, make_driver, make_job):
    manual = make_tenant("manual", auto_dispatch=False)
    make_driver(manual, 51.50, -0.10)
    job = make_job(manual, 51.50, -0.10)

    report = run_dispatch_loop(manual.id)

    assert report.skipped_reason == "auto-dispatch disabled"
    assert reload(Job, job.id).status == JobStatus.PENDING.value
    assert run_dispatch_for_all_tenants() == []


def test_pre_assigned_driver_is_tried_first(tenant, make_driver, make_job):
    make_driver(tenant, 51.50, -0.10)
    reserved = make_driver(tenant, 51.55, -0.10)
    job = make_job(tenant, 51.50, -0.10, pre_assigned_driver_id=reserved.id)
    run_dispatch_loop(tenant.id)
    assert reload(Job, job.id).driver_id == reserved.id


def test_zone_dispatch_prefers_drivers_in_pickup_zone(tenant, make_driver, make_job, make_zone):
    tenant.zone_dispatch = True
    db.session.commit()
    make_zone(tenant, "North", 51.52, -0.12, 51.56, -0.08)
    make_driver(tenant, 51.515, -0.10)
    inside = make_driver(tenant, 51.55, -0.10)
    job = make_job(tenant, 51.525, -0.10)

    run_dispatch_loop(tenant.id)
    assert reload(Job, job.id).driver_id == inside.id


def test_job_without_coordinates_still_dispatched(tenant, make_driver, make_job):
    driver = make_driver(tenant, 51.50, -0.10)
    job = make_job(tenant)
    report = run_dispatch_loop(tenant.id)
    assert report.assigned == 1
    assert reload(Job, job.id).driver_id == driver.id


def test_lost_race_retries_next_candidate(tenant, make_driver, make_job, monkeypatch):
    near = make_driver(tenant, 51.501, -0.10)
    backup = make_driver(tenant, 51.51, -0.10)
    job = make_job(tenant, 51.50, -0.10)

    real_assign = allocation.assign_job

    def racing_assign(job_id, driver_id):
        if driver_id == near.id:
            # Another dispatcher grabs the nearest driver first.
            Driver.query.filter_by(id=near.id).update({"status": DriverStatus.BUSY.value})
            db.session.commit()
        return real_assign(job_id, driver_id)

    monkeypatch.setattr(allocation, "assign_job", racing_assign)
    report = run_dispatch_loop(tenant.id)

    assert report.assigned == 1
    assert reload(Job, job.id).driver_id == backup.id


def test_overlapping_pass_for_same_tenant_is_skipped(tenant):
    lock = allocation._tenant_lock(tenant.id)
    with lock:
        report = run_dispatch_loop(tenant.id)
    assert report.skipped_reason == "pass already running"


def test_all_tenants_pass_reports_activity_only(tenant, make_tenant, make_driver, make_job):
    quiet = make_tenant("quiet")
    make_driver(tenant, 51.50, -0.10)
    make_job(tenant, 51.50, -0.10)
    make_driver(quiet, 51.50, -0.10)

    reports = run_dispatch_for_all_tenants()
    assert [r.tenant_id for r in reports] == [tenant.id]


def test_bad_pickup_location_fails_only_that_job(tenant, make_driver, make_job):
    driver = make_driver(tenant, 51.50, -0.10)
    broken = make_job(tenant, 95.0, -0.10, minutes=5)
    good = make_job(tenant, 51.50, -0.10, minutes=10)

    report = run_dispatch_loop(tenant.id)

    assert report.failed == 1
    assert report.assigned == 1
    assert reload(Job, broken.id).status == JobStatus.PENDING.value
    assert reload(Job, good.id).driver_id == driver.id


def test_concurrent_assignments_of_one_driver(tmp_path):
    class RaceConfig(TestConfig):
        SQLALCHEMY_DATABASE_URI = f"sqlite:///{tmp_path / 'race.db'}"
        SQLALCHEMY_ENGINE_OPTIONS = {"connect_args": {"timeout": 15, "check_same_thread": False}}

    race_app = create_app(RaceConfig)
    with race_app.app_context():
        db.create_all()
        tenant = Tenant(slug="race", name="Race", timezone="UTC")
        db.session.add(tenant)
        db.session.commit()
        driver = Driver(tenant_id=tenant.id, status=DriverStatus.FREE.value)
        jobs = [
            Job(tenant_id=tenant.id, pickup_address="A", dropoff_address="B", pickup_time=utcnow())
            for _ in range(2)
        ]
        db.session.add_all([driver, *jobs])
        db.session.commit()
        driver_id, job_ids = driver.id, [job.id for job in jobs]

    barrier = threading.Barrier(len(job_ids))
    outcomes = []

    def attempt(job_id):
        with race_app.app_context():
            barrier.wait()
            try:
                assign_job(job_id, driver_id)
                outcomes.append("assigned")
            except DriverUnavailable:
                outcomes.append("unavailable")

    threads = [threading.Thread(target=attempt, args=(job_id,)) for job_id in job_ids]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    assert sorted(outcomes) == ["assigned", "unavailable"]
    with race_app.app_context():
        assert Job.query.filter_by(driver_id=driver_id).count() == 1
        driver = db.session.get(Driver, driver_id)
        assert driver.status == DriverStatus.BUSY.value
        assert driver.version == 1
        db.drop_all()
        db.engine.dispose()
