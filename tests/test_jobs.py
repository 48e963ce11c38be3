from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from slotrent.models import Payout, PaymentStatus, PayoutStatus, ReservationStatus
from slotrent.scheduler import jobs
from slotrent.services.earnings import daily_payout_summary, owner_earnings
from slotrent.services.settlement import run_settlement_sweep
from conftest import NOW, TODAY, TestingSessionLocal


@pytest.fixture
def job_sessions(db, monkeypatch):
    monkeypatch.setattr(jobs, "SessionLocal", TestingSessionLocal)


def test_scheduler_registers_all_jobs():
    scheduler = jobs.build_scheduler()
    ids = {job.id for job in scheduler.get_jobs()}
    assert ids == {
        jobs.COMPLETION_JOB_ID,
        jobs.HOLD_EXPIRY_JOB_ID,
        jobs.SETTLEMENT_JOB_ID,
        jobs.EVENT_DISPATCH_JOB_ID,
        jobs.RECONCILIATION_JOB_ID,
    }


def test_hold_expiry_job_cancels_overdue_unpaid_reservations(db, job_sessions, make_reservation):
    overdue = make_reservation(
        status=ReservationStatus.PENDING,
        payment_status=PaymentStatus.PENDING,
        payment_due_at=datetime.now(timezone.utc) - timedelta(minutes=1),
    )
    waiting = make_reservation(
        start=12 * 60,
        end=13 * 60,
        status=ReservationStatus.PENDING,
        payment_status=PaymentStatus.PENDING,
        payment_due_at=datetime.now(timezone.utc) + timedelta(minutes=10),
    )

    assert jobs.run_hold_expiry_job() == 1
    db.refresh(overdue)
    db.refresh(waiting)
    assert overdue.status == ReservationStatus.CANCELLED.value
    assert waiting.status == ReservationStatus.PENDING.value


def test_settlement_cycle_releases_then_pays(db, job_sessions, gateway, capable_account, make_reservation):
    reservation = make_reservation(
        day=TODAY - timedelta(days=1),
        status=ReservationStatus.COMPLETED,
        payout_status=PayoutStatus.HELD.value,
    )

    summary = jobs.run_settlement_job(gateway)

    assert summary["released"] == 1
    assert summary["processed"] == 1
    assert summary["retry"]["retried"] == 0
    db.refresh(reservation)
    assert reservation.payout_status == PayoutStatus.PAID.value


def test_daily_summary_groups_by_owner(db, gateway, capable_account, admin, make_reservation):
    make_reservation(day=TODAY - timedelta(days=1), status=ReservationStatus.COMPLETED)
    make_reservation(day=TODAY - timedelta(days=1), start=12 * 60, end=13 * 60, status=ReservationStatus.COMPLETED)
    run_settlement_sweep(db, gateway)
    assert db.query(Payout).count() == 2

    today_utc = datetime.now(timezone.utc).date()
    summary = daily_payout_summary(db, today_utc)
    assert summary.count == 2
    assert summary.amount == Decimal("160.00")
    assert summary.by_owner == {str(capable_account.owner_id): Decimal("160.00")}

    empty = daily_payout_summary(db, today_utc - timedelta(days=3), publish=False)
    assert empty.count == 0


def test_owner_earnings_by_stage(db, owner, make_reservation):
    make_reservation(day=TODAY - timedelta(days=2), status=ReservationStatus.COMPLETED, payout_status=PayoutStatus.PAID.value)
    make_reservation(day=TODAY - timedelta(days=1), status=ReservationStatus.COMPLETED, payout_status=PayoutStatus.HELD.value)
    make_reservation(day=TODAY, start=16 * 60, end=17 * 60, status=ReservationStatus.CONFIRMED)
    make_reservation(day=TODAY + timedelta(days=5), status=ReservationStatus.CONFIRMED)

    earnings = owner_earnings(db, owner.id, now=NOW)
    assert earnings.paid == Decimal("80.00")
    assert earnings.held == Decimal("80.00")
    assert earnings.upcoming == Decimal("80.00")
    assert earnings.pending == Decimal("0.00")
