"""
Periodic jobs. Each job opens its own session and always closes it.

Ordering inside one settlement cycle matters: held payouts of now-capable
accounts are released first, then the sweep runs, then recent failures are
retried. The completion sweep runs on its own cadence ahead of settlement.
"""
import logging
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler

from slotrent.core.config import settings
from slotrent.db.session import SessionLocal
from slotrent.services.earnings import daily_payout_summary
from slotrent.services.events import dispatch_pending_events
from slotrent.services.gateway import PaymentGateway, get_gateway
from slotrent.services.payout_accounts import release_held_for_capable_accounts
from slotrent.services.reservations import expire_unpaid_reservations
from slotrent.services.settlement import (
    complete_past_reservations,
    retry_failed_payouts,
    run_settlement_sweep,
)

logger = logging.getLogger(__name__)

COMPLETION_JOB_ID = "completion_sweep"
HOLD_EXPIRY_JOB_ID = "hold_expiry"
SETTLEMENT_JOB_ID = "settlement_cycle"
EVENT_DISPATCH_JOB_ID = "event_dispatch"
RECONCILIATION_JOB_ID = "daily_reconciliation"


def run_completion_job() -> int:
    db = SessionLocal()
    try:
        return complete_past_reservations(db)
    except Exception:
        logger.exception("Completion sweep failed")
        return 0
    finally:
        db.close()


def run_hold_expiry_job() -> int:
    db = SessionLocal()
    try:
        return expire_unpaid_reservations(db)
    except Exception:
        logger.exception("Unpaid reservation expiry failed")
        return 0
    finally:
        db.close()


def run_settlement_job(gateway: Optional[PaymentGateway] = None) -> dict:
    gateway = gateway or get_gateway()
    summary = {}
    db = SessionLocal()
    try:
        summary["released"] = release_held_for_capable_accounts(db)
        result = run_settlement_sweep(db, gateway)
        summary.update(processed=result.processed, held=result.held, skipped=result.skipped, failed=result.failed)
        summary["retry"] = retry_failed_payouts(db, gateway)
    except Exception:
        db.rollback()
        logger.exception("Settlement cycle failed")
    finally:
        db.close()
    return summary


def run_event_dispatch_job() -> None:
    db = SessionLocal()
    try:
        dispatch_pending_events(db)
    except Exception:
        logger.exception("Event dispatch failed")
    finally:
        db.close()


def run_reconciliation_job() -> None:
    db = SessionLocal()
    try:
        daily_payout_summary(db)
    except Exception:
        logger.exception("Daily payout reconciliation failed")
    finally:
        db.close()


def build_scheduler() -> BackgroundScheduler:
    scheduler = BackgroundScheduler()
    scheduler.add_job(
        run_completion_job,
        "interval",
        minutes=settings.COMPLETION_SWEEP_MINUTES,
        id=COMPLETION_JOB_ID,
        max_instances=1,
        coalesce=True,
    )
    scheduler.add_job(
        run_hold_expiry_job,
        "interval",
        minutes=settings.HOLD_EXPIRY_MINUTES,
        id=HOLD_EXPIRY_JOB_ID,
        max_instances=1,
        coalesce=True,
    )
    scheduler.add_job(
        run_settlement_job,
        "interval",
        minutes=settings.SETTLEMENT_SWEEP_MINUTES,
        id=SETTLEMENT_JOB_ID,
        max_instances=1,
        coalesce=True,
    )
    scheduler.add_job(
        run_event_dispatch_job,
        "interval",
        seconds=settings.EVENT_DISPATCH_SECONDS,
        id=EVENT_DISPATCH_JOB_ID,
        max_instances=1,
        coalesce=True,
    )
    scheduler.add_job(
        run_reconciliation_job,
        "cron",
        hour=settings.RECONCILIATION_HOUR,
        minute=0,
        id=RECONCILIATION_JOB_ID,
    )
    return scheduler
