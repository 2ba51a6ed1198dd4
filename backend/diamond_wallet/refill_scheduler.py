"""
Refill Scheduler

Decides whether a user's daily top-up is due and how large it is.

Policy:
- One refill opportunity per calendar day in REFILL_TIMEZONE
- Due when the local date of "now" is after the local date of last_refill_at
  (calendar dates, not elapsed hours, so irregular checks never drift)
- A due refill tops the balance up to exactly max_balance and never lowers it
- At or above the ceiling the day's opportunity is still consumed (zero delta)

The lazy check inside the ledger engine is authoritative. The optional
APScheduler sweep only front-loads refills at local midnight.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, date, time, timedelta, timezone
from typing import Optional

import pytz
from apscheduler.triggers.cron import CronTrigger

from .config import REFILL_TIMEZONE

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(moment: datetime) -> str:
    """Stored timestamps are UTC with fixed microsecond precision so they sort as strings."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).isoformat(timespec="microseconds")


def parse_timestamp(value: str) -> datetime:
    """Parse a stored ISO timestamp; naive values are taken as UTC."""
    parsed = datetime.fromisoformat(value.replace('Z', '+00:00'))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass(frozen=True)
class RefillPlan:
    """What a refill check decided for one account."""
    due: bool
    delta: int
    new_balance: int


class RefillScheduler:
    """Calendar-day refill policy in a fixed reference timezone."""

    def __init__(self, tz_name: Optional[str] = None):
        self.tz_name = tz_name or REFILL_TIMEZONE
        self.tz = pytz.timezone(self.tz_name)

    def local_date(self, moment: datetime) -> date:
        if moment.tzinfo is None:
            moment = moment.replace(tzinfo=timezone.utc)
        return moment.astimezone(self.tz).date()

    def is_due(self, last_refill_at: datetime, now: datetime) -> bool:
        # A clock that moved backwards never grants an extra refill
        return self.local_date(now) > self.local_date(last_refill_at)

    def plan(self, balance: int, max_balance: int, last_refill_at: datetime, now: datetime) -> RefillPlan:
        """
        Compute the refill for an account at `now`.

        Returns a plan with due=False when today's opportunity was already used.
        """
        if not self.is_due(last_refill_at, now):
            return RefillPlan(due=False, delta=0, new_balance=balance)

        if balance >= max_balance:
            return RefillPlan(due=True, delta=0, new_balance=balance)

        return RefillPlan(due=True, delta=max_balance - balance, new_balance=max_balance)

    def start_of_day(self, now: datetime) -> datetime:
        """Local midnight of the current refill day, in UTC."""
        local_day = self.local_date(now)
        midnight = self.tz.localize(datetime.combine(local_day, time.min))
        return midnight.astimezone(timezone.utc)

    def next_refill_at(self, now: datetime) -> datetime:
        """Next local midnight, in UTC."""
        tomorrow = self.local_date(now) + timedelta(days=1)
        midnight = self.tz.localize(datetime.combine(tomorrow, time.min))
        return midnight.astimezone(timezone.utc)


def schedule_daily_sweep(scheduler, engine) -> None:
    """
    Register the midnight refill sweep on an AsyncIOScheduler.

    The sweep calls engine.refill_all(); failures are logged and the
    lazy refill on next access covers any account the sweep missed.
    """
    async def run_refill_sweep():
        try:
            refilled = await engine.refill_all()
            logger.info(f"[REFILL-SWEEP] complete: refilled={refilled}")
        except Exception as e:
            logger.error(f"[REFILL-SWEEP] failed: {e}")

    scheduler.add_job(
        run_refill_sweep,
        CronTrigger(hour=0, minute=0, timezone=engine.scheduler.tz_name),
        id='diamond_daily_refill',
        replace_existing=True
    )
    logger.info(f"Refill sweep scheduled at 00:00 {engine.scheduler.tz_name}")
