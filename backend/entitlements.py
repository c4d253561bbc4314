"""
UI Analyzer — Entitlement Engine
Decides whether a user may run a metered action and records usage.

The decision functions are pure; EntitlementEngine adds the row lock,
the monthly reset and persistence around them.
"""

import logging
from datetime import datetime
from typing import Callable, Dict

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from errors import NotFoundError, PersistenceError, UsageLimitError
from user_db import PAID_PLANS, Plan, User, as_utc, utcnow

logger = logging.getLogger(__name__)

FREE_QUOTA = 3   # analyses per calendar month on the free plan

# usage kind → counter columns it bumps
USAGE_COUNTERS: Dict[str, tuple] = {
    "analysis": ("total_analyses", "monthly_analyses"),
    "images":   ("images_analyzed",),
    "download": ("reports_downloaded",),
}


# ── Pure decisions ────────────────────────────────────────────────────────────
def needs_monthly_reset(last_reset: datetime, now: datetime) -> bool:
    last_reset = as_utc(last_reset)
    return (last_reset.year, last_reset.month) != (now.year, now.month)


def is_permitted(plan: Plan, monthly_analyses: int) -> bool:
    if plan in PAID_PLANS:
        return True
    return monthly_analyses < FREE_QUOTA


def usage_increments(kind: str, count: int = 1) -> Dict[str, int]:
    """Counter deltas for a usage kind. Unknown kinds produce no deltas."""
    return {column: count for column in USAGE_COUNTERS.get(kind, ())}


def monthly_limit(plan: Plan):
    return FREE_QUOTA if plan == Plan.free else None


# ── Engine ────────────────────────────────────────────────────────────────────
class EntitlementEngine:
    def __init__(self, db: Session, clock: Callable[[], datetime] = utcnow):
        self.db = db
        self.clock = clock

    def locking_query(self, user_id: int):
        # Row lock scoped to this one user, held until commit/rollback.
        return (
            self.db.query(User)
            .filter(User.id == user_id)
            .with_for_update()
            .populate_existing()
        )

    def _lock(self, user_id: int) -> User:
        user = self.locking_query(user_id).first()
        if user is None:
            self.db.rollback()
            raise NotFoundError("User not found")
        return user

    def _apply_reset(self, user: User, now: datetime) -> bool:
        if not needs_monthly_reset(user.last_reset_date, now):
            return False
        user.monthly_analyses = 0
        user.last_reset_date = now
        return True

    def _persist(self, user: User) -> User:
        try:
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Failed to persist usage for user id={user.id}: {e}")
            raise PersistenceError()
        return user

    def refresh_usage(self, user_id: int) -> User:
        """Apply and persist the monthly reset if the calendar month changed."""
        user = self._lock(user_id)
        if self._apply_reset(user, self.clock()):
            logger.info(f"Monthly usage reset for user id={user_id}")
        return self._persist(user)

    def can_perform(self, user_id: int, action: str = "analysis") -> bool:
        user = self.refresh_usage(user_id)
        return is_permitted(user.plan, user.monthly_analyses)

    def record_usage(self, user_id: int, kind: str, count: int = 1) -> User:
        return self._increment(user_id, kind, count, enforce_limit=False)

    def consume(self, user_id: int, kind: str, count: int = 1) -> User:
        """Like record_usage, but an analysis over the limit raises instead."""
        return self._increment(user_id, kind, count, enforce_limit=True)

    def _increment(self, user_id: int, kind: str, count: int, enforce_limit: bool) -> User:
        user = self._lock(user_id)
        self._apply_reset(user, self.clock())

        if enforce_limit and kind == "analysis" and not is_permitted(user.plan, user.monthly_analyses):
            usage, plan = user.usage_dict(), user.plan.value
            self._persist(user)   # keep the reset, release the lock
            raise UsageLimitError(usage=usage, plan=plan)

        deltas = usage_increments(kind, count)
        if not deltas:
            logger.debug(f"Ignoring unknown usage kind {kind!r}")
        for column, delta in deltas.items():
            setattr(user, column, getattr(user, column) + delta)
        return self._persist(user)
