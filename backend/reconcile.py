#!/usr/bin/env python3
"""
UI Analyzer — Plan Reconciliation

User.plan is a cached copy of the last activated subscription's plan and is
not downgraded on cancellation. This job brings the two back in line once a
yearly term is over:

  * active yearly subscriptions past their end date become `expired`
  * users still on `yearly` whose subscription is missing or past its end
    date move to another live subscription they hold, or back to `free`

Run periodically (cron / scheduler): `ui-analyzer-reconcile`.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from dotenv import load_dotenv
from sqlalchemy.orm import Session, joinedload

from ledger import is_currently_active
from user_db import Plan, Subscription, SubscriptionStatus, User, as_utc, utcnow

logger = logging.getLogger(__name__)


@dataclass
class ReconcileReport:
    expired_subscriptions: int = 0
    downgraded_users: int = 0
    repointed_users: int = 0


def term_over(subscription: Optional[Subscription], now: datetime) -> bool:
    if subscription is None:
        return True
    if subscription.plan == Plan.lifetime:
        return False
    end = as_utc(subscription.end_date)
    return end is None or end <= now


def live_subscription(db: Session, user_id: int, now: datetime) -> Optional[Subscription]:
    """The user's best still-active subscription, lifetime first."""
    candidates = (
        db.query(Subscription)
        .filter(Subscription.user_id == user_id, Subscription.status == SubscriptionStatus.active)
        .all()
    )
    live = [s for s in candidates if is_currently_active(s, now)]
    live.sort(key=lambda s: (s.plan != Plan.lifetime, -(as_utc(s.end_date) or now).timestamp()))
    return live[0] if live else None


def reconcile_plans(db: Session, now: Optional[datetime] = None) -> ReconcileReport:
    now = now or utcnow()
    report = ReconcileReport()

    lapsed = (
        db.query(Subscription)
        .filter(
            Subscription.status == SubscriptionStatus.active,
            Subscription.plan == Plan.yearly,
            Subscription.end_date <= now,
        )
        .with_for_update()
        .all()
    )
    for sub in lapsed:
        sub.status = SubscriptionStatus.expired
        report.expired_subscriptions += 1
    db.flush()

    yearly_users = (
        db.query(User)
        .options(joinedload(User.subscription))
        .filter(User.plan == Plan.yearly, User.is_active.is_(True))
        .all()
    )
    for user in yearly_users:
        if not term_over(user.subscription, now):
            continue
        live = live_subscription(db, user.id, now)
        if live is not None:
            logger.info(f"Moving user id={user.id} to {live.plan.value} subscription id={live.id}")
            user.plan = live.plan
            user.subscription = live
            report.repointed_users += 1
            continue
        logger.info(f"Downgrading user id={user.id} to free (yearly term over)")
        user.plan = Plan.free
        report.downgraded_users += 1

    db.commit()
    return report


def main() -> None:
    load_dotenv()
    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")

    from config import Settings
    from database import init_db

    settings = Settings.from_env()
    session_factory = init_db(settings.database_url)
    with session_factory() as db:
        report = reconcile_plans(db)
    logger.info(
        f"Reconciliation done: {report.expired_subscriptions} subscriptions expired, "
        f"{report.downgraded_users} users downgraded, {report.repointed_users} moved to another plan."
    )


if __name__ == "__main__":
    main()
