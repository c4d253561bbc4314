"""
UI Analyzer — Subscription Ledger
Purchase records and their lifecycle: pending → active → cancelled/expired.
A record stays pending while the provider reports the checkout as still open.

Lifecycle rules are pure functions of (subscription, now); the
SubscriptionLedger class wires them to the gateway and the store.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, joinedload

from errors import GatewayFaultError, NotFoundError, PersistenceError, ValidationError
from payment_gateway import CheckoutSession
from user_db import Plan, Subscription, SubscriptionStatus, User, as_utc, utcnow

logger = logging.getLogger(__name__)

# ── Pricing ───────────────────────────────────────────────────────────────────
PLAN_PRICES = {
    Plan.yearly:   {"USD": 10, "EUR": 9,  "TRY": 300},
    Plan.lifetime: {"USD": 20, "EUR": 18, "TRY": 600},
}
SUPPORTED_CURRENCIES = ("USD", "EUR", "TRY")
DEFAULT_CURRENCY = "TRY"
YEARLY_TERM = timedelta(days=365)

FINAL_STATUSES = (SubscriptionStatus.cancelled, SubscriptionStatus.expired)


def price_for(plan: Plan, currency: str) -> float:
    if plan not in PLAN_PRICES:
        raise ValidationError(f"Plan '{plan.value}' cannot be purchased")
    prices = PLAN_PRICES[plan]
    if currency not in prices:
        raise ValidationError(
            "Unsupported currency",
            details=[{"field": "currency", "allowed": list(SUPPORTED_CURRENCIES)}],
        )
    return prices[currency]


# ── Pure lifecycle rules ──────────────────────────────────────────────────────
def is_currently_active(subscription: Subscription, now: Optional[datetime] = None) -> bool:
    if subscription.status != SubscriptionStatus.active:
        return False
    if subscription.plan == Plan.lifetime:
        return True
    if subscription.plan == Plan.yearly:
        end = as_utc(subscription.end_date)
        return end is not None and (now or utcnow()) < end
    return False


def initial_end_date(plan: Plan, start: datetime) -> Optional[datetime]:
    return start + YEARLY_TERM if plan == Plan.yearly else None


def renewed_end_date(end_date: Optional[datetime], now: datetime) -> datetime:
    """One more yearly term, counted from whichever is later: end_date or now."""
    end_date = as_utc(end_date)
    base = end_date if end_date is not None and end_date > now else now
    return base + YEARLY_TERM


# ── Results ───────────────────────────────────────────────────────────────────
@dataclass
class PurchaseStart:
    session: CheckoutSession
    subscription: Subscription


@dataclass
class VerificationOutcome:
    succeeded: bool
    subscription: Subscription
    payment_status: str
    already_processed: bool = False
    pending: bool = False


# ── Ledger ────────────────────────────────────────────────────────────────────
class SubscriptionLedger:
    def __init__(self, db: Session, gateway, frontend_url: str,
                 clock: Callable[[], datetime] = utcnow):
        self.db = db
        self.gateway = gateway
        self.frontend_url = frontend_url.rstrip("/")
        self.clock = clock

    def _persist(self, what: str) -> None:
        try:
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Failed to persist {what}: {e}")
            raise PersistenceError()

    def _locked_by_payment_id(self, token: str) -> Optional[Subscription]:
        return (
            self.db.query(Subscription)
            .filter(Subscription.payment_id == token)
            .with_for_update()
            .populate_existing()
            .first()
        )

    def _locked_owned(self, subscription_id: int, owner_id: int) -> Subscription:
        sub = (
            self.db.query(Subscription)
            .filter(Subscription.id == subscription_id)
            .with_for_update()
            .populate_existing()
            .first()
        )
        if sub is None or sub.user_id != owner_id:
            self.db.rollback()
            raise NotFoundError("Subscription not found")
        return sub

    # ── Reads ────────────────────────────────────────────────────────────────
    def get(self, subscription_id: int, owner_id: int, with_user: bool = False) -> Subscription:
        query = self.db.query(Subscription).filter(Subscription.id == subscription_id)
        if with_user:
            query = query.options(joinedload(Subscription.user))
        sub = query.first()
        if sub is None or sub.user_id != owner_id:
            raise NotFoundError("Subscription not found")
        return sub

    def history(self, user_id: int) -> List[Subscription]:
        return (
            self.db.query(Subscription)
            .filter(Subscription.user_id == user_id)
            .order_by(Subscription.created_at.desc(), Subscription.id.desc())
            .all()
        )

    # ── Purchase flow ────────────────────────────────────────────────────────
    def start_purchase(self, user: User, plan: Plan, currency: str, customer_info: dict) -> PurchaseStart:
        if user.plan == plan:
            raise ValidationError("You already have this plan")
        amount = price_for(plan, currency)
        conversation_id = str(uuid.uuid4())

        customer_info = {k: v for k, v in customer_info.items() if v is not None}
        if currency != "TRY":
            # VAT numbers are only collected for Turkish invoices
            customer_info.pop("vatNumber", None)

        session = self.gateway.create_checkout_session(
            amount=amount,
            currency=currency,
            buyer_info={
                "name": customer_info.get("name", user.name),
                "email": user.email,
                "phone": customer_info.get("phone"),
                "description": f"UI Analyzer {plan.value.capitalize()} Plan",
                "notes": {"user_id": user.id, "plan": plan.value, "conversation_id": conversation_id},
            },
            callback_url=f"{self.frontend_url}/payment-success?plan={plan.value}",
            reference_id=conversation_id,
        )

        now = self.clock()
        sub = Subscription(
            user_id=user.id,
            plan=plan,
            status=SubscriptionStatus.pending,
            amount=amount,
            currency=currency,
            payment_provider=self.gateway.provider,
            payment_id=session.session_handle,
            conversation_id=conversation_id,
            start_date=now,
            end_date=initial_end_date(plan, now),
            customer_info={**customer_info, "email": user.email},
        )
        self.db.add(sub)
        self._persist("pending subscription")
        logger.info(f"Pending {plan.value} subscription id={sub.id} for user id={user.id}")
        return PurchaseStart(session=session, subscription=sub)

    def verify_purchase(self, token: str, requesting_user_id: Optional[int] = None) -> VerificationOutcome:
        sub = self._locked_by_payment_id(token)
        if sub is None or (requesting_user_id is not None and sub.user_id != requesting_user_id):
            self.db.rollback()
            raise NotFoundError("Subscription not found")

        if sub.status == SubscriptionStatus.active:
            self.db.rollback()
            return VerificationOutcome(True, sub, "SUCCESS", already_processed=True)
        if sub.status in FINAL_STATUSES:
            self.db.rollback()
            return VerificationOutcome(False, sub, sub.status.value.upper(), already_processed=True)

        try:
            result = self.gateway.retrieve_session_result(token)
        except GatewayFaultError:
            self.db.rollback()   # record stays pending
            raise

        if result.pending:
            self.db.rollback()   # not paid yet, a later poll or webhook settles it
            logger.info(f"Payment still open for subscription id={sub.id}: {result.provider_status}")
            return VerificationOutcome(False, sub, result.provider_status, pending=True)

        if not result.succeeded:
            sub.status = SubscriptionStatus.cancelled
            self._persist("declined subscription")
            logger.info(f"Payment declined for subscription id={sub.id}: {result.provider_status}")
            return VerificationOutcome(False, sub, result.provider_status)

        now = self.clock()
        sub.status = SubscriptionStatus.active
        sub.activated_at = now
        sub.payment_info = result.provider_metadata

        user = (
            self.db.query(User)
            .filter(User.id == sub.user_id)
            .with_for_update()
            .populate_existing()
            .one()
        )
        user.plan = sub.plan
        user.subscription_id = sub.id
        self._persist("activated subscription")
        logger.info(f"Activated {sub.plan.value} subscription id={sub.id} for user id={user.id}")
        return VerificationOutcome(True, sub, result.provider_status)

    # ── Lifecycle ────────────────────────────────────────────────────────────
    def cancel(self, subscription_id: int, requesting_user_id: int) -> Subscription:
        """Cancel a yearly subscription. User.plan is left as-is until the term ends."""
        sub = self._locked_owned(subscription_id, requesting_user_id)
        if sub.plan == Plan.lifetime:
            self.db.rollback()
            raise ValidationError("Cannot cancel lifetime subscription")
        if sub.status in FINAL_STATUSES:
            self.db.rollback()
            return sub
        sub.status = SubscriptionStatus.cancelled
        self._persist("cancelled subscription")
        logger.info(f"Cancelled subscription id={sub.id}")
        return sub

    def renew(self, subscription_id: int, requesting_user_id: int) -> Subscription:
        sub = self._locked_owned(subscription_id, requesting_user_id)
        if sub.plan != Plan.yearly:
            self.db.rollback()
            raise ValidationError("Cannot renew lifetime subscription")
        if sub.status != SubscriptionStatus.active:
            self.db.rollback()
            raise ValidationError(f"Cannot renew a {sub.status.value} subscription")
        sub.end_date = renewed_end_date(sub.end_date, self.clock())
        sub.status = SubscriptionStatus.active
        self._persist("renewed subscription")
        return sub

    def mark_cancelled_for_user(self, user_id: int) -> int:
        """Flag the user's active subscriptions cancelled. The caller commits."""
        subs = (
            self.db.query(Subscription)
            .filter(Subscription.user_id == user_id, Subscription.status == SubscriptionStatus.active)
            .all()
        )
        for sub in subs:
            sub.status = SubscriptionStatus.cancelled
        return len(subs)
