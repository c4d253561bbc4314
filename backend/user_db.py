"""
UI Analyzer — User DB Models
SQLAlchemy models for users, subscriptions, and usage tracking.
"""

import enum
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    Column, Integer, String, DateTime, Enum as SAEnum, ForeignKey, Boolean, Float, JSON,
)
from sqlalchemy.orm import relationship

from database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes read back from the store as UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


class Plan(str, enum.Enum):
    free     = "free"
    yearly   = "yearly"
    lifetime = "lifetime"


PAID_PLANS = (Plan.yearly, Plan.lifetime)


class SubscriptionStatus(str, enum.Enum):
    pending   = "pending"
    active    = "active"
    cancelled = "cancelled"
    expired   = "expired"


class User(Base):
    """Registered users with plan, usage counters and settings."""
    __tablename__ = "users"

    id              = Column(Integer, primary_key=True, index=True)
    email           = Column(String(255), unique=True, index=True, nullable=False)
    hashed_password = Column(String(255), nullable=False)
    name            = Column(String(255), nullable=False)
    plan            = Column(SAEnum(Plan), default=Plan.free, nullable=False)
    subscription_id = Column(Integer, ForeignKey("subscriptions.id", use_alter=True, ondelete="SET NULL"),
                             nullable=True)

    # Usage counters
    total_analyses     = Column(Integer, default=0, nullable=False)
    monthly_analyses   = Column(Integer, default=0, nullable=False)
    images_analyzed    = Column(Integer, default=0, nullable=False)
    reports_downloaded = Column(Integer, default=0, nullable=False)
    last_reset_date    = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    # Settings
    email_notifications = Column(Boolean, default=True, nullable=False)
    personal_api_key    = Column(String(255), nullable=True)
    theme               = Column(String(10), default="light", nullable=False)
    language            = Column(String(5), default="en", nullable=False)

    is_active  = Column(Boolean, default=True, nullable=False)
    last_login = Column(DateTime(timezone=True), default=utcnow)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    subscription = relationship("Subscription", foreign_keys=[subscription_id], lazy="select",
                                post_update=True)

    def usage_dict(self) -> dict:
        return {
            "totalAnalyses": self.total_analyses,
            "monthlyAnalyses": self.monthly_analyses,
            "imagesAnalyzed": self.images_analyzed,
            "reportsDownloaded": self.reports_downloaded,
            "lastResetDate": as_utc(self.last_reset_date),
        }


class Subscription(Base):
    """One plan-grant attempt and its lifecycle (pending → active → cancelled/expired)."""
    __tablename__ = "subscriptions"

    id               = Column(Integer, primary_key=True, index=True)
    user_id          = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    plan             = Column(SAEnum(Plan), nullable=False)
    status           = Column(SAEnum(SubscriptionStatus), default=SubscriptionStatus.pending, nullable=False)
    amount           = Column(Float, nullable=False)
    currency         = Column(String(3), default="TRY", nullable=False)
    payment_provider = Column(String(20), nullable=False)   # razorpay | demo
    payment_id       = Column(String(100), unique=True, index=True, nullable=False)
    conversation_id  = Column(String(64), nullable=True)
    start_date       = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    end_date         = Column(DateTime(timezone=True), nullable=True)   # null for lifetime
    activated_at     = Column(DateTime(timezone=True), nullable=True)
    customer_info    = Column(JSON, default=dict)
    payment_info     = Column(JSON, nullable=True)
    created_at       = Column(DateTime(timezone=True), default=utcnow)
    updated_at       = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    user = relationship("User", foreign_keys=[user_id], lazy="select")

    def summary(self) -> dict:
        return {
            "id": self.id,
            "plan": self.plan.value,
            "status": self.status.value,
            "startDate": as_utc(self.start_date),
            "endDate": as_utc(self.end_date),
        }
