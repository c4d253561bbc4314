"""
UI Analyzer — FastAPI Main Application
Accounts, subscriptions, payments and screenshot analysis.
"""

import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import List, Optional

from dotenv import load_dotenv
from fastapi import APIRouter, Depends, FastAPI, File, Header, Request, UploadFile
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address
from sqlalchemy.orm import Session
from starlette.exceptions import HTTPException as StarletteHTTPException

from analysis_service import analyze_screenshots
from auth import (
    TokenIssuer, authenticate_user, change_password, commit_or_raise, create_user,
    deactivate_user, get_current_user, get_token_issuer, normalize_email, update_profile,
)
from config import Settings
from database import get_db, init_db
from entitlements import EntitlementEngine, is_permitted, monthly_limit
from errors import AppError, GatewayDeclineError, NotFoundError, PaidPlanRequiredError, ValidationError
from ledger import PLAN_PRICES, SubscriptionLedger, is_currently_active
from models import (
    CreatePaymentBody, LoginBody, PasswordBody, PreferencesBody, ProfileBody,
    RegisterBody, SettingsBody, TrackUsageBody, VerifyPaymentBody,
)
from payment_gateway import build_gateway, verify_webhook_signature
from user_db import PAID_PLANS, Plan, User, as_utc, utcnow

load_dotenv()

logger = logging.getLogger(__name__)

MAX_IMAGE_BYTES = 10 * 1024 * 1024
WEBHOOK_EVENTS = ("payment_link.paid", "payment_link.cancelled", "payment_link.expired")


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("✅ UI Analyzer Backend starting up...")
    if app.state.session_factory is None:
        app.state.session_factory = init_db(app.state.settings.database_url)
    yield
    logger.info("🛑 UI Analyzer Backend shutting down...")


# ── Component wiring ──────────────────────────────────────────────────────────
def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_engine(db: Session = Depends(get_db)) -> EntitlementEngine:
    return EntitlementEngine(db)


def get_ledger(request: Request, db: Session = Depends(get_db)) -> SubscriptionLedger:
    settings = request.app.state.settings
    return SubscriptionLedger(db, request.app.state.gateway, settings.frontend_url)


# ── Response shapes ───────────────────────────────────────────────────────────
def subscription_status(user: User) -> dict:
    if user.plan == Plan.lifetime:
        return {"plan": "lifetime", "status": "active", "endDate": None}
    if user.plan == Plan.yearly and user.subscription is not None:
        sub = user.subscription
        return {
            "plan": "yearly",
            "status": "active" if is_currently_active(sub) else sub.status.value,
            "endDate": as_utc(sub.end_date),
        }
    return {"plan": user.plan.value, "status": "active", "endDate": None}


def user_payload(user: User, with_subscription: bool = False) -> dict:
    data = {
        "id": user.id,
        "email": user.email,
        "name": user.name,
        "plan": user.plan.value,
        "usage": user.usage_dict(),
        "createdAt": as_utc(user.created_at),
    }
    if with_subscription:
        data["subscription"] = subscription_status(user)
    return data


def days_until_reset(now: datetime) -> int:
    if now.month == 12:
        next_month = now.replace(year=now.year + 1, month=1, day=1, hour=0, minute=0, second=0, microsecond=0)
    else:
        next_month = now.replace(month=now.month + 1, day=1, hour=0, minute=0, second=0, microsecond=0)
    return (next_month - now).days


# ── Error Handlers ────────────────────────────────────────────────────────────
async def app_error_handler(request: Request, exc: AppError):
    if exc.status_code >= 500:
        logger.error(f"{type(exc).__name__} on {request.url.path}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=jsonable_encoder(exc.to_dict()))


async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.detail, "status_code": exc.status_code},
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError):
    details = [
        {"field": ".".join(str(p) for p in err["loc"][1:]), "message": err["msg"]}
        for err in exc.errors()
    ]
    return JSONResponse(status_code=400, content={"error": "Validation failed", "details": details})


async def generic_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error", "status_code": 500},
    )


router = APIRouter()


# ── Health Check ──────────────────────────────────────────────────────────────
@router.get("/health", tags=["System"])
async def health_check(request: Request):
    return {
        "status": "healthy",
        "timestamp": utcnow(),
        "service": "ui-analyzer-backend",
        "payments": request.app.state.gateway.provider,
    }


# ════════════════════════════════════════════════════════════════════════════════
# AUTH ROUTES
# ════════════════════════════════════════════════════════════════════════════════

# Rate-limited; mounted by limited_router()
async def register(
    request: Request,
    body: RegisterBody,
    db: Session = Depends(get_db),
    issuer: TokenIssuer = Depends(get_token_issuer),
):
    """Create a new account (free plan by default)."""
    user = create_user(db, body.email, body.password, body.name)
    return {"success": True, "token": issuer.issue(user.id, user.email), "user": user_payload(user)}


# Rate-limited; mounted by limited_router()
async def login(
    request: Request,
    body: LoginBody,
    db: Session = Depends(get_db),
    engine: EntitlementEngine = Depends(get_engine),
    issuer: TokenIssuer = Depends(get_token_issuer),
):
    """Authenticate and return a JWT token."""
    user = authenticate_user(db, body.email, body.password)
    user = engine.refresh_usage(user.id)
    return {
        "success": True,
        "token": issuer.issue(user.id, user.email),
        "user": user_payload(user, with_subscription=True),
    }


@router.get("/api/auth/me", tags=["Auth"])
async def get_me(user: User = Depends(get_current_user)):
    data = user_payload(user, with_subscription=True)
    data["settings"] = {"emailNotifications": user.email_notifications}
    return data


@router.put("/api/auth/profile", tags=["Auth"])
async def put_profile(body: ProfileBody, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    user = update_profile(db, user, name=body.name, email=body.email)
    return {"success": True, "user": {"id": user.id, "email": user.email, "name": user.name}}


@router.put("/api/auth/settings", tags=["Auth"])
async def put_settings(body: SettingsBody, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    if body.openaiApiKey is not None:
        user.personal_api_key = body.openaiApiKey or None
    if body.emailNotifications is not None:
        user.email_notifications = body.emailNotifications
    commit_or_raise(db, "settings")
    return {
        "success": True,
        "settings": {
            "emailNotifications": user.email_notifications,
            "hasApiKey": bool(user.personal_api_key),
        },
    }


@router.put("/api/auth/password", tags=["Auth"])
async def put_password(body: PasswordBody, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    change_password(db, user, body.currentPassword, body.newPassword)
    return {"success": True, "message": "Password updated successfully"}


@router.delete("/api/auth/account", tags=["Auth"])
async def delete_account(
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    ledger: SubscriptionLedger = Depends(get_ledger),
):
    cancelled = ledger.mark_cancelled_for_user(user.id)
    deactivate_user(db, user)   # commits the cancellations with the account
    logger.info(f"Account {user.id} deleted, {cancelled} subscriptions cancelled")
    return {"success": True, "message": "Account deleted successfully"}


@router.post("/api/auth/refresh", tags=["Auth"])
async def refresh_token(user: User = Depends(get_current_user), issuer: TokenIssuer = Depends(get_token_issuer)):
    return {"success": True, "token": issuer.issue(user.id, user.email)}


# ════════════════════════════════════════════════════════════════════════════════
# PAYMENT ROUTES
# ════════════════════════════════════════════════════════════════════════════════

# Rate-limited; mounted by limited_router()
async def create_payment(
    request: Request,
    body: CreatePaymentBody,
    user: User = Depends(get_current_user),
    ledger: SubscriptionLedger = Depends(get_ledger),
):
    """Start a checkout session and record a pending subscription."""
    started = ledger.start_purchase(
        user, Plan(body.plan), body.currency.upper(), body.customerInfo.model_dump(),
    )
    return {
        "success": True,
        "paymentPageUrl": started.session.redirect_url,
        "token": started.session.session_handle,
        "subscriptionId": started.subscription.id,
    }


@router.post("/api/payments/verify-payment", tags=["Payments"])
async def verify_payment(
    body: VerifyPaymentBody,
    user: User = Depends(get_current_user),
    ledger: SubscriptionLedger = Depends(get_ledger),
):
    """Confirm the checkout with the provider and activate the subscription."""
    outcome = ledger.verify_purchase(body.token, requesting_user_id=user.id)
    if outcome.pending:
        raise GatewayDeclineError("Payment not completed", success=False,
                                  paymentStatus=outcome.payment_status, pending=True)
    if not outcome.succeeded:
        raise GatewayDeclineError(success=False, paymentStatus=outcome.payment_status)
    return {"success": True, "subscription": outcome.subscription.summary()}


@router.get("/api/payments/status/{subscription_id}", tags=["Payments"])
async def payment_status(
    subscription_id: int,
    user: User = Depends(get_current_user),
    ledger: SubscriptionLedger = Depends(get_ledger),
):
    sub = ledger.get(subscription_id, owner_id=user.id)
    return {
        **sub.summary(),
        "amount": sub.amount,
        "currency": sub.currency,
        "isActive": is_currently_active(sub),
    }


@router.post("/api/payments/cancel/{subscription_id}", tags=["Payments"])
async def cancel_subscription(
    subscription_id: int,
    user: User = Depends(get_current_user),
    ledger: SubscriptionLedger = Depends(get_ledger),
):
    """Cancel a yearly subscription; paid access runs until the end date."""
    ledger.cancel(subscription_id, requesting_user_id=user.id)
    return {"success": True, "message": "Subscription cancelled successfully"}


@router.post("/api/payments/webhook", tags=["Payments"])
async def payment_webhook(
    request: Request,
    x_razorpay_signature: Optional[str] = Header(None, alias="X-Razorpay-Signature"),
    settings: Settings = Depends(get_settings),
    ledger: SubscriptionLedger = Depends(get_ledger),
):
    """Provider callback. Safe to receive more than once per payment."""
    if not settings.razorpay_webhook_secret:
        raise AppError("Webhook not configured")

    raw = await request.body()
    if not verify_webhook_signature(settings.razorpay_webhook_secret, raw, x_razorpay_signature):
        raise ValidationError("Invalid signature")

    try:
        event = json.loads(raw)
    except ValueError:
        raise ValidationError("Malformed webhook payload")

    event_type = event.get("event")
    handle = (
        event.get("payload", {}).get("payment_link", {}).get("entity", {}).get("id")
    )
    logger.info(f"Webhook received: {event_type} {handle}")
    if event_type not in WEBHOOK_EVENTS or not handle:
        return {"received": True}

    try:
        outcome = ledger.verify_purchase(handle)
    except NotFoundError:
        logger.warning(f"Webhook for unknown payment link {handle}")
        return {"received": True, "status": "unknown_payment"}
    return {"received": True, "status": outcome.subscription.status.value}


# ════════════════════════════════════════════════════════════════════════════════
# SUBSCRIPTION ROUTES
# ════════════════════════════════════════════════════════════════════════════════

@router.get("/api/subscriptions/me", tags=["Subscriptions"])
async def my_subscription(
    user: User = Depends(get_current_user),
    engine: EntitlementEngine = Depends(get_engine),
):
    can_analyze = engine.can_perform(user.id, "analysis")
    status = subscription_status(user)
    return {
        "plan": user.plan.value,
        "status": status["status"],
        "startDate": as_utc(user.subscription.start_date) if user.subscription else None,
        "endDate": status["endDate"],
        "usage": user.usage_dict(),
        "canAnalyze": can_analyze,
        "subscription": user.subscription.summary() if user.subscription else None,
    }


@router.post("/api/subscriptions/track-usage", tags=["Subscriptions"])
async def track_usage(
    body: TrackUsageBody,
    user: User = Depends(get_current_user),
    engine: EntitlementEngine = Depends(get_engine),
):
    user = engine.consume(user.id, body.type, body.count)
    return {
        "success": True,
        "usage": user.usage_dict(),
        "canAnalyze": is_permitted(user.plan, user.monthly_analyses),
    }


@router.get("/api/subscriptions/usage", tags=["Subscriptions"])
async def usage_stats(
    user: User = Depends(get_current_user),
    engine: EntitlementEngine = Depends(get_engine),
):
    can_analyze = engine.can_perform(user.id, "analysis")
    return {
        "totalAnalyses": user.total_analyses,
        "monthlyAnalyses": user.monthly_analyses,
        "imagesAnalyzed": user.images_analyzed,
        "reportsDownloaded": user.reports_downloaded,
        "daysSinceJoined": (utcnow() - as_utc(user.created_at)).days,
        "monthlyLimit": monthly_limit(user.plan),
        "canAnalyze": can_analyze,
        "lastResetDate": as_utc(user.last_reset_date),
    }


@router.get("/api/subscriptions/history", tags=["Subscriptions"])
async def subscription_history(
    user: User = Depends(get_current_user),
    ledger: SubscriptionLedger = Depends(get_ledger),
):
    return [
        {
            **sub.summary(),
            "amount": sub.amount,
            "currency": sub.currency,
            "paymentProvider": sub.payment_provider,
            "createdAt": as_utc(sub.created_at),
        }
        for sub in ledger.history(user.id)
    ]


@router.get("/api/subscriptions/can-upgrade", tags=["Subscriptions"])
async def can_upgrade(user: User = Depends(get_current_user)):
    to_yearly = user.plan == Plan.free
    to_lifetime = user.plan != Plan.lifetime
    return {
        "canUpgradeToYearly": to_yearly,
        "canUpgradeToLifetime": to_lifetime,
        "currentPlan": user.plan.value,
        "recommendations": {
            "yearly": {
                "features": ["Unlimited analyses", "Priority support", "Export features"],
            } if to_yearly else None,
            "lifetime": {
                "savings": "Pay once, never renew" if user.plan == Plan.yearly else "Best value - never pay again",
                "features": ["Everything in yearly", "Lifetime access", "All future updates"],
            } if to_lifetime else None,
        },
    }


@router.get("/api/subscriptions/plans", tags=["Subscriptions"])
async def plans():
    paid_features = {
        "analyses": "unlimited",
        "aiAnalysis": True,
        "multipleImages": True,
        "export": True,
        "support": "priority",
    }
    return {
        "free": {
            "name": "Free",
            "price": 0,
            "currency": "USD",
            "period": "forever",
            "features": {
                "analyses": monthly_limit(Plan.free),
                "period": "month",
                "aiAnalysis": False,
                "multipleImages": False,
                "export": False,
                "support": "community",
            },
        },
        "yearly": {
            "name": "Pro Yearly",
            "prices": PLAN_PRICES[Plan.yearly],
            "period": "year",
            "features": paid_features,
        },
        "lifetime": {
            "name": "Lifetime Access",
            "prices": PLAN_PRICES[Plan.lifetime],
            "period": "lifetime",
            "features": {**paid_features, "futureUpdates": True},
        },
    }


# ════════════════════════════════════════════════════════════════════════════════
# USER ROUTES
# ════════════════════════════════════════════════════════════════════════════════

@router.get("/api/users/analytics", tags=["Users"])
async def user_analytics(
    user: User = Depends(get_current_user),
    engine: EntitlementEngine = Depends(get_engine),
):
    can_analyze = engine.can_perform(user.id, "analysis")
    now = utcnow()
    days_joined = (now - as_utc(user.created_at)).days
    limit = monthly_limit(user.plan)
    return {
        "usage": {
            "totalAnalyses": user.total_analyses,
            "monthlyAnalyses": user.monthly_analyses,
            "imagesAnalyzed": user.images_analyzed,
            "reportsDownloaded": user.reports_downloaded,
            "avgAnalysesPerDay": round(user.total_analyses / days_joined, 2) if days_joined > 0 else 0,
        },
        "account": {
            "daysSinceJoined": days_joined,
            "plan": user.plan.value,
            "status": "active" if user.is_active else "inactive",
            "lastLogin": as_utc(user.last_login),
        },
        "limits": {
            "monthlyLimit": limit,
            "monthlyProgress": round(user.monthly_analyses / limit * 100) if limit else 100,
            "canAnalyze": can_analyze,
            "daysUntilReset": days_until_reset(now) if limit else None,
        },
    }


@router.get("/api/users/preferences", tags=["Users"])
async def get_preferences(user: User = Depends(get_current_user)):
    return {
        "emailNotifications": user.email_notifications,
        "hasOpenAIKey": bool(user.personal_api_key),
        "theme": user.theme,
        "language": user.language,
    }


@router.put("/api/users/preferences", tags=["Users"])
async def put_preferences(body: PreferencesBody, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    if body.emailNotifications is not None:
        user.email_notifications = body.emailNotifications
    if body.theme:
        user.theme = body.theme
    if body.language:
        user.language = body.language
    commit_or_raise(db, "preferences")
    return {
        "success": True,
        "preferences": {
            "emailNotifications": user.email_notifications,
            "theme": user.theme,
            "language": user.language,
        },
    }


@router.get("/api/users/export", tags=["Users"])
async def export_user_data(user: User = Depends(get_current_user)):
    """Everything stored about the caller (GDPR export)."""
    sub = user.subscription
    return {
        "exportDate": utcnow(),
        "data": {
            "profile": {
                "id": user.id,
                "email": user.email,
                "name": user.name,
                "createdAt": as_utc(user.created_at),
                "lastLogin": as_utc(user.last_login),
            },
            "subscription": {
                "plan": user.plan.value,
                "status": sub.status.value if sub else None,
                "startDate": as_utc(sub.start_date) if sub else None,
                "endDate": as_utc(sub.end_date) if sub else None,
            },
            "usage": user.usage_dict(),
            "settings": {
                "emailNotifications": user.email_notifications,
                "theme": user.theme,
                "language": user.language,
            },
        },
    }


@router.get("/api/users/check-email/{email}", tags=["Users"])
async def check_email(email: str, db: Session = Depends(get_db)):
    email = normalize_email(email)
    taken = db.query(User).filter(User.email == email, User.is_active.is_(True)).first()
    return {"available": taken is None, "email": email}


# ════════════════════════════════════════════════════════════════════════════════
# ANALYSIS
# ════════════════════════════════════════════════════════════════════════════════

# Rate-limited; mounted by limited_router()
async def analyze(
    request: Request,
    files: List[UploadFile] = File(...),
    user: User = Depends(get_current_user),
    engine: EntitlementEngine = Depends(get_engine),
    settings: Settings = Depends(get_settings),
):
    """Extract a design summary from uploaded screenshots (one metered analysis)."""
    paid = user.plan in PAID_PLANS
    if len(files) > 1 and not paid:
        raise PaidPlanRequiredError("Multiple images require a paid plan", plan=user.plan.value)

    images = []
    for upload in files:
        if not (upload.content_type or "").startswith("image/"):
            raise ValidationError("Only image uploads are supported", details=[{"field": upload.filename}])
        data = await upload.read()
        if len(data) > MAX_IMAGE_BYTES:
            raise ValidationError("Image too large", details=[{"field": upload.filename, "maxBytes": MAX_IMAGE_BYTES}])
        images.append((data, upload.content_type))

    engine.consume(user.id, "analysis")
    user = engine.record_usage(user.id, "images", len(images))

    result = analyze_screenshots(
        images,
        api_key=settings.gemini_api_key,
        use_ai=paid,
    )
    return {
        "success": True,
        "analysis": result,
        "usage": user.usage_dict(),
        "canAnalyze": is_permitted(user.plan, user.monthly_analyses),
    }


# ── Rate-limited routes ───────────────────────────────────────────────────────
# path, endpoint, limit, route options
LIMITED_ROUTES = (
    ("/api/auth/register", register, "10/minute", {"methods": ["POST"], "status_code": 201, "tags": ["Auth"]}),
    ("/api/auth/login", login, "20/minute", {"methods": ["POST"], "tags": ["Auth"]}),
    ("/api/payments/create-payment", create_payment, "10/minute", {"methods": ["POST"], "tags": ["Payments"]}),
    ("/api/analyze", analyze, "20/minute", {"methods": ["POST"], "tags": ["Analysis"]}),
)


def limited_router(limiter: Limiter) -> APIRouter:
    """Routes metered by one app's own limiter; each app gets a fresh Limiter."""
    limited = APIRouter()
    for path, endpoint, limit_value, options in LIMITED_ROUTES:
        limited.add_api_route(path, limiter.limit(limit_value)(endpoint), **options)
    return limited


# ── App ───────────────────────────────────────────────────────────────────────
def create_app(settings: Optional[Settings] = None, session_factory=None, gateway=None) -> FastAPI:
    """Build the application. Dependencies not passed in are created here or at startup."""
    settings = settings or Settings.from_env()
    logging.basicConfig(level=settings.log_level, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")

    app = FastAPI(
        title="UI Analyzer API",
        description="Accounts, subscriptions and screenshot analysis",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.session_factory = session_factory
    app.state.gateway = gateway or build_gateway(settings)
    app.state.token_issuer = TokenIssuer(settings.jwt_secret_key)

    limiter = Limiter(key_func=get_remote_address, enabled=settings.rate_limit_enabled)
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.include_router(router)
    app.include_router(limited_router(limiter))
    return app


app = create_app()
