"""
UI Analyzer — Payment Gateway Adapter
Razorpay Payment Links as the hosted checkout, plus a demo gateway used
when no Razorpay keys are configured.

Declines surface as GatewayDeclineError (or a non-succeeded SessionResult);
links the customer has not paid yet come back with pending=True;
transport and infrastructure problems surface as GatewayFaultError.
"""

import hashlib
import hmac
import logging
import uuid
from dataclasses import dataclass, field
from typing import Optional
from urllib.parse import urlencode, urlsplit, urlunsplit, parse_qsl

import razorpay
import requests
from razorpay.errors import BadRequestError, GatewayError, ServerError

from errors import GatewayDeclineError, GatewayFaultError

logger = logging.getLogger(__name__)

PAID_STATUS = "paid"
# link exists but the customer has not finished paying
OPEN_STATUSES = ("created", "partially_paid")


@dataclass(frozen=True)
class CheckoutSession:
    session_handle: str
    redirect_url: str


@dataclass(frozen=True)
class SessionResult:
    succeeded: bool
    provider_status: str
    provider_metadata: dict = field(default_factory=dict)
    pending: bool = False


def _with_query(url: str, **params) -> str:
    parts = urlsplit(url)
    query = dict(parse_qsl(parts.query))
    query.update(params)
    return urlunsplit(parts._replace(query=urlencode(query)))


def verify_webhook_signature(secret: str, body: bytes, signature: Optional[str]) -> bool:
    """HMAC-SHA256 of the raw body, compared in constant time."""
    expected = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature or "")


class RazorpayGateway:
    provider = "razorpay"

    def __init__(self, key_id: str, key_secret: str, client=None):
        self.client = client or razorpay.Client(auth=(key_id, key_secret))

    def create_checkout_session(
        self,
        amount: float,
        currency: str,
        buyer_info: dict,
        callback_url: str,
        reference_id: str,
    ) -> CheckoutSession:
        customer = {"name": buyer_info.get("name", ""), "email": buyer_info.get("email", "")}
        if buyer_info.get("phone"):
            customer["contact"] = buyer_info["phone"]

        payload = {
            "amount": int(round(amount * 100)),   # smallest currency unit
            "currency": currency,
            "accept_partial": False,
            "reference_id": reference_id,
            "description": buyer_info.get("description", "UI Analyzer plan"),
            "customer": customer,
            "notify": {"sms": False, "email": False},
            "callback_url": callback_url,
            "callback_method": "get",
            "notes": {k: str(v) for k, v in buyer_info.get("notes", {}).items()},
        }
        try:
            link = self.client.payment_link.create(payload)
        except BadRequestError as e:
            logger.info(f"Razorpay refused checkout session {reference_id}: {e}")
            raise GatewayDeclineError("Payment initialization failed", details=str(e))
        except (ServerError, GatewayError, requests.RequestException) as e:
            logger.error(f"Razorpay transport failure creating session {reference_id}: {e}")
            raise GatewayFaultError()

        try:
            return CheckoutSession(session_handle=link["id"], redirect_url=link["short_url"])
        except (KeyError, TypeError):
            logger.error(f"Malformed Razorpay payment link response: {link!r}")
            raise GatewayFaultError()

    def retrieve_session_result(self, session_handle: str) -> SessionResult:
        try:
            link = self.client.payment_link.fetch(session_handle)
        except BadRequestError as e:
            logger.info(f"Razorpay rejected lookup of {session_handle}: {e}")
            return SessionResult(succeeded=False, provider_status="FAILURE", provider_metadata={"error": str(e)})
        except (ServerError, GatewayError, requests.RequestException) as e:
            logger.error(f"Razorpay transport failure fetching {session_handle}: {e}")
            raise GatewayFaultError()

        if not isinstance(link, dict) or "status" not in link:
            logger.error(f"Malformed Razorpay payment link response: {link!r}")
            raise GatewayFaultError()

        status = link["status"]
        payments = link.get("payments") or []
        captured = [p for p in payments if p.get("status") == "captured"]
        metadata = {}
        if captured:
            last = captured[-1]
            metadata = {"paymentId": last.get("payment_id"), "method": last.get("method")}
        return SessionResult(
            succeeded=status == PAID_STATUS,
            provider_status=status.upper(),
            provider_metadata=metadata,
            pending=status in OPEN_STATUSES,
        )


class DemoGateway:
    """Stand-in checkout for local development: every session succeeds."""
    provider = "demo"

    def create_checkout_session(
        self,
        amount: float,
        currency: str,
        buyer_info: dict,
        callback_url: str,
        reference_id: str,
    ) -> CheckoutSession:
        handle = f"demo_{uuid.uuid4().hex}"
        logger.warning(f"Demo gateway: session {handle} for {amount} {currency} (no real charge).")
        return CheckoutSession(session_handle=handle, redirect_url=_with_query(callback_url, token=handle))

    def retrieve_session_result(self, session_handle: str) -> SessionResult:
        if not session_handle.startswith("demo_"):
            return SessionResult(succeeded=False, provider_status="FAILURE")
        return SessionResult(
            succeeded=True,
            provider_status="SUCCESS",
            provider_metadata={"paymentId": session_handle, "method": "demo"},
        )


def build_gateway(settings):
    if settings.payments_live:
        return RazorpayGateway(settings.razorpay_key_id, settings.razorpay_key_secret)
    logger.warning("RAZORPAY_KEY_ID not set — using demo payment gateway.")
    return DemoGateway()
