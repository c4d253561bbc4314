"""
UI Analyzer — Pydantic Data Models
Request bodies for the auth, payment, subscription and user routes.
"""
from typing import Literal, Optional

from pydantic import BaseModel, EmailStr, Field


# ── Auth ──────────────────────────────────────────────────────────────────────

class RegisterBody(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=6)
    name: str = Field(..., min_length=2)


class LoginBody(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=1)


class ProfileBody(BaseModel):
    name: Optional[str] = Field(default=None, min_length=2)
    email: Optional[EmailStr] = None


class SettingsBody(BaseModel):
    openaiApiKey: Optional[str] = None
    emailNotifications: Optional[bool] = None


class PasswordBody(BaseModel):
    currentPassword: str = Field(..., min_length=1)
    newPassword: str = Field(..., min_length=6)


# ── Payments ──────────────────────────────────────────────────────────────────

class CustomerInfo(BaseModel):
    name: str = Field(..., min_length=1)
    phone: Optional[str] = Field(default=None, pattern=r"^\+?[1-9]\d{1,14}$")
    vatNumber: Optional[str] = None


class CreatePaymentBody(BaseModel):
    plan: Literal["yearly", "lifetime"]
    currency: str = "TRY"
    customerInfo: CustomerInfo


class VerifyPaymentBody(BaseModel):
    token: str = Field(..., min_length=1)


# ── Subscriptions / usage ─────────────────────────────────────────────────────

class TrackUsageBody(BaseModel):
    type: Literal["analysis", "images", "download"]
    count: int = Field(default=1, ge=1)


# ── Users ─────────────────────────────────────────────────────────────────────

class PreferencesBody(BaseModel):
    emailNotifications: Optional[bool] = None
    theme: Optional[Literal["light", "dark"]] = None
    language: Optional[Literal["en", "tr"]] = None
