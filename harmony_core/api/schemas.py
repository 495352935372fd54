from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
    "service_unavailable",
})


class ErrorBody(BaseModel):
    """Error envelope body with a stable code value."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


# Credential fields are plain optional strings: format checks happen in the
# auth service so that malformed attempts are still counted by the lockout.
class RegisterRequest(BaseModel):
    name: Optional[str] = Field(default=None, max_length=512)
    surname: Optional[str] = Field(default=None, max_length=512)
    email: Optional[str] = Field(default=None, max_length=1024)
    password: Optional[str] = Field(default=None, max_length=1024)


class RegisterResponse(BaseModel):
    message: str
    sent: bool


class VerifyEmailRequest(BaseModel):
    email: Optional[str] = Field(default=None, max_length=1024)
    code: Optional[str] = Field(default=None, max_length=32)


class LoginRequest(BaseModel):
    email: Optional[str] = Field(default=None, max_length=1024)
    password: Optional[str] = Field(default=None, max_length=1024)


class GoogleLoginRequest(BaseModel):
    id_token: str = Field(..., min_length=1, max_length=8192)


class AppleLoginRequest(BaseModel):
    identity_token: str = Field(..., min_length=1, max_length=8192)


class TokenRefreshRequest(BaseModel):
    refresh_token: str = Field(..., max_length=2048)


class UserSnapshot(BaseModel):
    id: str
    email: str
    name: str
    surname: str
    created_at: datetime
    premium_until: Optional[datetime] = None
    subscription: Optional[str] = None
    subscription_product_id: Optional[str] = None
    subscription_store: Optional[str] = None
    subscription_period_end: Optional[datetime] = None


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "Bearer"
    expires_in: int
    refresh_expires_at: datetime


class AuthResponse(TokenResponse):
    user: UserSnapshot


class UpdateProfileRequest(BaseModel):
    name: Optional[str] = Field(default=None, max_length=512)
    surname: Optional[str] = Field(default=None, max_length=512)


class PlanResponse(BaseModel):
    id: str
    duration_days: int
    price: str
    currency: str
    description: str


class PlanListResponse(BaseModel):
    plans: List[PlanResponse]


class PaymentConfigResponse(BaseModel):
    gateway_enabled: bool
    demo_enabled: bool
    subscription_site_url: str


class CreatePaymentRequest(BaseModel):
    plan_id: str = Field(..., max_length=32)
    email_or_id: str = Field(..., max_length=256)
    return_url: str = Field(..., max_length=2048)
    cancel_url: Optional[str] = Field(default=None, max_length=2048)


class CreatePaymentResponse(BaseModel):
    payment_id: str
    confirmation_url: str
    subscription_warning: Optional[str] = None


class ConfirmReturnRequest(BaseModel):
    payment_id: Optional[str] = Field(default=None, max_length=128)


class ReconcileResponse(BaseModel):
    granted: bool


class DemoGrantRequest(BaseModel):
    plan_id: str = Field(..., max_length=32)
    email_or_id: str = Field(..., max_length=256)


class DemoGrantResponse(BaseModel):
    success: bool
    user_id: str
    plan_id: str
    days: int
    premium_until: datetime


class AppleReceiptRequest(BaseModel):
    receipt: str = Field(..., min_length=1)
    product_id: Optional[str] = Field(default=None, max_length=256)


class GoogleReceiptRequest(BaseModel):
    purchase_token: str = Field(..., min_length=1, max_length=4096)
    product_id: str = Field(..., min_length=1, max_length=256)


class ActivationResponse(BaseModel):
    premium_until: datetime
    user: UserSnapshot
