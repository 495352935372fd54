from __future__ import annotations

import hmac
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Header, Request

from harmony_core.api.schemas import (
    ActivationResponse,
    AppleLoginRequest,
    AppleReceiptRequest,
    AuthResponse,
    ConfirmReturnRequest,
    CreatePaymentRequest,
    CreatePaymentResponse,
    DemoGrantRequest,
    DemoGrantResponse,
    Envelope,
    GoogleLoginRequest,
    GoogleReceiptRequest,
    LoginRequest,
    PaymentConfigResponse,
    PlanListResponse,
    PlanResponse,
    ReconcileResponse,
    RegisterRequest,
    RegisterResponse,
    TokenRefreshRequest,
    TokenResponse,
    UpdateProfileRequest,
    UserSnapshot,
    VerifyEmailRequest,
)
from harmony_core.logging import get_logger
from harmony_core.service.auth import AuthResult
from harmony_core.service.errors import AuthenticationError, ForbiddenError
from harmony_core.service.runtime import get_runtime
from harmony_core.service.sessions import TokenPair
from harmony_core.service.tokens import AccessClaims
from harmony_core.storage.models import SubscriptionStore

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


def _user_agent(request: Request) -> Optional[str]:
    return request.headers.get("user-agent")


def _token_response(tokens: TokenPair) -> TokenResponse:
    return TokenResponse(
        access_token=tokens.access_token,
        refresh_token=tokens.refresh_token,
        token_type=tokens.token_type,
        expires_in=tokens.access_expires_in,
        refresh_expires_at=tokens.refresh_expires_at,
    )


def _auth_response(result: AuthResult) -> AuthResponse:
    return AuthResponse(
        **_token_response(result.tokens).model_dump(),
        user=UserSnapshot(**result.user),
    )


async def get_user(authorization: Optional[str] = Header(None)) -> AccessClaims:
    """Resolve the bearer access token to the calling user."""
    if not authorization or not authorization.lower().startswith("bearer "):
        raise AuthenticationError("missing bearer token")
    runtime = get_runtime()
    return runtime.auth.authenticate(authorization.split(" ", 1)[1].strip())


def require_site_key(
    x_harmony_site_key: Optional[str] = Header(None, alias="X-Harmony-Site-Key"),
) -> None:
    expected = get_runtime().settings.site_api_key
    if not x_harmony_site_key or not hmac.compare_digest(x_harmony_site_key, expected):
        raise ForbiddenError("invalid site key")


# auth


@router.post("/auth/register", response_model=Envelope, tags=["auth"])
async def register(body: RegisterRequest, request: Request):
    """Start e-mail registration: stores a pending record and mails a 6-digit code.

    Raises:
        400: invalid email, name or password
        409: email already registered
        429: lockout or registration limit
    """
    runtime = get_runtime()
    result = await runtime.auth.register(
        name=body.name,
        surname=body.surname,
        email=body.email,
        password=body.password,
        ip=_client_ip(request),
        user_agent=_user_agent(request),
    )
    return Envelope(status="ok", data=RegisterResponse(message=result.message, sent=result.sent))


@router.post("/auth/verify-email", response_model=Envelope, tags=["auth"])
async def verify_email(body: VerifyEmailRequest, request: Request):
    runtime = get_runtime()
    result = await runtime.auth.verify_email(
        email=body.email,
        code=body.code,
        ip=_client_ip(request),
        user_agent=_user_agent(request),
    )
    return Envelope(status="ok", data=_auth_response(result))


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request):
    runtime = get_runtime()
    result = await runtime.auth.login(
        email=body.email,
        password=body.password,
        ip=_client_ip(request),
        user_agent=_user_agent(request),
    )
    return Envelope(status="ok", data=_auth_response(result))


@router.post("/auth/google", response_model=Envelope, tags=["auth"])
async def login_google(body: GoogleLoginRequest, request: Request):
    runtime = get_runtime()
    result = await runtime.auth.login_with_google(
        id_token=body.id_token, ip=_client_ip(request), user_agent=_user_agent(request)
    )
    return Envelope(status="ok", data=_auth_response(result))


@router.post("/auth/apple", response_model=Envelope, tags=["auth"])
async def login_apple(body: AppleLoginRequest, request: Request):
    runtime = get_runtime()
    result = await runtime.auth.login_with_apple(
        identity_token=body.identity_token,
        ip=_client_ip(request),
        user_agent=_user_agent(request),
    )
    return Envelope(status="ok", data=_auth_response(result))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh(body: TokenRefreshRequest, request: Request):
    """Rotate a refresh token. Presenting a rotated token revokes every session."""
    runtime = get_runtime()
    tokens = await runtime.auth.refresh(
        refresh_token=body.refresh_token,
        ip=_client_ip(request),
        user_agent=_user_agent(request),
    )
    return Envelope(status="ok", data=_token_response(tokens))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(body: TokenRefreshRequest):
    runtime = get_runtime()
    await runtime.auth.logout(refresh_token=body.refresh_token)
    return Envelope(status="ok", data={"message": "ok"})


# account


@router.get("/me", response_model=Envelope, tags=["account"])
async def me(principal: AccessClaims = Depends(get_user)):
    runtime = get_runtime()
    return Envelope(status="ok", data=UserSnapshot(**runtime.auth.me(principal.user_id)))


@router.patch("/me/profile", response_model=Envelope, tags=["account"])
async def update_profile(body: UpdateProfileRequest, principal: AccessClaims = Depends(get_user)):
    """Change name/surname; allowed once per configured interval after the first change."""
    runtime = get_runtime()
    snapshot = runtime.auth.update_profile(principal.user_id, name=body.name, surname=body.surname)
    return Envelope(status="ok", data=UserSnapshot(**snapshot))


@router.delete("/me", response_model=Envelope, tags=["account"])
async def delete_account(principal: AccessClaims = Depends(get_user)):
    runtime = get_runtime()
    runtime.auth.delete_account(principal.user_id)
    return Envelope(status="ok", data={"message": "ok"})


# payments


@router.get("/payments/plans", response_model=Envelope, tags=["payments"])
async def list_plans():
    runtime = get_runtime()
    plans = [PlanResponse(**plan.as_dict()) for plan in runtime.payments.list_plans()]
    return Envelope(status="ok", data=PlanListResponse(plans=plans))


@router.get("/payments/config", response_model=Envelope, tags=["payments"])
async def payment_config():
    runtime = get_runtime()
    return Envelope(
        status="ok",
        data=PaymentConfigResponse(
            gateway_enabled=runtime.payments.gateway is not None,
            demo_enabled=runtime.settings.demo_payments_enabled,
            subscription_site_url=runtime.settings.subscription_site_url,
        ),
    )


@router.post(
    "/payments/create",
    response_model=Envelope,
    tags=["payments"],
    dependencies=[Depends(require_site_key)],
)
async def create_payment(body: CreatePaymentRequest):
    runtime = get_runtime()
    intent = await runtime.payments.create_intent(
        body.plan_id, body.email_or_id, body.return_url, body.cancel_url
    )
    return Envelope(
        status="ok",
        data=CreatePaymentResponse(
            payment_id=intent.payment_id,
            confirmation_url=intent.confirmation_url,
            subscription_warning=intent.subscription_warning,
        ),
    )


@router.post("/payments/yookassa/webhook", response_model=Envelope, tags=["payments"])
async def yookassa_webhook(request: Request):
    """Provider notification; always acknowledged so the provider stops retrying."""
    runtime = get_runtime()
    try:
        body: Any = await request.json()
    except ValueError:
        logger.warning("webhook_invalid_json")
        return Envelope(status="ok", data={"received": True})
    result = await runtime.payments.handle_webhook(body)
    data: Dict[str, Any] = {"received": True}
    if result is not None:
        data["granted"] = result.granted
    return Envelope(status="ok", data=data)


@router.post(
    "/payments/confirm-return",
    response_model=Envelope,
    tags=["payments"],
    dependencies=[Depends(require_site_key)],
)
async def confirm_return(body: ConfirmReturnRequest):
    runtime = get_runtime()
    result = await runtime.payments.confirm_return(body.payment_id)
    return Envelope(status="ok", data=ReconcileResponse(granted=result.granted))


@router.post(
    "/payments/demo",
    response_model=Envelope,
    tags=["payments"],
    dependencies=[Depends(require_site_key)],
)
async def demo_grant(body: DemoGrantRequest):
    runtime = get_runtime()
    result = runtime.payments.grant_demo(body.email_or_id, body.plan_id)
    return Envelope(status="ok", data=DemoGrantResponse(**result))


@router.post("/payments/apple/verify", response_model=Envelope, tags=["payments"])
async def verify_apple(body: AppleReceiptRequest, principal: AccessClaims = Depends(get_user)):
    runtime = get_runtime()
    until = await runtime.payments.verify_and_activate(
        principal.user_id, body.receipt, SubscriptionStore.APPLE, body.product_id
    )
    return Envelope(
        status="ok",
        data=ActivationResponse(
            premium_until=until, user=UserSnapshot(**runtime.auth.me(principal.user_id))
        ),
    )


@router.post("/payments/google/verify", response_model=Envelope, tags=["payments"])
async def verify_google(body: GoogleReceiptRequest, principal: AccessClaims = Depends(get_user)):
    runtime = get_runtime()
    until = await runtime.payments.verify_and_activate(
        principal.user_id, body.purchase_token, SubscriptionStore.GOOGLE, body.product_id
    )
    return Envelope(
        status="ok",
        data=ActivationResponse(
            premium_until=until, user=UserSnapshot(**runtime.auth.me(principal.user_id))
        ),
    )
