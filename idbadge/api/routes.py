from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, Path, Query, Request, Response
from fastapi.responses import JSONResponse, RedirectResponse

from idbadge.api.schemas import (
    ChangePasswordRequest,
    CompleteForgotPasswordRequest,
    CreateAccountRequest,
    Envelope,
    ForgotPasswordRequest,
    InvitationRequest,
    LoginRequest,
    MfaCodeRequest,
    MfaCompleteRequest,
    MfaSmsStartRequest,
    RegisterRequest,
    SwitchAccountRequest,
    UpdateAccountRequest,
)
from idbadge.logging import get_logger
from idbadge.service.accounts import account_view, member_view
from idbadge.service.badges import (
    SESSION_COOKIE,
    SIGNATURE_COOKIE,
    TRUSTED_DEVICE_COOKIE,
    Badge,
    SignedBadge,
)
from idbadge.service.errors import AuthenticationError, ValidationError
from idbadge.service.login import LoginResult
from idbadge.service.mfa import TrustedDeviceGrant
from idbadge.service.registration import RedirectResult
from idbadge.service.runtime import get_runtime
from idbadge.storage.common import to_iso
from idbadge.storage.models import Identity

logger = get_logger(__name__)

router = APIRouter(prefix="/v2")


def _client_ip(request: Request) -> Optional[str]:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip() or None
    return request.client.host if request.client else None


async def get_badge(
    request: Request,
    authorization: Optional[str] = Header(None),
) -> Badge:
    """Resolve the caller's badge from the cookie pair or a ``Bearer`` header."""
    runtime = get_runtime()
    payload = request.cookies.get(SESSION_COOKIE)
    signature = request.cookies.get(SIGNATURE_COOKIE)
    if authorization and authorization.lower().startswith("bearer "):
        token = authorization.split(" ", 1)[1].strip()
        payload, _, signature = token.rpartition(".")
    return runtime.signer.verify(payload, signature)


async def _identity_for(badge: Badge) -> Identity:
    identity = await get_runtime().directory.get(badge.user_id)
    if identity is None:
        raise AuthenticationError()
    return identity


def _set_cookie(response: Response, name: str, value: str, *, http_only: bool, expires) -> None:
    response.set_cookie(
        name,
        value,
        httponly=http_only,
        secure=get_runtime().settings.secure_cookies,
        samesite="lax",
        expires=expires,
        path="/",
    )


def _apply_badge_cookies(response: Response, signed: SignedBadge) -> None:
    # The payload stays readable by the browser; the signature does not
    _set_cookie(response, SESSION_COOKIE, signed.payload, http_only=False, expires=signed.expires_at)
    _set_cookie(response, SIGNATURE_COOKIE, signed.signature, http_only=True, expires=signed.expires_at)


def _apply_trusted_device_cookie(response: Response, grant: Optional[TrustedDeviceGrant]) -> None:
    if grant is not None:
        _set_cookie(response, TRUSTED_DEVICE_COOKIE, grant.token, http_only=True, expires=grant.expires_date)


def _login_response(result: LoginResult) -> JSONResponse:
    response = JSONResponse(Envelope(status="ok", data=result.to_dict()).model_dump())
    _apply_badge_cookies(response, result.signed)
    _apply_trusted_device_cookie(response, result.trusted_device)
    return response


def _redirect_response(result: RedirectResult) -> RedirectResponse:
    response = RedirectResponse(result.location, status_code=302)
    if result.login is not None:
        _apply_badge_cookies(response, result.login.signed)
    return response


def _user_view(identity: Identity) -> dict:
    return {
        "id": identity.id,
        "email": identity.email,
        "emailVerified": identity.email_verified,
        "mfa": identity.mfa.variant.value if identity.mfa else "none",
        "defaultAccountId": identity.default_account_id,
        "mode": identity.default_mode,
        "createdDate": to_iso(identity.created_date),
        "lastLoginDate": to_iso(identity.last_login_date) if identity.last_login_date else None,
    }


# Registration and out-of-band links


@router.post("/user/register", response_model=Envelope, status_code=201, tags=["registration"])
async def register(body: RegisterRequest, request: Request):
    """Register a new user.

    Always answers 201 for a well-formed request, whether or not the email was
    already registered.
    """
    runtime = get_runtime()
    await runtime.registration.register(
        body.email, body.password, ip=_client_ip(request), name=body.name
    )
    return Envelope(status="ok", data={})


@router.get("/user/register/verifyEmail", tags=["registration"])
async def verify_email(token: Optional[str] = Query(None, max_length=256)):
    if not token:
        raise ValidationError("Missing 'token' query param.")
    result = await get_runtime().registration.verify_email(token)
    return _redirect_response(result)


@router.get("/user/register/acceptInvitation", tags=["registration"])
async def accept_invitation(token: Optional[str] = Query(None, max_length=256)):
    if not token:
        raise ValidationError("Missing 'token' query param.")
    result = await get_runtime().registration.accept_invitation(token)
    return _redirect_response(result)


@router.post("/user/forgotPassword", response_model=Envelope, tags=["registration"])
async def forgot_password(body: ForgotPasswordRequest, request: Request):
    await get_runtime().registration.forgot_password(body.email, ip=_client_ip(request))
    return Envelope(status="ok", data={})


@router.post("/user/forgotPassword/complete", tags=["registration"])
async def complete_forgot_password(body: CompleteForgotPasswordRequest):
    result = await get_runtime().registration.complete_forgot_password(body.token, body.password)
    return _login_response(result)


@router.put("/user/changePassword", response_model=Envelope, tags=["user"])
async def change_password(body: ChangePasswordRequest, badge: Badge = Depends(get_badge)):
    await get_runtime().registration.change_password(badge, body.old_password, body.new_password)
    return Envelope(status="ok", data={})


# Login


@router.post("/login", tags=["login"])
async def login(body: LoginRequest, request: Request):
    """Authenticate with email and password.

    When the identity has MFA enabled the badge only allows ``/login/mfa``.
    """
    result = await get_runtime().login.login(
        body.email,
        body.password,
        ip=_client_ip(request),
        trusted_device=request.cookies.get(TRUSTED_DEVICE_COOKIE),
    )
    return _login_response(result)


@router.post("/login/mfa", tags=["login"])
async def complete_login_mfa(body: MfaCompleteRequest, badge: Badge = Depends(get_badge)):
    result = await get_runtime().login.complete_mfa(
        badge, body.code, trust_device=body.trust_this_device
    )
    return _login_response(result)


@router.post("/user/logout", response_model=Envelope, tags=["login"])
async def logout(response: Response):
    response.delete_cookie(SESSION_COOKIE, path="/")
    response.delete_cookie(SIGNATURE_COOKIE, path="/")
    return Envelope(status="ok", data={})


# User and MFA


@router.get("/user", response_model=Envelope, tags=["user"])
async def get_user(badge: Badge = Depends(get_badge)):
    badge.require_scope("user:read")
    identity = await _identity_for(badge)
    return Envelope(status="ok", data=_user_view(identity))


@router.get("/user/mfa", response_model=Envelope, tags=["mfa"])
async def get_mfa(badge: Badge = Depends(get_badge)):
    badge.require_scope("user:mfa")
    identity = await _identity_for(badge)
    return Envelope(status="ok", data=get_runtime().mfa.get_status(identity))


@router.post("/user/mfa/sms", response_model=Envelope, tags=["mfa"])
async def start_sms_mfa(body: MfaSmsStartRequest, badge: Badge = Depends(get_badge)):
    badge.require_scope("user:mfa")
    identity = await _identity_for(badge)
    await get_runtime().mfa.start_sms(identity, body.device)
    return Envelope(status="ok", data={"message": "A code has been sent to the device."})


@router.post("/user/mfa/totp", response_model=Envelope, tags=["mfa"])
async def start_totp_mfa(badge: Badge = Depends(get_badge)):
    badge.require_scope("user:mfa")
    identity = await _identity_for(badge)
    return Envelope(status="ok", data=await get_runtime().mfa.start_totp(identity))


@router.post("/user/mfa/complete", response_model=Envelope, tags=["mfa"])
async def complete_mfa_enrollment(body: MfaCodeRequest, badge: Badge = Depends(get_badge)):
    badge.require_scope("user:mfa")
    identity = await _identity_for(badge)
    return Envelope(status="ok", data=await get_runtime().mfa.complete_enrollment(identity, body.code))


@router.delete("/user/mfa", response_model=Envelope, tags=["mfa"])
async def disable_mfa(badge: Badge = Depends(get_badge)):
    badge.require_scope("user:mfa")
    identity = await _identity_for(badge)
    await get_runtime().mfa.disable(identity)
    return Envelope(status="ok", data={})


@router.get("/user/mfa/backupCodes", response_model=Envelope, tags=["mfa"])
async def get_backup_codes(badge: Badge = Depends(get_badge)):
    badge.require_scope("user:mfa")
    identity = await _identity_for(badge)
    return Envelope(status="ok", data=await get_runtime().mfa.get_backup_codes(identity))


# Accounts


@router.get("/account", response_model=Envelope, tags=["account"])
async def get_account(badge: Badge = Depends(get_badge)):
    account = await get_runtime().accounts.get_account(badge)
    return Envelope(status="ok", data=account_view(account))


@router.post("/account", response_model=Envelope, status_code=201, tags=["account"])
async def create_account(body: CreateAccountRequest, badge: Badge = Depends(get_badge)):
    account = await get_runtime().accounts.create_account(badge, body.name)
    return Envelope(status="ok", data=account_view(account))


@router.patch("/account", response_model=Envelope, tags=["account"])
async def update_account(body: UpdateAccountRequest, badge: Badge = Depends(get_badge)):
    # Explicit nulls clear a policy, omitted fields leave it unchanged
    changes = {name: getattr(body, name) for name in body.model_fields_set}
    account = await get_runtime().accounts.update_account(badge, **changes)
    return Envelope(status="ok", data=account_view(account))


@router.post("/account/switch", tags=["account"])
async def switch_account(body: SwitchAccountRequest, badge: Badge = Depends(get_badge)):
    result = await get_runtime().accounts.switch_account(badge, body.account_id, body.mode)
    return _login_response(result)


@router.get("/account/users", response_model=Envelope, tags=["account"])
async def list_account_users(badge: Badge = Depends(get_badge)):
    memberships = await get_runtime().accounts.list_users(badge)
    return Envelope(status="ok", data=[member_view(m) for m in memberships])


# Invitations


@router.post("/account/invitations", response_model=Envelope, status_code=201, tags=["invitations"])
async def invite_user(body: InvitationRequest, badge: Badge = Depends(get_badge)):
    invitation = await get_runtime().invitations.invite(
        badge,
        body.email,
        privilege=body.user_privilege_type,
        roles=body.roles,
        scopes=body.scopes,
    )
    return Envelope(status="ok", data=invitation.to_dict())


@router.get("/account/invitations", response_model=Envelope, tags=["invitations"])
async def list_invitations(badge: Badge = Depends(get_badge)):
    invitations = await get_runtime().invitations.list_invitations(badge)
    return Envelope(status="ok", data=[i.to_dict() for i in invitations])


@router.get("/account/invitations/{user_id}", response_model=Envelope, tags=["invitations"])
async def get_invitation(
    user_id: str = Path(..., max_length=64), badge: Badge = Depends(get_badge)
):
    invitation = await get_runtime().invitations.get_invitation(badge, user_id)
    return Envelope(status="ok", data=invitation.to_dict())


@router.delete("/account/invitations/{user_id}", response_model=Envelope, tags=["invitations"])
async def cancel_invitation(
    user_id: str = Path(..., max_length=64), badge: Badge = Depends(get_badge)
):
    await get_runtime().invitations.cancel_invitation(badge, user_id)
    return Envelope(status="ok", data={})
