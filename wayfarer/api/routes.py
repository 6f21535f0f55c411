from __future__ import annotations

import ipaddress
from typing import Optional, Sequence

from fastapi import APIRouter, Depends, Header, Path, Request

from wayfarer.api.schemas import (
    AccountRecoveryConfirm,
    AccountRecoveryRequest,
    Envelope,
    LoginRequest,
    LogoutRequest,
    PasswordChangeRequest,
    PasswordResetConfirm,
    PasswordResetRequest,
    ProfileUpdateRequest,
    RegisterRequest,
    TokenRefreshRequest,
    TwoFactorDisableRequest,
    TwoFactorEnableRequest,
    VerifyEmailRequest,
    VerifyTwoFactorRequest,
)
from wayfarer.logging import get_logger
from wayfarer.service.auth import AuthContext
from wayfarer.service.devices import DeviceFingerprint
from wayfarer.service.runtime import get_runtime

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def _is_trusted(host: str, proxies: Sequence[str]) -> bool:
    try:
        address = ipaddress.ip_address(host)
    except ValueError:
        return False
    networks = (ipaddress.ip_network(proxy, strict=False) for proxy in proxies)
    return any(
        network.version == address.version and address in network for network in networks
    )


def client_ip(request: Request, trusted_proxies: Sequence[str] = ()) -> Optional[str]:
    """Address of the client, as far as it can be trusted.

    The socket peer is authoritative. ``X-Forwarded-For`` is only read when
    that peer is a configured proxy, and then the nearest hop that is not
    itself a trusted proxy wins, so clients cannot prepend a spoofed address.
    """
    peer = request.client.host if request.client else None
    if not peer or not _is_trusted(peer, trusted_proxies):
        return peer
    hops = [
        hop.strip()
        for hop in request.headers.get("X-Forwarded-For", "").split(",")
        if hop.strip()
    ]
    for hop in reversed(hops):
        if not _is_trusted(hop, trusted_proxies):
            return hop
    return hops[0] if hops else peer


def get_device(request: Request) -> DeviceFingerprint:
    settings = get_runtime().settings
    return DeviceFingerprint.from_request(
        request.headers.get("User-Agent"), client_ip(request, settings.trusted_proxies)
    )


async def get_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    runtime = get_runtime()
    return await runtime.auth.authenticate(authorization)


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, device: DeviceFingerprint = Depends(get_device)):
    """Create an account and start a session before email verification.

    Raises:
        400: If the password fails the strength policy
        409: If the email is already registered
    """
    runtime = get_runtime()
    data = await runtime.auth.register(
        body.email,
        body.password,
        device,
        name=body.name,
        phone=body.phone,
        country=body.country,
        city=body.city,
    )
    return Envelope(status="ok", data=data)


@router.post("/auth/verify-email", response_model=Envelope, tags=["auth"])
async def verify_email(
    body: VerifyEmailRequest, device: DeviceFingerprint = Depends(get_device)
):
    runtime = get_runtime()
    data = await runtime.auth.verify_email(body.email, body.code, device)
    return Envelope(status="ok", data=data)


@router.post("/auth/verify-email/resend", response_model=Envelope, tags=["auth"])
async def resend_verification(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    data = await runtime.auth.request_email_verification(principal.user_id)
    return Envelope(status="ok", data=data)


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, device: DeviceFingerprint = Depends(get_device)):
    """Authenticate with email and password.

    The response either carries tokens, or ``requires_2fa`` /
    ``requires_verification`` with a ``user_id`` to complete through
    ``/auth/verify-2fa``.

    Raises:
        401: If credentials are invalid
        403: If the account is deactivated
        423: If the account is locked
    """
    runtime = get_runtime()
    data = await runtime.auth.login(
        body.email, body.password, device, trust_device=body.trust_device
    )
    return Envelope(status="ok", data=data)


@router.post("/auth/verify-2fa", response_model=Envelope, tags=["auth"])
async def verify_2fa(
    body: VerifyTwoFactorRequest, device: DeviceFingerprint = Depends(get_device)
):
    runtime = get_runtime()
    data = await runtime.auth.verify_2fa(
        body.user_id, body.code, device, trust_device=body.trust_device
    )
    return Envelope(status="ok", data=data)


@router.post("/auth/refresh-token", response_model=Envelope, tags=["auth"])
async def refresh_token(body: TokenRefreshRequest):
    runtime = get_runtime()
    data = await runtime.auth.refresh_token(body.refresh_token)
    return Envelope(status="ok", data=data)


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    body: Optional[LogoutRequest] = None,
    authorization: Optional[str] = Header(None),
):
    runtime = get_runtime()
    data = await runtime.auth.logout(
        body.refresh_token if body else None, runtime.auth.extract_bearer(authorization)
    )
    return Envelope(status="ok", data=data)


@router.post("/auth/logout-all", response_model=Envelope, tags=["auth"])
async def logout_all(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    data = await runtime.auth.logout_all(principal.user_id)
    return Envelope(status="ok", data=data)


@router.get("/auth/sessions", response_model=Envelope, tags=["auth"])
async def list_sessions(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    sessions = runtime.auth.list_sessions(principal.user_id)
    return Envelope(status="ok", data={"sessions": sessions})


@router.delete("/auth/sessions/{session_id}", response_model=Envelope, tags=["auth"])
async def revoke_session(
    session_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    data = await runtime.auth.revoke_session(principal.user_id, session_id)
    return Envelope(status="ok", data=data)


@router.post("/auth/2fa/enable", response_model=Envelope, tags=["auth"])
async def enable_2fa(
    body: Optional[TwoFactorEnableRequest] = None,
    principal: AuthContext = Depends(get_user),
):
    """Turn on two-factor login and hand back the one-time backup codes.

    Backup codes (and the authenticator secret for the ``app`` method) are
    only ever shown in this response.
    """
    runtime = get_runtime()
    method = body.method if body else "email"
    data = await runtime.auth.enable_2fa(principal.user_id, method)
    return Envelope(status="ok", data=data)


@router.post("/auth/2fa/disable", response_model=Envelope, tags=["auth"])
async def disable_2fa(
    body: TwoFactorDisableRequest, principal: AuthContext = Depends(get_user)
):
    runtime = get_runtime()
    data = await runtime.auth.disable_2fa(principal.user_id, body.password)
    return Envelope(status="ok", data=data)


@router.post("/auth/password/reset-request", response_model=Envelope, tags=["auth"])
async def request_password_reset(body: PasswordResetRequest):
    runtime = get_runtime()
    data = await runtime.auth.request_password_reset(body.email)
    return Envelope(status="ok", data=data)


@router.post("/auth/password/reset", response_model=Envelope, tags=["auth"])
async def reset_password(body: PasswordResetConfirm):
    """Set a new password with an emailed code; every existing session is revoked."""
    runtime = get_runtime()
    data = await runtime.auth.reset_password(body.email, body.code, body.new_password)
    return Envelope(status="ok", data=data)


@router.post("/auth/password/change", response_model=Envelope, tags=["auth"])
async def change_password(
    body: PasswordChangeRequest, principal: AuthContext = Depends(get_user)
):
    runtime = get_runtime()
    data = await runtime.auth.change_password(
        principal.user_id, body.current_password, body.new_password
    )
    return Envelope(status="ok", data=data)


@router.post("/auth/recovery/request", response_model=Envelope, tags=["auth"])
async def request_account_recovery(body: AccountRecoveryRequest):
    runtime = get_runtime()
    data = await runtime.auth.request_account_recovery(body.email)
    return Envelope(status="ok", data=data)


@router.post("/auth/recovery/verify", response_model=Envelope, tags=["auth"])
async def recover_account(
    body: AccountRecoveryConfirm, device: DeviceFingerprint = Depends(get_device)
):
    runtime = get_runtime()
    data = await runtime.auth.recover_account(body.email, body.code, device)
    return Envelope(status="ok", data=data)


@router.get("/auth/profile", response_model=Envelope, tags=["auth"])
async def get_profile(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    return Envelope(status="ok", data=runtime.auth.get_profile(principal.user_id))


@router.put("/auth/profile", response_model=Envelope, tags=["auth"])
async def update_profile(
    body: ProfileUpdateRequest, principal: AuthContext = Depends(get_user)
):
    runtime = get_runtime()
    data = runtime.auth.update_profile(
        principal.user_id, **body.model_dump(exclude_unset=True)
    )
    return Envelope(status="ok", data=data)
