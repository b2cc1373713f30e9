from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Path, Request, Response

from ticketgate.api.schemas import (
    AuthResponse,
    CredentialCreateRequest,
    CredentialCreateResponse,
    CredentialListResponse,
    CredentialResponse,
    EmailChangeRequest,
    EmailVerificationRequest,
    Envelope,
    PasswordChangeRequest,
    PasswordChangeResponse,
    PasswordForgotRequest,
    PasswordResetRequest,
    SignInRequest,
    SignUpRequest,
    TicketDeleteResponse,
    UserResponse,
)
from ticketgate.config import Settings
from ticketgate.logging import get_logger
from ticketgate.service.auth import INVALID_CREDENTIAL, AuthOutcome
from ticketgate.service.context import RequestAuth
from ticketgate.service.errors import AuthenticationError
from ticketgate.service.permissions import Capability
from ticketgate.service.runtime import Runtime
from ticketgate.service.sessions import SessionValidation
from ticketgate.storage.common import as_utc
from ticketgate.storage.models import Credential, Session, User

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")
api_router = APIRouter(prefix="/api")


def get_runtime(request: Request) -> Runtime:
    return request.app.state.runtime


def _http_error(
    code: str,
    message: str,
    status_code: int,
    details: Optional[dict | str] = None,
    headers: Optional[dict] = None,
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload, headers=headers)


def client_ip(request: Request) -> str:
    """Caller address: first X-Forwarded-For hop, X-Real-IP, then the peer."""
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = (request.headers.get("X-Real-IP") or "").strip()
    if real_ip:
        return real_ip
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


def _user_agent(request: Request) -> Optional[str]:
    agent = request.headers.get("User-Agent")
    return agent[:512] if agent else None


def _apply_session_cookie(
    response: Response, settings: Settings, raw_token: str, session: Session
) -> None:
    response.set_cookie(
        settings.session_cookie_name,
        raw_token,
        httponly=True,
        secure=settings.cookie_secure,
        samesite="lax",
        expires=as_utc(session.expires_at),
        path="/",
    )


def _clear_session_cookie(response: Response, settings: Settings) -> None:
    response.delete_cookie(
        settings.session_cookie_name,
        path="/",
        secure=settings.cookie_secure,
        httponly=True,
        samesite="lax",
    )


def _clear_cookie_header(settings: Settings) -> dict:
    scratch = Response()
    _clear_session_cookie(scratch, settings)
    return {"Set-Cookie": scratch.headers["set-cookie"]}


def get_request_auth(request: Request, runtime: Runtime = Depends(get_runtime)) -> RequestAuth:
    ctx = getattr(request.state, "auth", None)
    if ctx is None:
        ctx = runtime.request_auth(request.cookies.get(runtime.settings.session_cookie_name))
        request.state.auth = ctx
    return ctx


def reissue_extended_carrier(request: Request, response: Response) -> None:
    """Send the carrier again when its session was extended, whatever the status."""
    ctx: Optional[RequestAuth] = getattr(request.state, "auth", None)
    if ctx is None or not ctx.needs_reissue:
        return
    settings = request.app.state.runtime.settings
    _apply_session_cookie(response, settings, ctx.raw_token, ctx.result.session)


async def require_session(
    auth: RequestAuth = Depends(get_request_auth),
    runtime: Runtime = Depends(get_runtime),
) -> SessionValidation:
    """Resolve the carrier and clear it when dead.

    An extended carrier is re-sent by the app middleware so error responses
    carry it too.
    """
    result = await auth.resolve()
    if not result.authenticated:
        headers = _clear_cookie_header(runtime.settings) if auth.carrier_invalid else None
        raise _http_error("unauthorized", "Not signed in", status_code=401, headers=headers)
    return result


async def require_verified_session(
    current: SessionValidation = Depends(require_session),
    auth: RequestAuth = Depends(get_request_auth),
) -> SessionValidation:
    return await auth.require_verified()


def _user_response(user: User) -> UserResponse:
    return UserResponse(
        id=user.id,
        email=user.email,
        username=user.username,
        email_verified=user.email_verified,
        created_at=user.created_at,
    )


def _auth_envelope(
    outcome: AuthOutcome,
    response: Response,
    runtime: Runtime,
    auth: Optional[RequestAuth] = None,
) -> Envelope:
    if outcome.session is not None and outcome.token:
        _apply_session_cookie(response, runtime.settings, outcome.token, outcome.session)
        if auth is not None:
            auth.rotate(
                outcome.token, SessionValidation(session=outcome.session, user=outcome.user)
            )
    return Envelope(
        status="ok",
        data=AuthResponse(
            user=_user_response(outcome.user),
            session_expires_at=outcome.session.expires_at if outcome.session else None,
        ),
    )


def _credential_response(credential: Credential) -> CredentialResponse:
    return CredentialResponse(
        id=credential.id,
        organization_id=credential.organization_id,
        name=credential.name,
        created_at=credential.created_at,
        last_used=credential.last_used,
        revoked_at=credential.revoked_at,
    )


@router.post("/auth/sign-up", response_model=Envelope, status_code=201, tags=["auth"])
async def sign_up(
    body: SignUpRequest,
    request: Request,
    response: Response,
    runtime: Runtime = Depends(get_runtime),
):
    """Create an account and sign it in.

    A verification code is mailed in the background once the account exists.

    Raises:
        400: malformed email, username or weak password
        409: email or username already in use
        429: rate limit exceeded
    """
    outcome = await runtime.auth.sign_up(
        body.email,
        body.password,
        body.username,
        ip=client_ip(request),
        user_agent=_user_agent(request),
    )
    return _auth_envelope(outcome, response, runtime)


@router.post("/auth/sign-in", response_model=Envelope, tags=["auth"])
async def sign_in(
    body: SignInRequest,
    request: Request,
    response: Response,
    runtime: Runtime = Depends(get_runtime),
):
    outcome = await runtime.auth.sign_in(
        body.email,
        body.password,
        ip=client_ip(request),
        user_agent=_user_agent(request),
    )
    return _auth_envelope(outcome, response, runtime)


@router.post("/auth/sign-out", response_model=Envelope, tags=["auth"])
async def sign_out(
    response: Response,
    current: SessionValidation = Depends(require_session),
    auth: RequestAuth = Depends(get_request_auth),
    runtime: Runtime = Depends(get_runtime),
):
    await runtime.auth.sign_out(current)
    auth.rotate(None, SessionValidation())
    _clear_session_cookie(response, runtime.settings)
    return Envelope(status="ok", data={"signed_out": True})


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(current: SessionValidation = Depends(require_session)):
    return Envelope(status="ok", data=_user_response(current.user))


@router.post("/auth/email-verification/request", response_model=Envelope, tags=["auth"])
async def request_email_verification(
    request: Request,
    current: SessionValidation = Depends(require_session),
    runtime: Runtime = Depends(get_runtime),
):
    await runtime.auth.request_email_verification(current, ip=client_ip(request))
    return Envelope(status="ok", data={"sent": True})


@router.post("/auth/email-verification/verify", response_model=Envelope, tags=["auth"])
async def verify_email(
    body: EmailVerificationRequest,
    request: Request,
    response: Response,
    current: SessionValidation = Depends(require_session),
    auth: RequestAuth = Depends(get_request_auth),
    runtime: Runtime = Depends(get_runtime),
):
    """Spend the emailed code; every session is dropped and a new carrier issued."""
    outcome = await runtime.auth.verify_email(
        current, body.code, ip=client_ip(request), user_agent=_user_agent(request)
    )
    return _auth_envelope(outcome, response, runtime, auth)


@router.post("/auth/email-change/request", response_model=Envelope, tags=["auth"])
async def request_email_change(
    body: EmailChangeRequest,
    request: Request,
    current: SessionValidation = Depends(require_session),
    runtime: Runtime = Depends(get_runtime),
):
    """Mail a confirmation code to the new address.

    Raises:
        400: malformed address or the current one
        409: address already in use
        429: rate limit exceeded
    """
    await runtime.auth.request_email_change(current, body.new_email, ip=client_ip(request))
    return Envelope(status="ok", data={"sent": True})


@router.post("/auth/email-change/verify", response_model=Envelope, tags=["auth"])
async def verify_email_change(
    body: EmailVerificationRequest,
    request: Request,
    response: Response,
    current: SessionValidation = Depends(require_session),
    auth: RequestAuth = Depends(get_request_auth),
    runtime: Runtime = Depends(get_runtime),
):
    outcome = await runtime.auth.verify_email_change(
        current, body.code, ip=client_ip(request), user_agent=_user_agent(request)
    )
    return _auth_envelope(outcome, response, runtime, auth)


@router.post("/auth/password/forgot", response_model=Envelope, tags=["auth"])
async def password_forgot(
    body: PasswordForgotRequest,
    request: Request,
    runtime: Runtime = Depends(get_runtime),
):
    # Same answer whether or not the address has an account
    await runtime.auth.request_password_reset(body.email, ip=client_ip(request))
    return Envelope(status="ok", data={"sent": True})


@router.post("/auth/password/reset", response_model=Envelope, tags=["auth"])
async def password_reset(
    body: PasswordResetRequest,
    request: Request,
    response: Response,
    runtime: Runtime = Depends(get_runtime),
):
    outcome = await runtime.auth.reset_password(
        body.token,
        body.new_password,
        ip=client_ip(request),
        user_agent=_user_agent(request),
    )
    if outcome.session is None:
        _clear_session_cookie(response, runtime.settings)
    return _auth_envelope(outcome, response, runtime)


@router.post("/auth/password/change", response_model=Envelope, tags=["auth"])
async def password_change(
    body: PasswordChangeRequest,
    request: Request,
    current: SessionValidation = Depends(require_session),
    runtime: Runtime = Depends(get_runtime),
):
    dropped = await runtime.auth.change_password(
        current, body.current_password, body.new_password, ip=client_ip(request)
    )
    return Envelope(status="ok", data=PasswordChangeResponse(other_sessions_revoked=dropped))


def _require_credential_admin(
    runtime: Runtime, current: SessionValidation, organization_id: str
) -> None:
    permissions = runtime.auth.permissions_for(current.user.id, organization_id)
    permissions.require(Capability.MANAGE_CREDENTIALS)


@router.post(
    "/organizations/{organization_id}/credentials",
    response_model=Envelope,
    status_code=201,
    tags=["credentials"],
)
async def create_credential(
    body: CredentialCreateRequest,
    organization_id: str = Path(..., max_length=128),
    current: SessionValidation = Depends(require_verified_session),
    runtime: Runtime = Depends(get_runtime),
):
    """Issue an API credential; the raw secret is only ever returned here."""
    _require_credential_admin(runtime, current, organization_id)
    issued = runtime.credentials.create(organization_id, body.name)
    data = CredentialCreateResponse(
        **_credential_response(issued.credential).model_dump(), secret=issued.secret
    )
    return Envelope(status="ok", data=data)


@router.get(
    "/organizations/{organization_id}/credentials",
    response_model=Envelope,
    tags=["credentials"],
)
async def list_credentials(
    organization_id: str = Path(..., max_length=128),
    current: SessionValidation = Depends(require_verified_session),
    runtime: Runtime = Depends(get_runtime),
):
    _require_credential_admin(runtime, current, organization_id)
    items = [_credential_response(c) for c in runtime.credentials.list(organization_id)]
    return Envelope(status="ok", data=CredentialListResponse(items=items))


@router.delete(
    "/organizations/{organization_id}/credentials/{credential_id}",
    response_model=Envelope,
    tags=["credentials"],
)
async def revoke_credential(
    organization_id: str = Path(..., max_length=128),
    credential_id: str = Path(..., max_length=128),
    current: SessionValidation = Depends(require_verified_session),
    runtime: Runtime = Depends(get_runtime),
):
    _require_credential_admin(runtime, current, organization_id)
    credential = runtime.credentials.revoke(credential_id, organization_id=organization_id)
    return Envelope(status="ok", data=_credential_response(credential))


@api_router.delete("/tickets/{ticket_id}", response_model=Envelope, tags=["tickets"])
async def delete_ticket(
    request: Request,
    ticket_id: str = Path(..., max_length=128),
    authorization: Optional[str] = Header(default=None),
    runtime: Runtime = Depends(get_runtime),
):
    """Delete a ticket with an organization API credential.

    Unknown tickets and credentials of other organizations both answer 401.
    """
    store = runtime.store

    def resolve_organization() -> Optional[str]:
        ticket = store.get_ticket(ticket_id)
        return ticket.organization_id if ticket else None

    def delete(credential: Credential) -> bool:
        if not store.delete_ticket(ticket_id):
            raise AuthenticationError(INVALID_CREDENTIAL)
        return True

    await runtime.auth.authorize_api_call(
        authorization,
        ip=client_ip(request),
        resolve_organization=resolve_organization,
        operation=delete,
        scope="tickets",
    )
    return Envelope(status="ok", data=TicketDeleteResponse(id=ticket_id))
