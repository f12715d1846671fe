"""
api/routes/v1/auth.py -- Account and session REST endpoints.

Routes:
  POST   /api/v1/auth/register  -- stage a signup and send a phone code (201)
  POST   /api/v1/auth/login     -- password login; sets the session cookie
  POST   /api/v1/auth/logout    -- destroy the caller's session, clear cookie
  GET    /api/v1/auth/me        -- current account, or {"user": null}
  PUT    /api/v1/auth/me        -- profile patch (role change, phone change)
  DELETE /api/v1/auth/me        -- soft delete, destroy all sessions (204)

Security:
  POST /register and /login are rate-limited per IP (AUTH_RATE_LIMIT).
  Login timing is equalized inside AuthService.login() -- never inline
  get_by_email() + verify_password() here.
  Cache-Control: no-store on every response that carries a token.

Domain failures propagate as IdentityError and are rendered by the handler
in api/main.py; nothing here builds an error body by hand.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request, Response
from fastapi.responses import JSONResponse

from api.limiter import auth_rate_limit, limiter
from api.models import (
    AccountResponse,
    AuthResponse,
    LoginRequest,
    LogoutResponse,
    MeResponse,
    ProfileResponse,
    ProfileUpdateRequest,
    RegisterRequest,
    VerificationPayload,
)
from auth.dependencies import get_auth_service, get_current_account, get_current_session, try_get_current_account
from auth.models import Account, Session
from auth.service import AuthResult, AuthService
from auth.tokens import clear_session_cookie, set_session_cookie

# Auth policy:
# - POST   /api/v1/auth/register: public, per-IP limited
# - POST   /api/v1/auth/login:    public, per-IP limited
# - GET    /api/v1/auth/me:       public (returns user=null when anonymous)
# - POST   /api/v1/auth/logout:   requires auth (get_current_session)
# - PUT    /api/v1/auth/me:       requires auth (get_current_account)
# - DELETE /api/v1/auth/me:       requires auth (get_current_account)
router = APIRouter()


def auth_response(service: AuthService, result: AuthResult, status_code: int = 200) -> JSONResponse:
    """Render an AuthResult; set the session cookie when a session was opened."""
    body = AuthResponse(
        status=result.status,
        user=AccountResponse.from_account(result.account) if result.account is not None else None,
        token=result.token,
        verification=VerificationPayload.from_challenge(result.challenge) if result.challenge is not None else None,
    )
    resp = JSONResponse(status_code=status_code, content=body.model_dump(mode="json"))
    if result.token is not None:
        set_session_cookie(resp, result.token, service.settings)
    resp.headers["Cache-Control"] = "no-store"
    return resp


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@limiter.limit(auth_rate_limit)  # must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/register", response_model=AuthResponse, status_code=201)
def register(request: Request, body: RegisterRequest) -> JSONResponse:
    """Stage a registration and send the phone verification code.

    With phone verification disabled the account is created immediately and
    the response is "authenticated".
    """
    service = get_auth_service(request)
    result = service.register(
        email=body.email,
        password=body.password,
        display_name=body.display_name,
        phone_number=body.phone_number,
        bio=body.bio,
        preferred_role=body.preferred_role,
    )
    return auth_response(service, result, status_code=201)


@limiter.limit(auth_rate_limit)
@router.post("/auth/login", response_model=AuthResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email and password.

    Returns "verification_required" (and no session) while the account has a
    pending phone verification; the same generic bad_credentials error covers
    unknown email and wrong password.
    """
    service = get_auth_service(request)
    return auth_response(service, service.login(email=body.email, password=body.password))


@router.get("/auth/me", response_model=MeResponse)
def me(request: Request) -> MeResponse:
    account = try_get_current_account(request)
    return MeResponse(user=AccountResponse.from_account(account) if account is not None else None)


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/logout", response_model=LogoutResponse)
def logout(request: Request, session: Session = Depends(get_current_session)) -> JSONResponse:
    """Destroy the session the caller authenticated with and clear the cookie."""
    service = get_auth_service(request)
    service.logout(session.id)
    resp = JSONResponse(content=LogoutResponse().model_dump())
    clear_session_cookie(resp, service.settings)
    return resp


@router.put("/auth/me", response_model=ProfileResponse)
def update_me(
    request: Request,
    body: ProfileUpdateRequest,
    current_account: Account = Depends(get_current_account),
) -> ProfileResponse:
    """Patch the profile. Omitted fields are untouched; explicit null clears."""
    service = get_auth_service(request)
    result = service.update_profile(current_account, body.model_dump(exclude_unset=True))
    return ProfileResponse(
        user=AccountResponse.from_account(result.account),
        verification=VerificationPayload.from_challenge(result.challenge) if result.challenge is not None else None,
    )


@router.delete("/auth/me", status_code=204)
def delete_me(request: Request, current_account: Account = Depends(get_current_account)) -> Response:
    service = get_auth_service(request)
    service.delete_account(current_account)
    resp = Response(status_code=204)
    clear_session_cookie(resp, service.settings)
    return resp
