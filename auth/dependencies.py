"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Two token carriers are checked in priority order:
  1. Session cookie (Settings.session_cookie_name) -- browser clients.
  2. Authorization: Bearer <token> header -- API clients.

Both converge on AuthService.authenticate_token(), so a token is only as
good as the session it names: logout or account deletion revokes it
immediately regardless of the JWT expiry.

try_get_current_account() is the soft variant (returns None on failure).
get_current_account() wraps it and raises Unauthorized (401).
submission_guard() builds a dependency that charges the submission rate
limiter for the authenticated account.

Layer rule: no imports from api/. This module may import from fastapi
because it is part of the dependency injection system.
"""

from __future__ import annotations

from collections.abc import Callable

from fastapi import Depends, Request

from auth.models import Account, Session
from auth.service import AuthService
from core.errors import Unauthorized


def get_auth_service(request: Request) -> AuthService:
    return request.app.state.auth


def _extract_token(request: Request, service: AuthService) -> str | None:
    token = request.cookies.get(service.settings.session_cookie_name)
    if token:
        return token
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[7:].strip() or None
    return None


def try_get_current_account(request: Request) -> Account | None:
    """Resolve the request's token to an account. Never raises.

    On success the live session is attached as request.state.session so
    logout can destroy exactly the session the caller used.
    """
    service = get_auth_service(request)
    token = _extract_token(request, service)
    if token is None:
        return None
    resolved = service.authenticate_token(token)
    if resolved is None:
        return None
    account, session = resolved
    request.state.session = session
    return account


def get_current_account(request: Request) -> Account:
    """Require authentication.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(account: Account = Depends(get_current_account)): ...
    """
    account = try_get_current_account(request)
    if account is None:
        raise Unauthorized("Authentication required.")
    return account


def get_current_session(request: Request, account: Account = Depends(get_current_account)) -> Session:
    return request.state.session


def submission_guard(action: str) -> Callable[..., Account]:
    """Build a dependency that admits one `action` submission per call.

        @router.post("/ideas", dependencies=[Depends(submission_guard("create-idea"))])

    Raises RateLimited once the account exhausts its sliding window.
    """

    def guard(request: Request, account: Account = Depends(get_current_account)) -> Account:
        get_auth_service(request).admit_submission(account.id, action)
        return account

    return guard
