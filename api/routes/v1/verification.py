"""
api/routes/v1/verification.py -- Phone verification REST endpoints.

Routes:
  GET  /api/v1/auth/verification/{request_id}  -- challenge status (masked)
  POST /api/v1/auth/verification/request       -- resend a code after cooldown
  POST /api/v1/auth/verification/start         -- (re)start for the caller's account
  POST /api/v1/auth/verification/confirm       -- submit a code; opens a session

Failure mapping (rendered by api/main.py):
  wrong code           400 invalid_code        (+ verification, attempts left)
  expired / consumed   410 expired
  attempts used up     429 attempts_exhausted
  resend too early     429 resend_cooldown     (+ retry_after_seconds, verification)

Codes never appear in any response; payloads carry the masked destination.
"""

from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from api.limiter import auth_rate_limit, limiter
from api.models import (
    AuthResponse,
    VerificationConfirmRequest,
    VerificationLookupRequest,
    VerificationPayload,
    VerificationResponse,
    VerificationStartRequest,
)
from api.routes.v1.auth import auth_response
from auth.dependencies import get_auth_service, get_current_account
from auth.models import Account

router = APIRouter()


@router.get("/auth/verification/{request_id}", response_model=VerificationResponse)
def get_verification(request: Request, request_id: UUID) -> VerificationResponse:
    challenge = get_auth_service(request).get_verification(str(request_id))
    return VerificationResponse(verification=VerificationPayload.from_challenge(challenge))


@limiter.limit(auth_rate_limit)
@router.post("/auth/verification/request", response_model=VerificationResponse)
def resend_verification(request: Request, body: VerificationLookupRequest) -> VerificationResponse:
    """Regenerate the code of an active challenge and send it again."""
    challenge = get_auth_service(request).resend_verification(str(body.request_id))
    return VerificationResponse(verification=VerificationPayload.from_challenge(challenge))


@router.post("/auth/verification/start", response_model=AuthResponse)
def start_verification(
    request: Request,
    body: VerificationStartRequest,
    current_account: Account = Depends(get_current_account),
) -> JSONResponse:
    """Issue a fresh challenge for the caller, optionally to a new number."""
    service = get_auth_service(request)
    return auth_response(service, service.start_verification(current_account, body.phone_number))


@limiter.limit(auth_rate_limit)
@router.post("/auth/verification/confirm", response_model=AuthResponse)
def confirm_verification(request: Request, body: VerificationConfirmRequest) -> JSONResponse:
    """Consume a code. A staged registration becomes an account here."""
    service = get_auth_service(request)
    return auth_response(service, service.confirm_verification(str(body.request_id), body.code))
