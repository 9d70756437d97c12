"""
Authentication router: exchanges an upstream identity assertion for a session token.
"""

from __future__ import annotations

import asyncio
import logging

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from routers.auth_scope import AuthContext, get_auth_context
from services.identity_provider import (
    IdentityProviderUnavailableError,
    IdentityVerificationError,
    verify_identity_assertion,
)
from services.session_token import create_session_token

router = APIRouter()
logger = logging.getLogger(__name__)


class CreateSessionRequest(BaseModel):
    id_token: str


@router.post("/session")
async def create_session(request: CreateSessionRequest):
    """
    Verify the Firebase ID token the client signed in with and issue the
    session token that scopes every credit and profile call to that user.
    """
    try:
        identity = await asyncio.to_thread(verify_identity_assertion, request.id_token)
    except IdentityProviderUnavailableError as exc:
        logger.error("Session exchange unavailable: %s", exc)
        return JSONResponse(status_code=503, content={"message": "Identity provider is not available"})
    except IdentityVerificationError as exc:
        logger.warning("Rejected identity assertion: %s", exc)
        return JSONResponse(status_code=401, content={"message": "Invalid identity token"})

    session = create_session_token(identity.user_id, identity.email)
    logger.info("Issued session token for user %s", identity.user_id)
    return {
        "userId": identity.user_id,
        "email": identity.email,
        "name": identity.name,
        "sessionToken": session["token"],
        "sessionExpiresAt": session["expires_at"],
    }


@router.post("/logout")
async def logout(_auth: AuthContext = Depends(get_auth_context)):
    """Frontend-managed logout acknowledgment endpoint."""
    return {"message": "Logged out successfully"}
