"""User signup and profile router."""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, ensure_user_scope, get_auth_context
from services.ledger import get_ledger, register_user

router = APIRouter()
logger = logging.getLogger(__name__)


class SignupRequest(BaseModel):
    user_id: Optional[str] = None
    email: Optional[str] = None
    name: Optional[str] = None


@router.post("/signup")
async def signup(
    request: SignupRequest,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    scoped_user_id = ensure_user_scope(auth.user_id, request.user_id)
    email = (request.email or auth.email or "").strip()
    if not email:
        return JSONResponse(status_code=400, content={"message": "Missing email or userId in request."})

    state, created = await register_user(db, scoped_user_id, email=email, name=request.name)
    if created:
        logger.info("User %s created with %s signup credits", scoped_user_id, state.credits)
    else:
        logger.info("User %s already registered; profile refreshed", scoped_user_id)

    return JSONResponse(
        status_code=201 if created else 200,
        content={
            "message": "User created successfully" if created else "User already exists",
            "userId": scoped_user_id,
            "email": state.email,
            "credits": state.credits,
        },
    )


@router.get("/me")
async def profile(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    state = await get_ledger(db, auth.user_id)
    if state is None:
        return JSONResponse(status_code=404, content={"message": "User not found"})
    return {
        "userId": state.user_id,
        "email": state.email,
        "name": state.name or "",
        "credits": state.credits,
        "totalCredits": state.total_credits,
        "createdAt": state.created_at.isoformat() if state.created_at else None,
    }
