"""Credit balance and consumption router."""

from __future__ import annotations

import logging
import math
from typing import Literal, Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import get_db
from routers.auth_scope import AuthContext, ensure_user_scope, get_auth_context
from services.ledger import LedgerError, consume_credits, get_ledger, get_transactions

router = APIRouter()
logger = logging.getLogger(__name__)


class ConsumeCreditsRequest(BaseModel):
    user_id: Optional[str] = None
    cost: Optional[float] = None
    action: Optional[Literal["cv_optimization", "ats_simulation"]] = None


def _action_costs() -> dict:
    return {
        "cv_optimization": max(int(settings.CREDIT_COST_CV_OPTIMIZATION), 1),
        "ats_simulation": max(int(settings.CREDIT_COST_ATS_SIMULATION), 1),
    }


def _resolve_cost(request: ConsumeCreditsRequest) -> Optional[int]:
    if request.cost is not None:
        if not math.isfinite(request.cost) or request.cost <= 0 or not float(request.cost).is_integer():
            return None
        return int(request.cost)
    if request.action:
        return _action_costs()[request.action]
    return None


def _bad_request(message: str) -> JSONResponse:
    return JSONResponse(status_code=400, content={"message": message})


@router.post("/consume")
async def consume(
    request: ConsumeCreditsRequest,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    scoped_user_id = ensure_user_scope(auth.user_id, request.user_id)
    cost = _resolve_cost(request)
    if cost is None:
        return _bad_request("Missing or invalid userId or cost.")

    try:
        state = await consume_credits(db, scoped_user_id, cost=cost)
    except LedgerError as exc:
        logger.info("Credit debit of %s rejected for user %s: %s", cost, scoped_user_id, exc)
        return _bad_request(str(exc))

    return {"userId": scoped_user_id, "newCredits": state.credits}


@router.get("")
async def credits_summary(
    user_id: Optional[str] = Query(default=None),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    scoped_user_id = ensure_user_scope(auth.user_id, user_id)
    state = await get_ledger(db, scoped_user_id)
    if state is None:
        return JSONResponse(status_code=404, content={"message": "User not found"})

    recent = await get_transactions(db, scoped_user_id, limit=30)
    return {
        "userId": scoped_user_id,
        "credits": state.credits,
        "totalCredits": state.total_credits,
        "costs": _action_costs(),
        "transactions": [entry.to_dict() for entry in recent],
    }
