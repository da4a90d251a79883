import logging
import uuid

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session

from .. import credits, models, schemas
from ..config import settings
from ..credits import CreditReason
from ..database import get_db
from ..dependencies import current_user_dep
from ..limiter import limiter

router = APIRouter(prefix="/v1/usage", tags=["usage"])
logger = logging.getLogger("credits.usage")

_ACTION_REASONS: dict[str, CreditReason] = {
    "chat": CreditReason.CHAT_USAGE,
    "image": CreditReason.IMAGE_GENERATION,
    "video": CreditReason.VIDEO_GENERATION,
}


def action_cost(action: str) -> int:
    costs = {
        "chat": settings.credit_cost_chat,
        "image": settings.credit_cost_image,
        "video": settings.credit_cost_video,
    }
    return max(1, int(costs[action]))


def _insufficient(credits_needed: int, remaining: int) -> HTTPException:
    return HTTPException(
        status_code=402,
        detail={
            "error": credits.INSUFFICIENT_CREDITS,
            "credits_needed": credits_needed,
            "remaining_credits": remaining,
        },
    )


@router.post("/{action}", response_model=schemas.UsageChargeResponse)
@limiter.limit("60/minute")
def charge_usage(
    request: Request,
    action: schemas.UsageAction,
    payload: schemas.UsageChargeRequest | None = None,
    db: Session = Depends(get_db),
    user: models.User = Depends(current_user_dep),
):
    cost = action_cost(action)
    if not credits.can_afford(db, user.id, cost):
        raise _insufficient(cost, credits.get_balance(db, user.id))

    reference_id = (payload.reference_id if payload else None) or uuid.uuid4().hex
    result = credits.deduct(db, user.id, cost, _ACTION_REASONS[action], reference_id=reference_id)
    if not result.success:
        if result.error == credits.INSUFFICIENT_CREDITS:
            raise _insufficient(cost, result.remaining_balance)
        raise HTTPException(status_code=503, detail="Could not charge credits, please try again")

    logger.info(
        "Usage charged | user_id=%s | action=%s | cost=%s | remaining=%s | reference_id=%s",
        user.id,
        action,
        cost,
        result.remaining_balance,
        reference_id,
    )
    return schemas.UsageChargeResponse(
        action=action,
        charged=cost,
        remaining_credits=result.remaining_balance,
        reference_id=reference_id,
    )
