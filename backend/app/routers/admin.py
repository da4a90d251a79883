import logging

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from .. import credits, models, schemas, services
from ..database import get_db
from ..dependencies import require_internal_api_key

router = APIRouter(
    prefix="/v1/admin",
    tags=["admin"],
    dependencies=[Depends(require_internal_api_key)],
)
logger = logging.getLogger("credits.admin")


def _get_user_or_404(db: Session, user_id: str) -> models.User:
    user = db.get(models.User, user_id)
    if user is None:
        raise HTTPException(status_code=404, detail="User not found")
    return user


@router.post("/users/{user_id}/credits", response_model=schemas.AdminCreditAdjustResponse)
def adjust_user_credits(
    user_id: str,
    payload: schemas.AdminCreditAdjustRequest,
    db: Session = Depends(get_db),
):
    _get_user_or_404(db, user_id)
    result = credits.adjust(db, user_id, payload.amount, payload.reason)
    logger.info(
        "Admin credit adjustment | user_id=%s | amount=%s | reason=%s | success=%s",
        user_id,
        payload.amount,
        payload.reason.value,
        result.success,
    )
    if not result.success:
        status_code = 409 if result.error == credits.INSUFFICIENT_CREDITS else 500
        raise HTTPException(status_code=status_code, detail=result.error or "Failed to update credits")
    return schemas.AdminCreditAdjustResponse(success=True, credits=result.remaining_balance)


@router.post("/users/{user_id}/plan", response_model=schemas.AdminPlanResponse)
def update_user_plan(
    user_id: str,
    payload: schemas.AdminPlanUpdateRequest,
    db: Session = Depends(get_db),
):
    user = _get_user_or_404(db, user_id)
    try:
        user = services.set_user_plan(db, user, payload.plan_key)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return schemas.AdminPlanResponse(success=True, user_id=user.id, plan_key=user.plan_key)


@router.delete("/users/{user_id}/plan", response_model=schemas.AdminPlanResponse)
def cancel_user_plan(user_id: str, db: Session = Depends(get_db)):
    user = services.set_user_plan(db, _get_user_or_404(db, user_id), services.FREE_PLAN_KEY)
    return schemas.AdminPlanResponse(success=True, user_id=user.id, plan_key=user.plan_key)
