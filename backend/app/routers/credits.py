from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session

from .. import credits, models, schemas
from ..database import get_db
from ..dependencies import current_user_dep
from ..limiter import limiter

router = APIRouter(prefix="/v1/credits", tags=["credits"])


def _serialize_entry(entry: models.CreditLedger) -> schemas.CreditEntryResponse:
    return schemas.CreditEntryResponse(
        id=entry.id,
        amount=entry.delta,
        type=credits.entry_type(entry.reason),
        reason=entry.reason,
        payment_id=entry.payment_id,
        created_at=entry.created_at,
    )


@router.get("", response_model=schemas.CreditSummaryResponse)
@limiter.limit("60/minute")
def get_credit_summary(
    request: Request,
    db: Session = Depends(get_db),
    user: models.User = Depends(current_user_dep),
):
    entries = credits.list_ledger_entries(db, user.id, limit=15)
    return schemas.CreditSummaryResponse(
        balance=credits.get_balance(db, user.id),
        plan_key=user.plan_key,
        recent_entries=[_serialize_entry(item) for item in entries],
    )


@router.get("/history", response_model=schemas.CreditHistoryResponse)
@limiter.limit("60/minute")
def get_credit_history(
    request: Request,
    limit: int = Query(default=10, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    user: models.User = Depends(current_user_dep),
):
    entries = credits.list_ledger_entries(db, user.id, limit=limit, offset=offset)
    total = credits.count_ledger_entries(db, user.id)
    return schemas.CreditHistoryResponse(
        history=[_serialize_entry(item) for item in entries],
        total_count=total,
        has_more=offset + limit < total,
    )
