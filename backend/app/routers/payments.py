import logging
from typing import Any

from fastapi import APIRouter, Body, Depends, HTTPException
from sqlalchemy.orm import Session

from .. import billing_catalog, payments, schemas
from ..billing_catalog import Installments
from ..database import get_db
from ..dependencies import require_internal_api_key

router = APIRouter(prefix="/v1/payments", tags=["payments"])
logger = logging.getLogger("credits.payments.api")


@router.get("/catalog", response_model=schemas.CatalogResponse)
def get_catalog():
    return schemas.CatalogResponse(
        plans=[
            schemas.PlanCatalogItem(
                key=plan.key,
                price_cents=plan.price_cents,
                currency=plan.currency,
                credits_per_cycle=plan.credits_per_cycle,
                cycle=plan.cycle,
                installments=(
                    plan.grant_schedule.grants_per_cycle if isinstance(plan.grant_schedule, Installments) else None
                ),
            )
            for plan in billing_catalog.list_plans()
        ],
        packs=[
            schemas.PackCatalogItem(
                key=pack.key,
                price_cents=pack.price_cents,
                currency=pack.currency,
                credits=pack.credits,
            )
            for pack in billing_catalog.list_packs()
        ],
    )


@router.post("/internal/creem-event", response_model=schemas.PaymentEventResponse)
def receive_payment_event(
    payload: dict[str, Any] = Body(...),
    _: None = Depends(require_internal_api_key),
    db: Session = Depends(get_db),
):
    """Apply a provider event relayed by the signature-verifying webhook gateway."""
    try:
        event = payments.parse_creem_event(payload)
        outcome = payments.handle_payment_event(db, event)
    except payments.PaymentEventError as exc:
        logger.warning("Payment event rejected | event_id=%s | reason=%s", payload.get("id"), exc)
        raise HTTPException(status_code=400, detail=str(exc))

    if outcome.status != payments.OUTCOME_IGNORED:
        logger.info(
            "Payment event processed | event_type=%s | payment_id=%s | status=%s | credits=%s",
            event.event_type,
            outcome.payment_id,
            outcome.status,
            outcome.credits_granted,
        )
    return schemas.PaymentEventResponse(
        status=outcome.status,
        payment_id=outcome.payment_id,
        credits_granted=outcome.credits_granted,
    )
