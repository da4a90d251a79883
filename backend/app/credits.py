"""Credit balance and ledger accounting.

The ``users.credits`` column is the authoritative running balance and
``credit_ledger`` is its audit trail: every change to the balance is paired with
exactly one ledger row in the same transaction, so for every user the balance
equals the sum of that user's ledger deltas.
"""

import logging
from dataclasses import dataclass
from enum import Enum

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from . import models
from .database import transaction

logger = logging.getLogger("credits.ledger")

INSUFFICIENT_CREDITS = "Insufficient credits"
USER_NOT_FOUND = "User not found"


class _InsufficientCredits(Exception):
    pass


class CreditReason(str, Enum):
    CHAT_USAGE = "chat_usage"
    IMAGE_GENERATION = "image_generation"
    VIDEO_GENERATION = "video_generation"
    ONE_TIME_PACK = "one_time_pack"
    SUBSCRIPTION_CYCLE = "subscription_cycle"
    SUBSCRIPTION_SCHEDULE = "subscription_schedule"
    REGISTRATION_BONUS = "registration_bonus"
    ADJUSTMENT = "adjustment"
    REFUND = "refund"


_ENTRY_TYPES: dict[str, str] = {
    CreditReason.SUBSCRIPTION_CYCLE.value: "subscription",
    CreditReason.SUBSCRIPTION_SCHEDULE.value: "subscription",
    CreditReason.ONE_TIME_PACK.value: "purchase",
    CreditReason.CHAT_USAGE.value: "usage",
    CreditReason.IMAGE_GENERATION.value: "usage",
    CreditReason.VIDEO_GENERATION.value: "usage",
    CreditReason.REFUND.value: "refund",
    CreditReason.ADJUSTMENT.value: "adjustment",
}


@dataclass(frozen=True)
class CreditResult:
    success: bool
    remaining_balance: int
    error: str | None = None


def entry_type(reason: str) -> str:
    return _ENTRY_TYPES.get(reason, "other")


def get_balance(db: Session, user_id: str) -> int:
    credits = db.query(models.User.credits).filter(models.User.id == user_id).scalar()
    return int(credits or 0)


def can_afford(db: Session, user_id: str, amount: int) -> bool:
    return get_balance(db, user_id) >= amount


def _require_positive(amount: int) -> int:
    amount = int(amount)
    if amount <= 0:
        raise ValueError("amount must be greater than 0")
    return amount


def apply_credit_delta(
    db: Session,
    *,
    user_id: str,
    delta: int,
    reason: CreditReason,
    reference_id: str | None = None,
    entry_id: str | None = None,
    require_funds: bool = False,
) -> bool:
    """Change the balance and append the matching ledger row without committing.

    With ``require_funds`` the decrement only happens when the balance covers it.
    Returns False when no user row was updated; nothing is written in that case.
    """
    reason = CreditReason(reason)
    query = db.query(models.User).filter(models.User.id == user_id)
    if require_funds and delta < 0:
        query = query.filter(models.User.credits >= -delta)
    updated = query.update(
        {
            models.User.credits: models.User.credits + delta,
            models.User.updated_at: models.utcnow(),
        },
        synchronize_session=False,
    )
    if updated != 1:
        return False

    entry = models.CreditLedger(
        id=entry_id or models.new_id(),
        user_id=user_id,
        delta=delta,
        reason=reason.value,
        payment_id=reference_id,
    )
    db.add(entry)
    db.flush()
    return True


def deduct(
    db: Session,
    user_id: str,
    amount: int,
    reason: CreditReason,
    reference_id: str | None = None,
) -> CreditResult:
    amount = _require_positive(amount)
    try:
        with transaction(db):
            applied = apply_credit_delta(
                db,
                user_id=user_id,
                delta=-amount,
                reason=reason,
                reference_id=reference_id,
                require_funds=True,
            )
            if not applied:
                # Nothing was written; roll back the empty transaction.
                raise _InsufficientCredits()
    except _InsufficientCredits:
        balance = get_balance(db, user_id)
        logger.info(
            "Credit deduction refused | user_id=%s | amount=%s | balance=%s | reason=%s",
            user_id,
            amount,
            balance,
            CreditReason(reason).value,
        )
        return CreditResult(success=False, remaining_balance=balance, error=INSUFFICIENT_CREDITS)
    except SQLAlchemyError:
        logger.exception("Credit deduction failed | user_id=%s | amount=%s", user_id, amount)
        return CreditResult(success=False, remaining_balance=get_balance(db, user_id), error="Failed to deduct credits")

    return CreditResult(success=True, remaining_balance=get_balance(db, user_id))


def grant(
    db: Session,
    user_id: str,
    amount: int,
    reason: CreditReason,
    reference_id: str | None = None,
    entry_id: str | None = None,
) -> CreditResult:
    amount = _require_positive(amount)
    try:
        with transaction(db):
            applied = apply_credit_delta(
                db,
                user_id=user_id,
                delta=amount,
                reason=reason,
                reference_id=reference_id,
                entry_id=entry_id,
            )
    except SQLAlchemyError:
        logger.exception("Credit grant failed | user_id=%s | amount=%s", user_id, amount)
        return CreditResult(success=False, remaining_balance=get_balance(db, user_id), error="Failed to grant credits")

    if not applied:
        logger.warning("Credit grant skipped, unknown user | user_id=%s | amount=%s", user_id, amount)
        return CreditResult(success=False, remaining_balance=0, error=USER_NOT_FOUND)
    return CreditResult(success=True, remaining_balance=get_balance(db, user_id))


def adjust(
    db: Session,
    user_id: str,
    delta: int,
    reason: CreditReason = CreditReason.ADJUSTMENT,
) -> CreditResult:
    delta = int(delta)
    if delta == 0:
        raise ValueError("delta must be non-zero")
    if delta > 0:
        return grant(db, user_id, delta, reason)
    return deduct(db, user_id, -delta, reason)


def list_ledger_entries(db: Session, user_id: str, *, limit: int = 10, offset: int = 0) -> list[models.CreditLedger]:
    return (
        db.query(models.CreditLedger)
        .filter(models.CreditLedger.user_id == user_id)
        .order_by(models.CreditLedger.created_at.desc(), models.CreditLedger.id.desc())
        .offset(max(0, offset))
        .limit(max(1, limit))
        .all()
    )


def count_ledger_entries(db: Session, user_id: str) -> int:
    total = db.query(func.count(models.CreditLedger.id)).filter(models.CreditLedger.user_id == user_id).scalar()
    return int(total or 0)
