import logging

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import models
from .billing_catalog import is_subscription_key
from .config import settings
from .credits import CreditReason, apply_credit_delta

FREE_PLAN_KEY = "free"

logger = logging.getLogger("credits.users")


def get_or_create_user(db: Session, user_id: str, email: str | None = None) -> models.User:
    user = db.get(models.User, user_id)
    if user:
        return user

    now = models.utcnow()
    user = models.User(id=user_id, email=email, credits=0, plan_key=FREE_PLAN_KEY, created_at=now, updated_at=now)
    db.add(user)
    try:
        db.flush()
        bonus = max(0, int(settings.registration_bonus_credits))
        if bonus:
            apply_credit_delta(db, user_id=user_id, delta=bonus, reason=CreditReason.REGISTRATION_BONUS)
        db.commit()
    except IntegrityError:
        db.rollback()
        existing = db.get(models.User, user_id)
        if existing:
            return existing
        raise

    db.refresh(user)
    logger.info("User registered | user_id=%s | bonus=%s", user_id, settings.registration_bonus_credits)
    return user


def set_user_plan(db: Session, user: models.User, plan_key: str) -> models.User:
    if plan_key != FREE_PLAN_KEY and not is_subscription_key(plan_key):
        raise ValueError(f"Unknown plan key: {plan_key}")
    user.plan_key = plan_key
    user.updated_at = models.utcnow()
    db.add(user)
    db.commit()
    db.refresh(user)
    return user
