import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Literal

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import models
from .billing_catalog import get_pack, get_plan, is_pack_key, is_subscription_key
from .credits import CreditReason, apply_credit_delta
from .database import transaction
from .subscription_schedule import (
    add_months,
    compute_initial_grant,
    delete_subscription_schedule,
    get_grant_schedule,
    reset_subscription_schedule,
)

logger = logging.getLogger("credits.payments")

PROVIDER = "creem"
EVENT_CHECKOUT_COMPLETED = "checkout.completed"
EVENT_SUBSCRIPTION_PAID = "subscription.paid"
EVENT_SUBSCRIPTION_ACTIVE = "subscription.active"
PAYMENT_EVENTS = {EVENT_CHECKOUT_COMPLETED, EVENT_SUBSCRIPTION_PAID}

OUTCOME_APPLIED = "applied"
OUTCOME_DUPLICATE = "duplicate"
OUTCOME_IGNORED = "ignored"
OUTCOME_STATUS_UPDATED = "status_updated"

_PERIOD_END_FIELDS = (
    "current_period_end",
    "current_period_end_at",
    "next_payment_at",
    "next_billing_at",
)


class PaymentEventError(ValueError):
    pass


@dataclass(frozen=True)
class PaymentEvent:
    event_type: str
    event_id: str | None
    payment_id: str | None
    subscription_id: str | None
    user_id: str
    product_key: str
    kind: Literal["subscription", "one_time"]
    amount_cents: int
    currency: str
    current_period_end: datetime | None
    raw: dict[str, Any]


@dataclass(frozen=True)
class PaymentOutcome:
    status: str
    payment_id: str | None = None
    credits_granted: int = 0
    plan_key: str | None = None
    grants_remaining: int = 0


def _parse_datetime(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, (int, float)):
        # Provider timestamps come in both seconds and milliseconds.
        seconds = value / 1000 if value > 1e12 else value
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return None


def _parse_amount(value: Any) -> int:
    if value is None or value == "":
        return 0
    try:
        return int(value)
    except (TypeError, ValueError):
        raise PaymentEventError("Invalid amount") from None


def _extract_period_end(obj: dict[str, Any]) -> datetime | None:
    for source in (obj, obj.get("order") or {}):
        for field in _PERIOD_END_FIELDS:
            parsed = _parse_datetime(source.get(field))
            if parsed:
                return parsed
    return None


def parse_creem_event(payload: dict[str, Any]) -> PaymentEvent:
    event_type = str(payload.get("eventType") or "")
    event_id = payload.get("id")
    obj = payload.get("object") or {}
    metadata = obj.get("metadata") or {}

    payment_id: str | None = None
    subscription_id: str | None = None
    amount_cents = 0
    currency = "usd"

    if event_type == EVENT_CHECKOUT_COMPLETED:
        order = obj.get("order") or {}
        payment_id = order.get("id") or obj.get("id")
        subscription_id = (
            order.get("subscription_id")
            or (obj.get("subscription") or {}).get("id")
            or metadata.get("subscriptionId")
        )
        amount_cents = _parse_amount(order.get("amount"))
        currency = str(order.get("currency") or "usd")
    elif event_type in (EVENT_SUBSCRIPTION_PAID, EVENT_SUBSCRIPTION_ACTIVE):
        subscription_id = obj.get("id")
        # The transaction's order id matches checkout.completed, so both deliveries dedupe.
        payment_id = (obj.get("last_transaction") or {}).get("order") or event_id
        product = obj.get("product") or {}
        amount_cents = _parse_amount(product.get("price"))
        currency = str(product.get("currency") or "usd")

    user_id = metadata.get("userId")
    key = metadata.get("key")
    kind = metadata.get("kind")
    if not user_id or not key or kind not in ("subscription", "one_time"):
        raise PaymentEventError("Missing metadata")

    return PaymentEvent(
        event_type=event_type,
        event_id=event_id,
        payment_id=payment_id or event_id,
        subscription_id=subscription_id,
        user_id=str(user_id),
        product_key=str(key),
        kind=kind,
        amount_cents=amount_cents,
        currency=currency.lower(),
        current_period_end=_extract_period_end(obj),
        raw=payload,
    )


def _period_end_from_plan(plan_key: str, now: datetime) -> datetime:
    plan = get_plan(plan_key)
    return add_months(now, 1 if plan.cycle == "month" else 12)


def _mark_subscription_active(db: Session, subscription_id: str) -> None:
    with transaction(db):
        (
            db.query(models.Subscription)
            .filter(models.Subscription.id == subscription_id)
            .update(
                {models.Subscription.status: "active", models.Subscription.updated_at: models.utcnow()},
                synchronize_session=False,
            )
        )


def _upsert_subscription(db: Session, event: PaymentEvent, plan_key: str, period_end: datetime | None) -> None:
    subscription = db.get(models.Subscription, event.subscription_id)
    now = models.utcnow()
    if subscription is None:
        db.add(
            models.Subscription(
                id=event.subscription_id,
                provider=PROVIDER,
                user_id=event.user_id,
                plan_key=plan_key,
                status="active",
                current_period_end=period_end,
                created_at=now,
                updated_at=now,
            )
        )
    else:
        subscription.status = "active"
        subscription.plan_key = plan_key
        if period_end is not None:
            subscription.current_period_end = period_end
        subscription.updated_at = now
    db.flush()


def handle_payment_event(db: Session, event: PaymentEvent) -> PaymentOutcome:
    """Record a paid event and grant its credits exactly once."""
    if event.event_type not in PAYMENT_EVENTS:
        if event.event_type == EVENT_SUBSCRIPTION_ACTIVE and event.subscription_id and event.kind == "subscription":
            _mark_subscription_active(db, event.subscription_id)
            return PaymentOutcome(status=OUTCOME_STATUS_UPDATED)
        return PaymentOutcome(status=OUTCOME_IGNORED)

    if not event.payment_id:
        raise PaymentEventError("Missing payment ID")

    existing = (
        db.query(models.Payment.id)
        .filter(models.Payment.provider_payment_id == event.payment_id)
        .first()
    )
    if existing is not None:
        return PaymentOutcome(status=OUTCOME_DUPLICATE, payment_id=event.payment_id)

    plan_key: str | None = None
    schedule = None
    initial_grant = None
    if event.kind == "one_time" and is_pack_key(event.product_key):
        credits_to_grant = get_pack(event.product_key).credits
        reason = CreditReason.ONE_TIME_PACK
    elif event.kind == "subscription" and is_subscription_key(event.product_key):
        plan_key = event.product_key
        reason = CreditReason.SUBSCRIPTION_CYCLE
        schedule = get_grant_schedule(plan_key) if event.subscription_id else None
        if schedule is not None:
            initial_grant = compute_initial_grant(schedule)
            credits_to_grant = initial_grant.credits_now
        else:
            credits_to_grant = get_plan(plan_key).credits_per_cycle
    else:
        raise PaymentEventError("Invalid key")

    if db.get(models.User, event.user_id) is None:
        raise PaymentEventError("Unknown user")

    now = models.utcnow()
    period_end = event.current_period_end
    if period_end is None and plan_key is not None:
        period_end = _period_end_from_plan(plan_key, now)

    try:
        with transaction(db):
            db.add(
                models.Payment(
                    id=event.payment_id,
                    provider=PROVIDER,
                    provider_payment_id=event.payment_id,
                    user_id=event.user_id,
                    amount_cents=event.amount_cents,
                    currency=event.currency,
                    status="succeeded",
                    type=event.kind,
                    plan_key=plan_key,
                    credits_granted=credits_to_grant,
                    raw=event.raw,
                    created_at=now,
                )
            )
            db.flush()

            if plan_key is not None and event.subscription_id:
                _upsert_subscription(db, event, plan_key, period_end)

            if credits_to_grant > 0:
                apply_credit_delta(
                    db,
                    user_id=event.user_id,
                    delta=credits_to_grant,
                    reason=reason,
                    reference_id=event.payment_id,
                    entry_id=event.payment_id,
                )

            if plan_key is not None:
                (
                    db.query(models.User)
                    .filter(models.User.id == event.user_id)
                    .update({models.User.plan_key: plan_key}, synchronize_session=False)
                )

            if plan_key is not None and event.subscription_id:
                if schedule is not None and initial_grant is not None:
                    reset_subscription_schedule(
                        db,
                        subscription_id=event.subscription_id,
                        user_id=event.user_id,
                        schedule=schedule,
                        grants_remaining=initial_grant.grants_remaining,
                        total_credits_remaining=initial_grant.total_credits_remaining,
                        next_grant_at=initial_grant.next_grant_at,
                    )
                else:
                    delete_subscription_schedule(db, event.subscription_id)
    except IntegrityError:
        # A concurrent delivery of the same payment won the insert.
        logger.info("Payment event already recorded | payment_id=%s", event.payment_id)
        return PaymentOutcome(status=OUTCOME_DUPLICATE, payment_id=event.payment_id)

    logger.info(
        "Payment applied | payment_id=%s | user_id=%s | kind=%s | key=%s | credits=%s",
        event.payment_id,
        event.user_id,
        event.kind,
        event.product_key,
        credits_to_grant,
    )
    return PaymentOutcome(
        status=OUTCOME_APPLIED,
        payment_id=event.payment_id,
        credits_granted=credits_to_grant,
        plan_key=plan_key,
        grants_remaining=initial_grant.grants_remaining if initial_grant is not None else 0,
    )
