"""Installment schedules for subscription credits.

Some plans hand out a billing cycle's credits in several smaller grants (e.g. a
yearly plan granting one twelfth per month). Activation grants the initial
installment(s) and stores the remainder as a schedule row; a periodic sweep
(`process_due_schedules`) later drains the due installments.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from dateutil.relativedelta import relativedelta
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from . import models
from .billing_catalog import GrantSchedulePolicy, Installments, get_plan
from .credits import CreditReason, apply_credit_delta
from .database import transaction

logger = logging.getLogger("credits.schedule")

DEFAULT_BATCH_LIMIT = 50
DEFAULT_CATCH_UP_PER_SCHEDULE = 12


@dataclass(frozen=True)
class DerivedGrantSchedule:
    plan_key: str
    credits_per_cycle: int
    grants_per_cycle: int
    interval_months: int
    credits_per_grant: int
    initial_grants: int


@dataclass(frozen=True)
class InitialGrant:
    credits_now: int
    grants_remaining: int
    total_credits_remaining: int
    next_grant_at: datetime | None


@dataclass(frozen=True)
class ScheduleGrantSummary:
    schedule_id: str
    subscription_id: str
    user_id: str
    total_granted: int
    grants_processed: int
    remaining_grants: int


def add_months(value: datetime, months: int) -> datetime:
    return value + relativedelta(months=months)


def _as_utc(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes; everything is stored as UTC.
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def derive_installment_schedule(
    plan_key: str,
    total_credits_per_cycle: int,
    policy: GrantSchedulePolicy | None,
) -> DerivedGrantSchedule | None:
    if not isinstance(policy, Installments):
        return None

    grants_per_cycle = max(1, int(policy.grants_per_cycle))
    interval_months = max(1, int(policy.interval_months))
    initial_grants = min(1 if policy.initial_grants is None else int(policy.initial_grants), grants_per_cycle)

    if policy.credits_per_grant is None:
        credits_per_grant = total_credits_per_cycle // grants_per_cycle
    else:
        credits_per_grant = int(policy.credits_per_grant)

    return DerivedGrantSchedule(
        plan_key=plan_key,
        credits_per_cycle=int(total_credits_per_cycle),
        grants_per_cycle=grants_per_cycle,
        interval_months=interval_months,
        credits_per_grant=max(1, credits_per_grant),
        initial_grants=initial_grants,
    )


def get_grant_schedule(plan_key: str) -> DerivedGrantSchedule | None:
    plan = get_plan(plan_key)
    return derive_installment_schedule(plan.key, plan.credits_per_cycle, plan.grant_schedule)


def compute_initial_grant(schedule: DerivedGrantSchedule, now: datetime | None = None) -> InitialGrant:
    now = now or models.utcnow()
    immediate_grants = min(schedule.initial_grants, schedule.grants_per_cycle)
    credits_now = min(schedule.credits_per_cycle, schedule.credits_per_grant * immediate_grants)
    grants_remaining = schedule.grants_per_cycle - immediate_grants
    total_credits_remaining = schedule.credits_per_cycle - credits_now

    return InitialGrant(
        credits_now=credits_now,
        grants_remaining=max(0, grants_remaining),
        total_credits_remaining=max(0, total_credits_remaining),
        next_grant_at=add_months(now, schedule.interval_months) if grants_remaining > 0 else None,
    )


def reset_subscription_schedule(
    db: Session,
    *,
    subscription_id: str,
    user_id: str,
    schedule: DerivedGrantSchedule,
    grants_remaining: int,
    total_credits_remaining: int,
    next_grant_at: datetime | None,
) -> models.SubscriptionCreditSchedule | None:
    """Replace the subscription's schedule with fresh counters. Caller commits."""
    if grants_remaining <= 0 or next_grant_at is None:
        delete_subscription_schedule(db, subscription_id)
        return None

    row = (
        db.query(models.SubscriptionCreditSchedule)
        .filter(models.SubscriptionCreditSchedule.subscription_id == subscription_id)
        .with_for_update()
        .one_or_none()
    )
    now = models.utcnow()
    if row is None:
        row = models.SubscriptionCreditSchedule(subscription_id=subscription_id, created_at=now)
        db.add(row)

    row.user_id = user_id
    row.plan_key = schedule.plan_key
    row.credits_per_grant = schedule.credits_per_grant
    row.interval_months = schedule.interval_months
    row.grants_remaining = grants_remaining
    row.total_credits_remaining = total_credits_remaining
    row.next_grant_at = next_grant_at
    row.updated_at = now
    db.flush()
    return row


def delete_subscription_schedule(db: Session, subscription_id: str) -> int:
    return (
        db.query(models.SubscriptionCreditSchedule)
        .filter(models.SubscriptionCreditSchedule.subscription_id == subscription_id)
        .delete(synchronize_session=False)
    )


def _drain_schedule(
    db: Session,
    schedule: models.SubscriptionCreditSchedule,
    *,
    now: datetime,
    catch_up: int,
) -> ScheduleGrantSummary | None:
    grants_remaining = schedule.grants_remaining
    credits_remaining = schedule.total_credits_remaining
    next_grant_at = _as_utc(schedule.next_grant_at) or now
    processed = 0
    granted_sum = 0

    while grants_remaining > 0 and credits_remaining > 0 and next_grant_at <= now and processed < catch_up:
        # The last installment takes whatever is left so rounding never strands credits.
        if grants_remaining > 1:
            amount = min(schedule.credits_per_grant, credits_remaining)
        else:
            amount = credits_remaining

        if amount <= 0:
            logger.warning(
                "Schedule grant skipped, non-positive amount | schedule_id=%s | subscription_id=%s | amount=%s",
                schedule.id,
                schedule.subscription_id,
                amount,
            )
            break

        applied = apply_credit_delta(
            db,
            user_id=schedule.user_id,
            delta=amount,
            reason=CreditReason.SUBSCRIPTION_SCHEDULE,
        )
        if not applied:
            logger.warning(
                "Schedule grant skipped, user missing | schedule_id=%s | user_id=%s",
                schedule.id,
                schedule.user_id,
            )
            break

        grants_remaining -= 1
        credits_remaining = max(0, credits_remaining - amount)
        granted_sum += amount
        processed += 1
        next_grant_at = add_months(next_grant_at, schedule.interval_months)

    if granted_sum <= 0:
        return None

    if grants_remaining <= 0 or credits_remaining <= 0:
        db.delete(schedule)
    else:
        schedule.grants_remaining = grants_remaining
        schedule.total_credits_remaining = credits_remaining
        schedule.next_grant_at = next_grant_at
        schedule.updated_at = models.utcnow()

    return ScheduleGrantSummary(
        schedule_id=schedule.id,
        subscription_id=schedule.subscription_id,
        user_id=schedule.user_id,
        total_granted=granted_sum,
        grants_processed=processed,
        remaining_grants=max(0, grants_remaining),
    )


def _due_schedules_query(db: Session, now: datetime, limit: int):
    # Concurrent sweeps skip rows another sweep has already claimed.
    return (
        db.query(models.SubscriptionCreditSchedule)
        .filter(
            models.SubscriptionCreditSchedule.next_grant_at <= now,
            models.SubscriptionCreditSchedule.grants_remaining > 0,
        )
        .order_by(models.SubscriptionCreditSchedule.next_grant_at.asc())
        .limit(limit)
        .with_for_update(skip_locked=True)
    )


def process_due_schedules(
    db: Session,
    limit: int = DEFAULT_BATCH_LIMIT,
    catch_up_per_schedule: int | None = DEFAULT_CATCH_UP_PER_SCHEDULE,
    now: datetime | None = None,
) -> list[ScheduleGrantSummary]:
    """Grant every due installment, at most ``catch_up_per_schedule`` per schedule.

    Due rows are claimed with ``FOR UPDATE SKIP LOCKED`` so concurrent sweeps
    split the work instead of double-granting. The whole batch commits at once.
    """
    if catch_up_per_schedule is None:
        catch_up = DEFAULT_CATCH_UP_PER_SCHEDULE
    else:
        catch_up = max(1, int(catch_up_per_schedule))
    limit = int(limit)
    if limit <= 0:
        return []
    now = _as_utc(now) or models.utcnow()
    results: list[ScheduleGrantSummary] = []

    try:
        with transaction(db):
            for schedule in _due_schedules_query(db, now, limit).all():
                summary = _drain_schedule(db, schedule, now=now, catch_up=catch_up)
                if summary is not None:
                    results.append(summary)
    except SQLAlchemyError:
        logger.exception("Schedule sweep failed | limit=%s | catch_up=%s", limit, catch_up)
        raise

    for item in results:
        logger.info(
            "Schedule grants applied | schedule_id=%s | subscription_id=%s | user_id=%s | granted=%s | grants=%s | remaining=%s",
            item.schedule_id,
            item.subscription_id,
            item.user_id,
            item.total_granted,
            item.grants_processed,
            item.remaining_grants,
        )
    return results
