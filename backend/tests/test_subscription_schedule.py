from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.dialects import postgresql

from app import models
from app.billing_catalog import Installments, PerCycle
from app.credits import get_balance
from app.subscription_schedule import (
    _due_schedules_query,
    add_months,
    compute_initial_grant,
    delete_subscription_schedule,
    derive_installment_schedule,
    get_grant_schedule,
    process_due_schedules,
    reset_subscription_schedule,
)

NOW = datetime(2026, 6, 15, 12, 0, tzinfo=timezone.utc)


@pytest.fixture()
def make_subscription(db_session, make_user):
    def _make_subscription(user_id: str, subscription_id: str, plan_key: str = "starter_yearly") -> models.Subscription:
        if db_session.get(models.User, user_id) is None:
            make_user(user_id)
        subscription = models.Subscription(
            id=subscription_id,
            user_id=user_id,
            plan_key=plan_key,
            status="active",
        )
        db_session.add(subscription)
        db_session.commit()
        return subscription

    return _make_subscription


@pytest.fixture()
def make_schedule(db_session, make_subscription):
    def _make_schedule(
        user_id: str,
        subscription_id: str,
        *,
        credits_per_grant: int,
        grants_remaining: int,
        total_credits_remaining: int,
        next_grant_at: datetime,
        interval_months: int = 1,
    ) -> str:
        make_subscription(user_id, subscription_id)
        row = models.SubscriptionCreditSchedule(
            subscription_id=subscription_id,
            user_id=user_id,
            plan_key="starter_yearly",
            credits_per_grant=credits_per_grant,
            interval_months=interval_months,
            grants_remaining=grants_remaining,
            total_credits_remaining=total_credits_remaining,
            next_grant_at=next_grant_at,
        )
        db_session.add(row)
        db_session.commit()
        return row.id

    return _make_schedule


def _schedule_for(db, subscription_id: str) -> models.SubscriptionCreditSchedule | None:
    db.expire_all()
    return (
        db.query(models.SubscriptionCreditSchedule)
        .filter(models.SubscriptionCreditSchedule.subscription_id == subscription_id)
        .one_or_none()
    )


def _naive(value: datetime) -> datetime:
    return value.replace(tzinfo=None) if value.tzinfo else value


def test_per_cycle_policy_has_no_schedule():
    assert derive_installment_schedule("starter_monthly", 1000, PerCycle()) is None
    assert derive_installment_schedule("starter_monthly", 1000, None) is None
    assert get_grant_schedule("pro_monthly") is None


def test_derivation_applies_floors_and_caps():
    derived = derive_installment_schedule(
        "odd_plan",
        50,
        Installments(grants_per_cycle=0, interval_months=0, credits_per_grant=0, initial_grants=5),
    )

    assert derived.grants_per_cycle == 1
    assert derived.interval_months == 1
    assert derived.credits_per_grant == 1
    assert derived.initial_grants == 1


def test_derivation_infers_credits_per_grant_and_defaults_initial_grants():
    derived = derive_installment_schedule("pro_monthly", 400, Installments(grants_per_cycle=4, interval_months=1))

    assert derived.credits_per_grant == 100
    assert derived.initial_grants == 1
    assert derived.credits_per_cycle == 400


def test_yearly_catalog_plans_grant_monthly():
    starter = get_grant_schedule("starter_yearly")
    pro = get_grant_schedule("pro_yearly")

    assert (starter.grants_per_cycle, starter.credits_per_grant, starter.interval_months) == (12, 1000, 1)
    assert (pro.grants_per_cycle, pro.credits_per_grant, pro.interval_months) == (12, 10000, 1)


def test_initial_grant_splits_cycle():
    derived = derive_installment_schedule("pro_monthly", 400, Installments(grants_per_cycle=4, interval_months=1))

    initial = compute_initial_grant(derived, now=NOW)

    assert initial.credits_now == 100
    assert initial.grants_remaining == 3
    assert initial.total_credits_remaining == 300
    assert initial.next_grant_at == add_months(NOW, 1)


def test_initial_grant_covering_whole_cycle_leaves_nothing_scheduled():
    derived = derive_installment_schedule(
        "burst", 300, Installments(grants_per_cycle=3, interval_months=1, initial_grants=3)
    )

    initial = compute_initial_grant(derived, now=NOW)

    assert initial.credits_now == 300
    assert initial.grants_remaining == 0
    assert initial.total_credits_remaining == 0
    assert initial.next_grant_at is None


def test_add_months_clamps_to_month_end():
    assert add_months(datetime(2026, 1, 31, tzinfo=timezone.utc), 1) == datetime(2026, 2, 28, tzinfo=timezone.utc)


def test_reset_overwrites_existing_schedule(db_session, make_subscription):
    make_subscription("u-reset", "sub_reset")
    derived = get_grant_schedule("starter_yearly")

    reset_subscription_schedule(
        db_session,
        subscription_id="sub_reset",
        user_id="u-reset",
        schedule=derived,
        grants_remaining=2,
        total_credits_remaining=2000,
        next_grant_at=NOW,
    )
    db_session.commit()
    reset_subscription_schedule(
        db_session,
        subscription_id="sub_reset",
        user_id="u-reset",
        schedule=derived,
        grants_remaining=11,
        total_credits_remaining=11000,
        next_grant_at=add_months(NOW, 1),
    )
    db_session.commit()

    rows = db_session.query(models.SubscriptionCreditSchedule).all()
    assert len(rows) == 1
    assert rows[0].grants_remaining == 11
    assert rows[0].total_credits_remaining == 11000
    assert _naive(rows[0].next_grant_at) == _naive(add_months(NOW, 1))


@pytest.mark.parametrize("grants_remaining,next_grant_at", [(0, NOW), (3, None)])
def test_reset_without_remaining_work_deletes_schedule(db_session, make_schedule, grants_remaining, next_grant_at):
    make_schedule(
        "u-clear",
        "sub_clear",
        credits_per_grant=1000,
        grants_remaining=5,
        total_credits_remaining=5000,
        next_grant_at=NOW,
    )

    result = reset_subscription_schedule(
        db_session,
        subscription_id="sub_clear",
        user_id="u-clear",
        schedule=get_grant_schedule("starter_yearly"),
        grants_remaining=grants_remaining,
        total_credits_remaining=3000,
        next_grant_at=next_grant_at,
    )
    db_session.commit()

    assert result is None
    assert _schedule_for(db_session, "sub_clear") is None


def test_delete_schedule(db_session, make_schedule):
    make_schedule(
        "u-del",
        "sub_del",
        credits_per_grant=10,
        grants_remaining=2,
        total_credits_remaining=20,
        next_grant_at=NOW,
    )

    assert delete_subscription_schedule(db_session, "sub_del") == 1
    db_session.commit()
    assert delete_subscription_schedule(db_session, "sub_del") == 0
    assert _schedule_for(db_session, "sub_del") is None


def test_due_schedule_grants_once_and_advances(db_session, make_schedule):
    make_schedule(
        "u-due",
        "sub_due",
        credits_per_grant=1000,
        grants_remaining=11,
        total_credits_remaining=11000,
        next_grant_at=NOW - timedelta(hours=1),
    )

    first = process_due_schedules(db_session, now=NOW)
    second = process_due_schedules(db_session, now=NOW)

    assert len(first) == 1
    assert first[0].total_granted == 1000
    assert first[0].grants_processed == 1
    assert first[0].remaining_grants == 10
    assert second == []
    assert get_balance(db_session, "u-due") == 1000

    row = _schedule_for(db_session, "sub_due")
    assert row.grants_remaining == 10
    assert row.total_credits_remaining == 10000
    assert _naive(row.next_grant_at) == _naive(add_months(NOW - timedelta(hours=1), 1))

    ledger = db_session.query(models.CreditLedger).filter(models.CreditLedger.user_id == "u-due").all()
    assert [(entry.delta, entry.reason) for entry in ledger] == [(1000, "subscription_schedule")]


def test_catch_up_is_bounded_per_call(db_session, make_schedule):
    make_schedule(
        "u-behind",
        "sub_behind",
        credits_per_grant=10,
        grants_remaining=100,
        total_credits_remaining=1000,
        next_grant_at=add_months(NOW, -100),
    )

    results = process_due_schedules(db_session, catch_up_per_schedule=12, now=NOW)

    assert results[0].grants_processed == 12
    assert results[0].total_granted == 120
    assert get_balance(db_session, "u-behind") == 120
    row = _schedule_for(db_session, "sub_behind")
    assert row.grants_remaining == 88
    assert _naive(row.next_grant_at) == _naive(add_months(NOW, -88))

    process_due_schedules(db_session, catch_up_per_schedule=12, now=NOW)
    assert get_balance(db_session, "u-behind") == 240


def test_final_grant_absorbs_remainder(db_session, make_schedule):
    make_schedule(
        "u-rem",
        "sub_rem",
        credits_per_grant=333,
        grants_remaining=3,
        total_credits_remaining=1000,
        next_grant_at=add_months(NOW, -2),
    )

    results = process_due_schedules(db_session, now=NOW)

    assert results[0].remaining_grants == 0
    deltas = sorted(
        entry.delta
        for entry in db_session.query(models.CreditLedger).filter(models.CreditLedger.user_id == "u-rem")
    )
    assert deltas == [333, 333, 334]
    assert _schedule_for(db_session, "sub_rem") is None


@pytest.mark.parametrize("total,grants", [(1000, 3), (12000, 12), (7, 3), (100, 7), (2, 3)])
def test_drained_schedule_grants_exactly_the_total(db_session, make_schedule, total, grants):
    derived = derive_installment_schedule("plan", total, Installments(grants_per_cycle=grants, interval_months=1))
    make_schedule(
        "u-sum",
        "sub_sum",
        credits_per_grant=derived.credits_per_grant,
        grants_remaining=grants,
        total_credits_remaining=total,
        next_grant_at=add_months(NOW, -(grants - 1)),
    )

    process_due_schedules(db_session, catch_up_per_schedule=grants, now=NOW)

    assert get_balance(db_session, "u-sum") == total
    assert _schedule_for(db_session, "sub_sum") is None


def test_malformed_schedule_is_skipped(db_session, make_schedule):
    make_schedule(
        "u-bad",
        "sub_bad",
        credits_per_grant=0,
        grants_remaining=3,
        total_credits_remaining=300,
        next_grant_at=NOW - timedelta(days=1),
    )

    results = process_due_schedules(db_session, now=NOW)

    assert results == []
    assert get_balance(db_session, "u-bad") == 0
    row = _schedule_for(db_session, "sub_bad")
    assert row.grants_remaining == 3
    assert row.total_credits_remaining == 300


def test_schedules_not_yet_due_are_untouched(db_session, make_schedule):
    make_schedule(
        "u-later",
        "sub_later",
        credits_per_grant=1000,
        grants_remaining=11,
        total_credits_remaining=11000,
        next_grant_at=NOW + timedelta(days=1),
    )

    assert process_due_schedules(db_session, now=NOW) == []
    assert get_balance(db_session, "u-later") == 0
    assert _schedule_for(db_session, "sub_later").grants_remaining == 11


def test_batch_limit_caps_schedules_per_sweep(db_session, make_schedule):
    for index in range(3):
        make_schedule(
            f"u-batch-{index}",
            f"sub_batch_{index}",
            credits_per_grant=10,
            grants_remaining=2,
            total_credits_remaining=20,
            next_grant_at=NOW - timedelta(days=index + 1),
        )

    first = process_due_schedules(db_session, limit=2, now=NOW)
    second = process_due_schedules(db_session, limit=2, now=NOW)

    assert len(first) == 2
    # Oldest due rows go first.
    assert {item.subscription_id for item in first} == {"sub_batch_1", "sub_batch_2"}
    assert [item.subscription_id for item in second] == ["sub_batch_0"]


def test_zero_catch_up_grants_a_single_installment(db_session, make_schedule):
    make_schedule(
        "u-one",
        "sub_one",
        credits_per_grant=10,
        grants_remaining=100,
        total_credits_remaining=1000,
        next_grant_at=add_months(NOW, -100),
    )

    results = process_due_schedules(db_session, catch_up_per_schedule=0, now=NOW)

    assert results[0].grants_processed == 1
    assert results[0].total_granted == 10
    assert get_balance(db_session, "u-one") == 10


def test_zero_limit_claims_nothing(db_session, make_schedule):
    make_schedule(
        "u-none",
        "sub_none",
        credits_per_grant=10,
        grants_remaining=3,
        total_credits_remaining=30,
        next_grant_at=NOW - timedelta(days=1),
    )

    assert process_due_schedules(db_session, limit=0, now=NOW) == []
    assert get_balance(db_session, "u-none") == 0
    assert _schedule_for(db_session, "sub_none").grants_remaining == 3


def test_schedule_without_credits_left_is_kept_when_nothing_granted(db_session, make_schedule):
    make_schedule(
        "u-empty",
        "sub_empty",
        credits_per_grant=10,
        grants_remaining=2,
        total_credits_remaining=0,
        next_grant_at=NOW - timedelta(days=1),
    )

    assert process_due_schedules(db_session, now=NOW) == []
    row = _schedule_for(db_session, "sub_empty")
    assert row is not None
    assert row.grants_remaining == 2


def test_due_rows_are_claimed_with_skip_locked(db_session):
    query = _due_schedules_query(db_session, NOW, 25)

    sql = str(query.statement.compile(dialect=postgresql.dialect()))

    assert "FOR UPDATE SKIP LOCKED" in sql
    assert "ORDER BY subscription_credit_schedules.next_grant_at ASC" in sql
    assert "subscription_credit_schedules.grants_remaining >" in sql
