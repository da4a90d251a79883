import asyncio

from app import models, worker
from app.credits import get_balance
from app.subscription_schedule import add_months


def test_worker_task_runs_installment_sweep(db_session, make_user):
    make_user("worker-user")
    db_session.add(models.Subscription(id="sub_worker", user_id="worker-user", plan_key="pro_yearly", status="active"))
    db_session.add(
        models.SubscriptionCreditSchedule(
            subscription_id="sub_worker",
            user_id="worker-user",
            plan_key="pro_yearly",
            credits_per_grant=10000,
            interval_months=1,
            grants_remaining=1,
            total_credits_remaining=10000,
            next_grant_at=add_months(models.utcnow(), -1),
        )
    )
    db_session.commit()

    result = asyncio.run(worker.task_grant_subscription_installments({"job_id": "test-job"}))

    assert result["processed"] == 1
    assert result["schedules_touched"] == 1
    assert result["grants"][0]["remaining_grants"] == 0
    assert get_balance(db_session, "worker-user") == 10000
    assert db_session.query(models.SubscriptionCreditSchedule).count() == 0


def test_worker_cron_is_hourly():
    job = worker.WorkerSettings.cron_jobs[0]
    assert job.coroutine is worker.task_grant_subscription_installments
    assert job.minute == 0
