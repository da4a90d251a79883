from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from .. import schemas
from ..config import settings
from ..database import get_db
from ..dependencies import require_cron_auth
from ..subscription_schedule import process_due_schedules

router = APIRouter(prefix="/v1/cron", tags=["cron"], dependencies=[Depends(require_cron_auth)])

MAX_LIMIT = 500
MAX_CATCH_UP = 36


def _clamp(value: int, low: int, high: int) -> int:
    return min(max(value, low), high)


def _run_sweep(db: Session, limit: int | None, catch_up: int | None) -> schemas.ScheduleSweepResponse:
    batch = _clamp(limit if limit is not None else settings.schedule_batch_limit, 1, MAX_LIMIT)
    per_schedule = _clamp(
        catch_up if catch_up is not None else settings.schedule_catch_up_per_schedule, 1, MAX_CATCH_UP
    )
    results = process_due_schedules(db, limit=batch, catch_up_per_schedule=per_schedule)
    return schemas.ScheduleSweepResponse(
        processed=sum(item.grants_processed for item in results),
        schedules_touched=len(results),
        grants=[
            schemas.ScheduleGrantItem(
                schedule_id=item.schedule_id,
                subscription_id=item.subscription_id,
                user_id=item.user_id,
                total_granted=item.total_granted,
                grants_processed=item.grants_processed,
                remaining_grants=item.remaining_grants,
            )
            for item in results
        ],
    )


@router.get("/subscription-grants", response_model=schemas.ScheduleSweepResponse)
def run_subscription_grants(
    limit: int | None = Query(default=None),
    catch_up: int | None = Query(default=None, alias="catchUp"),
    db: Session = Depends(get_db),
):
    return _run_sweep(db, limit, catch_up)


@router.post("/subscription-grants", response_model=schemas.ScheduleSweepResponse)
def run_subscription_grants_post(
    limit: int | None = Query(default=None),
    catch_up: int | None = Query(default=None, alias="catchUp"),
    db: Session = Depends(get_db),
):
    return _run_sweep(db, limit, catch_up)
