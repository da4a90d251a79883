from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field, field_validator

from .credits import CreditReason

UsageAction = Literal["chat", "image", "video"]


class UserResponse(BaseModel):
    id: str
    email: str | None
    credits: int
    plan_key: str
    created_at: datetime
    updated_at: datetime


class CreditEntryResponse(BaseModel):
    id: str
    amount: int
    type: str
    reason: str
    payment_id: str | None
    created_at: datetime


class CreditSummaryResponse(BaseModel):
    balance: int
    plan_key: str
    recent_entries: list[CreditEntryResponse]


class CreditHistoryResponse(BaseModel):
    history: list[CreditEntryResponse]
    total_count: int
    has_more: bool


class UsageChargeRequest(BaseModel):
    reference_id: str | None = Field(default=None, max_length=128)

    @field_validator("reference_id")
    @classmethod
    def strip_reference_id(cls, v: str | None) -> str | None:
        if v is None:
            return None
        v = v.strip()
        return v or None


class UsageChargeResponse(BaseModel):
    action: UsageAction
    charged: int
    remaining_credits: int
    reference_id: str


class AdminCreditAdjustRequest(BaseModel):
    amount: int
    reason: CreditReason = CreditReason.ADJUSTMENT

    @field_validator("amount")
    @classmethod
    def amount_non_zero(cls, v: int) -> int:
        if v == 0:
            raise ValueError("amount must be non-zero")
        return v


class AdminCreditAdjustResponse(BaseModel):
    success: bool
    credits: int
    error: str | None = None


class AdminPlanUpdateRequest(BaseModel):
    plan_key: str = Field(min_length=1, max_length=64)


class AdminPlanResponse(BaseModel):
    success: bool
    user_id: str
    plan_key: str


class PlanCatalogItem(BaseModel):
    key: str
    price_cents: int
    currency: str
    credits_per_cycle: int
    cycle: Literal["month", "year"]
    installments: int | None = None


class PackCatalogItem(BaseModel):
    key: str
    price_cents: int
    currency: str
    credits: int


class CatalogResponse(BaseModel):
    plans: list[PlanCatalogItem]
    packs: list[PackCatalogItem]


class PaymentEventResponse(BaseModel):
    received: bool = True
    status: str
    payment_id: str | None = None
    credits_granted: int = 0


class ScheduleGrantItem(BaseModel):
    schedule_id: str
    subscription_id: str
    user_id: str
    total_granted: int
    grants_processed: int
    remaining_grants: int


class ScheduleSweepResponse(BaseModel):
    processed: int
    schedules_touched: int
    grants: list[ScheduleGrantItem]
