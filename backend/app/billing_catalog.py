from dataclasses import dataclass
from typing import Literal


class UnknownProductError(LookupError):
    pass


@dataclass(frozen=True)
class PerCycle:
    """Grant the whole cycle's credits when the cycle is paid."""


@dataclass(frozen=True)
class Installments:
    grants_per_cycle: int
    interval_months: int
    credits_per_grant: int | None = None
    initial_grants: int | None = None


GrantSchedulePolicy = PerCycle | Installments


@dataclass(frozen=True)
class SubscriptionPlan:
    key: str
    price_cents: int
    currency: str
    credits_per_cycle: int
    cycle: Literal["month", "year"]
    provider_price_id: str | None = None
    grant_schedule: GrantSchedulePolicy = PerCycle()


@dataclass(frozen=True)
class OneTimePack:
    key: str
    price_cents: int
    currency: str
    credits: int
    provider_price_id: str | None = None


SUBSCRIPTION_PLANS: dict[str, SubscriptionPlan] = {
    "starter_monthly": SubscriptionPlan(
        key="starter_monthly",
        price_cents=2900,
        currency="usd",
        credits_per_cycle=1000,
        cycle="month",
        provider_price_id="prod_6oSIwPL8m6scklr3fwdkC9",
    ),
    "starter_yearly": SubscriptionPlan(
        key="starter_yearly",
        price_cents=29000,
        currency="usd",
        credits_per_cycle=12000,
        cycle="year",
        provider_price_id="prod_2V1LbGt2bLmZpKgmASTiCN",
        grant_schedule=Installments(grants_per_cycle=12, interval_months=1, credits_per_grant=1000, initial_grants=1),
    ),
    "pro_monthly": SubscriptionPlan(
        key="pro_monthly",
        price_cents=9900,
        currency="usd",
        credits_per_cycle=10000,
        cycle="month",
        provider_price_id="prod_5Xzh9qV5TWeTQtRxjZPEHM",
    ),
    "pro_yearly": SubscriptionPlan(
        key="pro_yearly",
        price_cents=99000,
        currency="usd",
        credits_per_cycle=120000,
        cycle="year",
        provider_price_id="prod_2xyljTJW1IlT8FUDrucU3X",
        grant_schedule=Installments(grants_per_cycle=12, interval_months=1, credits_per_grant=10000, initial_grants=1),
    ),
}

ONE_TIME_PACKS: dict[str, OneTimePack] = {
    "pack_200": OneTimePack(
        key="pack_200",
        price_cents=500,
        currency="usd",
        credits=200,
        provider_price_id="prod_3SiroZeMbMQidMVFDMUzKy",
    ),
}


def is_subscription_key(key: str) -> bool:
    return key in SUBSCRIPTION_PLANS


def is_pack_key(key: str) -> bool:
    return key in ONE_TIME_PACKS


def get_plan(key: str) -> SubscriptionPlan:
    plan = SUBSCRIPTION_PLANS.get(key)
    if plan is None:
        raise UnknownProductError(f"Unknown subscription plan: {key}")
    return plan


def get_pack(key: str) -> OneTimePack:
    pack = ONE_TIME_PACKS.get(key)
    if pack is None:
        raise UnknownProductError(f"Unknown credit pack: {key}")
    return pack


def list_plans() -> list[SubscriptionPlan]:
    return list(SUBSCRIPTION_PLANS.values())


def list_packs() -> list[OneTimePack]:
    return list(ONE_TIME_PACKS.values())
