"""
Plan tiers — the feature gates and monthly caps each tenant plan carries.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class PlanTier(str, Enum):
    FREE = "FREE"
    GROWTH = "GROWTH"
    PRO = "PRO"


@dataclass(frozen=True)
class PlanConfig:
    name: str
    cap: int
    dm: bool = True
    comments: bool = False
    converse: bool = False       # replies to follow-up messages within 24h
    followup: bool = False       # clarifying questions when product context is missing


PLANS: dict[str, PlanConfig] = {
    PlanTier.FREE.value: PlanConfig(name="FREE", cap=25),
    PlanTier.GROWTH.value: PlanConfig(name="GROWTH", cap=500, comments=True, converse=True),
    PlanTier.PRO.value: PlanConfig(
        name="PRO", cap=50000, comments=True, converse=True, followup=True,
    ),
}


def get_plan_config(plan: str | None) -> PlanConfig:
    """Unknown or missing plan names get the FREE tier."""
    return PLANS.get((plan or "").upper(), PLANS[PlanTier.FREE.value])


def effective_cap(plan: str | None, monthly_cap: int | None) -> int:
    if monthly_cap is not None:
        return monthly_cap
    return get_plan_config(plan).cap
