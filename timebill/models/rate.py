"""Rate model definitions."""
from enum import Enum

from pydantic import BaseModel, Field


class SeniorityLevel(str, Enum):
    """Seniority tiers, each with its own rate multiplier."""

    JUNIOR = "junior"
    INTERMEDIATE = "intermediate"
    CONFIRMED = "confirmed"
    SENIOR = "senior"
    EXPERT = "expert"


class RateConfig(BaseModel):
    """Inputs of the billable rate."""

    base_rate_per_minute: float = Field(ge=0)
    seniority: SeniorityLevel = SeniorityLevel.JUNIOR
    expertise_count: int = Field(default=0, ge=0)
    language_count: int = Field(default=0, ge=0)
    include_bonus: bool = True
    custom_multiplier: float = Field(default=1.0, gt=0)


class RateComponent(BaseModel):
    """One line of a rate breakdown, expressed on the daily rate."""

    component: str
    value: int
    percentage: float


class CalculatedRate(BaseModel):
    """Billable rate with the factors that produced it."""

    rate_per_minute: float
    daily_rate: int
    seniority_multiplier: float
    expertise_bonus: float
    language_bonus: float
    breakdown: list[RateComponent]
