"""Billable rate calculation.

Rates are expressed in minor currency units per minute. A day is billed as
eight hours.
"""
from timebill.models.rate import CalculatedRate, RateComponent, RateConfig, SeniorityLevel
from timebill.utils.calculator import round_half_up

MINUTES_PER_HOUR = 60
WORKING_HOURS_PER_DAY = 8
EXPERTISE_BONUS = 0.05
LANGUAGE_BONUS = 0.05
MAX_BONUS = 0.50

SENIORITY_MULTIPLIERS = {
    SeniorityLevel.JUNIOR: 1.0,
    SeniorityLevel.INTERMEDIATE: 1.15,
    SeniorityLevel.CONFIRMED: 1.3,
    SeniorityLevel.SENIOR: 1.6,
    SeniorityLevel.EXPERT: 2.0,
}


def skills_bonus(expertise_count: int, language_count: int) -> float:
    """
    Fractional bonus earned for expertises and spoken languages.

    Examples:
        >>> skills_bonus(2, 1)
        0.15
        >>> skills_bonus(8, 4)
        0.5
    """
    bonus = expertise_count * EXPERTISE_BONUS + language_count * LANGUAGE_BONUS
    return round(min(bonus, MAX_BONUS), 4)


def billable_rate(
    base_rate_per_minute: float,
    seniority: SeniorityLevel = SeniorityLevel.JUNIOR,
    expertise_count: int = 0,
    language_count: int = 0,
    include_bonus: bool = True,
    custom_multiplier: float = 1.0,
) -> float:
    """
    Billable rate per minute.

    Args:
        base_rate_per_minute: Base rate in minor units per minute
        seniority: Seniority tier
        expertise_count: Number of declared expertises
        language_count: Number of spoken languages
        include_bonus: Whether skill bonuses apply
        custom_multiplier: Extra negotiated multiplier

    Returns:
        Rate in minor units per minute, rounded to two decimals

    Examples:
        >>> billable_rate(75)
        75.0
        >>> billable_rate(75, SeniorityLevel.SENIOR, expertise_count=2)
        132.0
    """
    multiplier = SENIORITY_MULTIPLIERS.get(SeniorityLevel(seniority), 1.0)
    bonus = skills_bonus(expertise_count, language_count) if include_bonus else 0.0
    return round(base_rate_per_minute * multiplier * (1 + bonus) * custom_multiplier, 2)


def daily_rate(rate_per_minute: float) -> int:
    """
    Daily rate for a per-minute rate.

    Examples:
        >>> daily_rate(75)
        36000
    """
    return round_half_up(rate_per_minute * MINUTES_PER_HOUR * WORKING_HOURS_PER_DAY)


def calculate_rate(config: RateConfig) -> CalculatedRate:
    """Billable rate for ``config`` with a component breakdown on the daily rate."""
    multiplier = SENIORITY_MULTIPLIERS[config.seniority]
    expertise_bonus = config.expertise_count * EXPERTISE_BONUS if config.include_bonus else 0.0
    language_bonus = config.language_count * LANGUAGE_BONUS if config.include_bonus else 0.0
    rate = billable_rate(
        config.base_rate_per_minute,
        config.seniority,
        config.expertise_count,
        config.language_count,
        config.include_bonus,
        config.custom_multiplier,
    )

    base_daily = daily_rate(config.base_rate_per_minute)
    seniority_daily = round_half_up(base_daily * multiplier)
    bonus = skills_bonus(config.expertise_count, config.language_count) if config.include_bonus else 0.0
    # Bonus components share the capped total proportionally
    uncapped = expertise_bonus + language_bonus
    scale = bonus / uncapped if uncapped else 0.0
    final_daily = daily_rate(rate)

    breakdown = [
        RateComponent(component="base", value=base_daily, percentage=0.0),
        RateComponent(
            component="seniority",
            value=seniority_daily - base_daily,
            percentage=round((multiplier - 1) * 100, 2),
        ),
        RateComponent(
            component="expertise",
            value=round_half_up(seniority_daily * expertise_bonus * scale),
            percentage=round(expertise_bonus * scale * 100, 2),
        ),
        RateComponent(
            component="languages",
            value=round_half_up(seniority_daily * language_bonus * scale),
            percentage=round(language_bonus * scale * 100, 2),
        ),
    ]
    if config.custom_multiplier != 1.0:
        breakdown.append(
            RateComponent(
                component="custom",
                value=final_daily - round_half_up(seniority_daily * (1 + bonus)),
                percentage=round((config.custom_multiplier - 1) * 100, 2),
            )
        )

    return CalculatedRate(
        rate_per_minute=rate,
        daily_rate=final_daily,
        seniority_multiplier=multiplier,
        expertise_bonus=round(expertise_bonus * scale * 100, 2),
        language_bonus=round(language_bonus * scale * 100, 2),
        breakdown=breakdown,
    )
