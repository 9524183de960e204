"""Rate endpoints."""
from fastapi import APIRouter, Depends

from timebill.models.rate import CalculatedRate, RateConfig
from timebill.routers.auth import get_current_actor_id
from timebill.utils.rates import calculate_rate

router = APIRouter(prefix="/rates", tags=["rates"])


@router.post("/calculate", response_model=CalculatedRate)
async def calculate(
    config: RateConfig,
    actor_id: str = Depends(get_current_actor_id),
):
    """
    Billable rate from a base rate, seniority and skills.

    - Skill bonuses are 5% per expertise and per language, capped at 50%
    """
    return calculate_rate(config)
