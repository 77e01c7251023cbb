from dataclasses import asdict
from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session
from custody.core.database import get_db
from custody.middlewares.rate_limit import limiter
from custody.schemas.staking import (
    ClaimRewardsOut,
    CloseStakeOut,
    StakeRequest,
    StakingOverviewOut,
    StakingPositionOut,
    StakingProductOut,
)
from custody.services import staking

router = APIRouter()


@router.get("/rates", response_model=list[StakingProductOut])
def get_rates():
    return [asdict(product) for product in staking.get_staking_products().values()]


@router.post("/positions/{position_id}/close", response_model=CloseStakeOut)
@limiter.limit("10/minute")
def close_position(request: Request, position_id: int, db: Session = Depends(get_db)):
    return staking.close_stake(db, position_id)


@router.post("/positions/{position_id}/claim", response_model=ClaimRewardsOut)
@limiter.limit("10/minute")
def claim_position_rewards(request: Request, position_id: int, db: Session = Depends(get_db)):
    rewards = staking.claim_rewards(db, position_id)
    return {"position_id": position_id, "rewards": rewards}


@router.get("/users/{user_id}", response_model=StakingOverviewOut)
def get_positions(user_id: str, db: Session = Depends(get_db)):
    overview = staking.get_staking_positions(db, user_id)
    return StakingOverviewOut.model_validate(overview, from_attributes=True)


@router.post("/users/{user_id}", response_model=StakingPositionOut)
@limiter.limit("10/minute")
def open_position(request: Request, user_id: str, payload: StakeRequest, db: Session = Depends(get_db)):
    return staking.open_stake(db, user_id, payload.asset_id, payload.amount)
