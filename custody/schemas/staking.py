from pydantic import BaseModel, ConfigDict, Field
from decimal import Decimal
from datetime import datetime
from typing import Optional
from custody.models.staking_position import StakingStatus


class StakeRequest(BaseModel):
    asset_id: str = Field(..., min_length=2, max_length=16)
    amount: Decimal = Field(..., gt=0)


class StakingPositionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    asset_id: str
    ledger_asset_id: str
    principal: Decimal
    rate: Decimal
    period_seconds: int
    started_at: datetime
    last_reward_at: datetime
    accrued_rewards: Decimal
    claimed_rewards: Decimal
    accumulated_rewards: Decimal
    status: StakingStatus | str
    ends_at: Optional[datetime] = None


class StakingOverviewOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    positions: list[StakingPositionOut]
    total_staked: dict[str, Decimal]
    total_rewards: dict[str, Decimal]
    estimated_rewards_per_period: dict[str, Decimal]


class CloseStakeOut(BaseModel):
    position_id: int
    asset_id: str
    principal: Decimal
    rewards: Decimal


class ClaimRewardsOut(BaseModel):
    position_id: int
    rewards: Decimal


class StakingProductOut(BaseModel):
    asset_id: str
    rate: Decimal
    period_seconds: int
    min_amount: Decimal
