from pydantic import BaseModel, ConfigDict
from decimal import Decimal
from datetime import datetime
from typing import Optional


class AllocationOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    user_id: str
    asset_id: str
    address: str
    hd_path: str
    derivation_index: int
    last_observed_balance: Decimal
    last_checked_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


class DepositCheckOut(BaseModel):
    user_id: str
    credited: int
