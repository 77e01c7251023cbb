from pydantic import BaseModel, ConfigDict
from decimal import Decimal


class BalanceOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    asset_id: str
    amount: Decimal
