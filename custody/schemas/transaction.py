from pydantic import BaseModel, ConfigDict
from decimal import Decimal
from datetime import datetime
from typing import Any, Optional
from custody.models.ledger_transaction import TransactionStatus, TransactionType


class TransactionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    created_at: Optional[datetime] = None
    reference: str | None
    tx_type: TransactionType | str
    asset_id: str
    amount: Decimal
    status: TransactionStatus | str
    description: str | None = None
    meta: Optional[dict[str, Any]] = None
