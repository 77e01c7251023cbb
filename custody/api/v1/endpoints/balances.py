from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from custody.core.assets import get_asset
from custody.core.database import get_db
from custody.schemas.balance import BalanceOut
from custody.services import ledger

router = APIRouter()


@router.get("/{user_id}", response_model=list[BalanceOut])
def get_balances(user_id: str, db: Session = Depends(get_db)):
    return ledger.list_balances(db, user_id)


@router.get("/{user_id}/{asset_id}", response_model=BalanceOut)
def get_balance(user_id: str, asset_id: str, db: Session = Depends(get_db)):
    spec = get_asset(asset_id)
    return {"asset_id": spec.symbol, "amount": ledger.get_balance(db, user_id, spec.symbol)}
