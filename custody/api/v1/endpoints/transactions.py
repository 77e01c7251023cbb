from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session
from custody.core.database import get_db
from custody.schemas.transaction import TransactionOut
from custody.services import ledger

router = APIRouter()


@router.get("/{user_id}", response_model=list[TransactionOut])
def list_transactions(
    user_id: str,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
):
    return ledger.list_transactions(db, user_id, limit=limit, offset=offset)
