from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session
from custody.core.database import get_db
from custody.dependencies import get_reconciler
from custody.middlewares.rate_limit import limiter
from custody.schemas.wallet import AllocationOut, DepositCheckOut
from custody.services.allocation import allocate_address, allocate_all, list_allocations
from custody.services.reconciliation import DepositReconciler

router = APIRouter()


@router.get("/{user_id}", response_model=list[AllocationOut])
def get_wallets(user_id: str, db: Session = Depends(get_db)):
    return list_allocations(db, user_id)


@router.post("/{user_id}", response_model=list[AllocationOut])
@limiter.limit("10/minute")
def create_wallets(request: Request, user_id: str, db: Session = Depends(get_db)):
    return allocate_all(db, user_id)


@router.post("/{user_id}/check-deposits", response_model=DepositCheckOut)
@limiter.limit("6/minute")
def check_deposits(request: Request, user_id: str, reconciler: DepositReconciler = Depends(get_reconciler)):
    credited = reconciler.reconcile_user(user_id)
    return {"user_id": user_id, "credited": credited}


@router.post("/{user_id}/{asset_id}", response_model=AllocationOut)
@limiter.limit("20/minute")
def create_wallet(request: Request, user_id: str, asset_id: str, db: Session = Depends(get_db)):
    return allocate_address(db, user_id, asset_id)
