from fastapi import APIRouter
from custody.api.v1.endpoints import wallets, balances, transactions, staking

router = APIRouter()

router.include_router(wallets.router, prefix="/wallets", tags=["wallets"])
router.include_router(balances.router, prefix="/balances", tags=["balances"])
router.include_router(transactions.router, prefix="/transactions", tags=["transactions"])
router.include_router(staking.router, prefix="/staking", tags=["staking"])
