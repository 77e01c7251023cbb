from functools import lru_cache

from custody.core.config import get_settings
from custody.core.database import SessionLocal
from custody.services.balance_provider import get_balance_provider
from custody.services.notifications import get_notification_sink
from custody.services.reconciliation import DepositReconciler


@lru_cache
def get_reconciler() -> DepositReconciler:
    settings = get_settings()
    return DepositReconciler(
        SessionLocal,
        get_balance_provider(),
        notifier=get_notification_sink(),
        denomination=settings.ledger_denomination,
        max_workers=settings.reconcile_max_workers,
    )
