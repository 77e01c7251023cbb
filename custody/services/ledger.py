import logging
import secrets
from decimal import Decimal

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from custody.core.assets import get_asset, normalize_asset_id, quantize
from custody.core.database import insert_ignore
from custody.core.errors import ConcurrentUpdate, DuplicateEvent, InsufficientFunds
from custody.models import LedgerBalance, LedgerTransaction, TransactionStatus, TransactionType

logger = logging.getLogger(__name__)

BALANCE_SWAP_ATTEMPTS = 8

REFERENCE_PREFIXES = {
    TransactionType.DEPOSIT: "DEP",
    TransactionType.STAKE: "STK",
    TransactionType.UNSTAKE: "UNS",
    TransactionType.REWARD: "RWD",
}


def new_reference(tx_type: TransactionType) -> str:
    return f"{REFERENCE_PREFIXES[tx_type]}_{secrets.token_hex(8)}"


def _checked_amount(asset_id: str, amount) -> Decimal:
    value = quantize(asset_id, amount)
    if value <= 0:
        raise ValueError(f"Ledger amount must be positive, got {amount!r}")
    return value


def _ensure_balance_row(db: Session, user_id: str, asset_id: str) -> None:
    insert_ignore(
        db,
        LedgerBalance,
        {"user_id": user_id, "asset_id": asset_id, "amount": 0},
        index_elements=["user_id", "asset_id"],
    )


def _current_amount(db: Session, user_id: str, asset_id: str) -> Decimal | None:
    return (
        db.query(LedgerBalance.amount)
        .filter(LedgerBalance.user_id == user_id, LedgerBalance.asset_id == asset_id)
        .scalar()
    )


def _swap_balance(db: Session, user_id: str, asset_id: str, delta: Decimal) -> Decimal:
    """Apply ``delta`` with a compare-and-swap on the stored amount; returns the new balance.

    Money columns only support equality in SQL, so the sum is computed here
    and the UPDATE only lands if the row still holds the amount that was read.
    """
    for _ in range(BALANCE_SWAP_ATTEMPTS):
        current = _current_amount(db, user_id, asset_id)
        if current is None:
            if delta < 0:
                current = Decimal("0")
                break
            _ensure_balance_row(db, user_id, asset_id)
            continue
        updated_amount = current + delta
        if updated_amount < 0:
            break
        updated = db.query(LedgerBalance).filter(
            LedgerBalance.user_id == user_id,
            LedgerBalance.asset_id == asset_id,
            LedgerBalance.amount == current,
        ).update(
            {LedgerBalance.amount: updated_amount},
            synchronize_session=False,
        )
        if updated == 1:
            return updated_amount
        logger.debug("Balance %s/%s moved underneath us; retrying", user_id, asset_id)
    else:
        raise ConcurrentUpdate(f"Could not update {asset_id} balance for user {user_id}; retry")

    available = quantize(asset_id, current)
    raise InsufficientFunds(
        f"Insufficient {asset_id} balance. Available: {available}, required: {-delta}",
        available=available,
        required=-delta,
    )


def _record(
    db: Session,
    *,
    user_id: str,
    asset_id: str,
    amount: Decimal,
    tx_type: TransactionType,
    status: TransactionStatus,
    dedup_key: str | None,
    description: str | None,
    meta: dict | None,
) -> LedgerTransaction:
    entry = LedgerTransaction(
        user_id=user_id,
        tx_type=tx_type,
        asset_id=asset_id,
        amount=amount,
        status=status,
        dedup_key=dedup_key,
        reference=new_reference(tx_type),
        description=description,
        meta=meta,
    )
    db.add(entry)
    return entry


def credit(
    db: Session,
    user_id: str,
    asset_id: str,
    amount,
    tx_type: TransactionType,
    *,
    dedup_key: str | None = None,
    description: str | None = None,
    meta: dict | None = None,
) -> LedgerTransaction:
    """Atomically add ``amount`` to the balance and append its transaction row.

    Does not commit. When ``dedup_key`` was already recorded the session is
    rolled back and DuplicateEvent is raised.
    """
    asset_id = normalize_asset_id(asset_id)
    get_asset(asset_id)
    amount = _checked_amount(asset_id, amount)

    if dedup_key and db.query(LedgerTransaction.id).filter(LedgerTransaction.dedup_key == dedup_key).first():
        db.rollback()
        raise DuplicateEvent(dedup_key)

    entry = _record(
        db,
        user_id=user_id,
        asset_id=asset_id,
        amount=amount,
        tx_type=tx_type,
        status=TransactionStatus.COMPLETED,
        dedup_key=dedup_key,
        description=description,
        meta=meta,
    )
    try:
        # Flush the transaction row first so a dedup race fails before the balance moves.
        db.flush()
    except IntegrityError as exc:
        db.rollback()
        if dedup_key:
            raise DuplicateEvent(dedup_key) from exc
        raise

    _swap_balance(db, user_id, asset_id, amount)
    logger.debug("Credit %s %s to user %s (%s, ref %s)", amount, asset_id, user_id, tx_type.value, entry.reference)
    return entry


def debit(
    db: Session,
    user_id: str,
    asset_id: str,
    amount,
    tx_type: TransactionType,
    *,
    description: str | None = None,
    meta: dict | None = None,
) -> LedgerTransaction:
    """Atomically subtract ``amount``; raises InsufficientFunds instead of going negative.

    Does not commit.
    """
    asset_id = normalize_asset_id(asset_id)
    get_asset(asset_id)
    amount = _checked_amount(asset_id, amount)

    _swap_balance(db, user_id, asset_id, -amount)
    entry = _record(
        db,
        user_id=user_id,
        asset_id=asset_id,
        amount=amount,
        tx_type=tx_type,
        status=TransactionStatus.COMPLETED,
        dedup_key=None,
        description=description,
        meta=meta,
    )
    db.flush()
    logger.debug("Debit %s %s from user %s (%s, ref %s)", amount, asset_id, user_id, tx_type.value, entry.reference)
    return entry


def get_balance(db: Session, user_id: str, asset_id: str) -> Decimal:
    asset_id = normalize_asset_id(asset_id)
    value = (
        db.query(LedgerBalance.amount)
        .filter(LedgerBalance.user_id == user_id, LedgerBalance.asset_id == asset_id)
        .scalar()
    )
    return quantize(asset_id, value or 0)


def list_balances(db: Session, user_id: str) -> list[LedgerBalance]:
    return (
        db.query(LedgerBalance)
        .filter(LedgerBalance.user_id == user_id)
        .order_by(LedgerBalance.asset_id)
        .all()
    )


def list_transactions(db: Session, user_id: str, limit: int = 50, offset: int = 0) -> list[LedgerTransaction]:
    limit = min(int(limit), 200)
    offset = max(0, int(offset))
    if limit <= 0:
        return []
    return (
        db.query(LedgerTransaction)
        .filter(LedgerTransaction.user_id == user_id)
        .order_by(LedgerTransaction.id.desc())
        .offset(offset)
        .limit(limit)
        .all()
    )

