import logging

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from custody.core.assets import deposit_assets, get_asset
from custody.core.database import insert_ignore
from custody.core.errors import ConfigurationError
from custody.core.secrets import KeyCipher, get_secret_provider
from custody.models import DerivationCounter, WalletAllocation
from custody.services.derivation import derive_address, get_master_seed

logger = logging.getLogger(__name__)


def _find_allocation(db: Session, user_id: str, asset_id: str) -> WalletAllocation | None:
    return (
        db.query(WalletAllocation)
        .filter(WalletAllocation.user_id == user_id, WalletAllocation.asset_id == asset_id)
        .first()
    )


def _default_cipher() -> KeyCipher | None:
    key = get_secret_provider().encryption_key()
    return KeyCipher(key) if key else None


def reserve_index(db: Session, namespace: str) -> int:
    """Atomically take the next derivation index of ``namespace`` and commit it.

    The UPDATE ... RETURNING runs as a single statement, so concurrent callers
    (threads or processes) never observe the same value. A reserved index that
    is never persisted stays burned.
    """
    insert_ignore(db, DerivationCounter, {"namespace": namespace, "next_index": 0}, index_elements=["namespace"])
    stmt = (
        update(DerivationCounter)
        .where(DerivationCounter.namespace == namespace)
        .values(next_index=DerivationCounter.next_index + 1)
        .returning(DerivationCounter.next_index)
        .execution_options(synchronize_session=False)
    )
    next_index = db.execute(stmt).scalar_one()
    db.commit()
    return int(next_index) - 1


def allocate_address(
    db: Session,
    user_id: str,
    asset_id: str,
    *,
    seed: bytes | None = None,
    cipher: KeyCipher | None = None,
) -> WalletAllocation:
    spec = get_asset(asset_id)
    if not spec.is_depositable:
        raise ConfigurationError(f"Asset {spec.symbol} does not support deposit addresses")

    existing = _find_allocation(db, user_id, spec.symbol)
    if existing:
        return existing

    seed = seed or get_master_seed()
    if cipher is None:
        cipher = _default_cipher()

    index = reserve_index(db, spec.namespace.value)
    derived = derive_address(seed, spec.symbol, index)
    allocation = WalletAllocation(
        user_id=user_id,
        asset_id=spec.symbol,
        namespace=spec.namespace.value,
        derivation_index=index,
        hd_path=derived.hd_path,
        address=derived.address,
        private_key_encrypted=cipher.encrypt(derived.private_key) if cipher else None,
        last_observed_balance=0,
    )
    db.add(allocation)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        winner = _find_allocation(db, user_id, spec.symbol)
        if winner is None:
            raise
        logger.info(
            "Concurrent %s allocation for user %s; index %s burned, returning index %s",
            spec.symbol,
            user_id,
            index,
            winner.derivation_index,
        )
        return winner

    db.refresh(allocation)
    logger.info(
        "Allocated %s address %s (path %s) to user %s",
        spec.symbol,
        allocation.address,
        allocation.hd_path,
        user_id,
    )
    return allocation


def allocate_all(db: Session, user_id: str, **kwargs) -> list[WalletAllocation]:
    return [allocate_address(db, user_id, spec.symbol, **kwargs) for spec in deposit_assets()]


def list_allocations(db: Session, user_id: str) -> list[WalletAllocation]:
    return (
        db.query(WalletAllocation)
        .filter(WalletAllocation.user_id == user_id)
        .order_by(WalletAllocation.asset_id)
        .all()
    )


def decrypt_private_key(allocation: WalletAllocation, cipher: KeyCipher | None = None) -> str:
    cipher = cipher or _default_cipher()
    if cipher is None or not allocation.private_key_encrypted:
        raise ConfigurationError(f"No stored key for allocation {allocation.id}")
    return cipher.decrypt(allocation.private_key_encrypted)
