"""Staking sub-ledger.

A position locks principal that was debited from the user's ledger balance
(the staked asset itself, or USD when the ledger is USD-denominated) and is
owed ``principal * rate`` for every whole period elapsed since
``started_at``. Partial periods never earn anything. The amount owed is
recomputed from the total number of periods each time, so it does not
depend on how often accrual runs.

Every state change is gated by a conditional UPDATE, so racing callers
never apply the same change twice.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from functools import lru_cache

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from custody.core.assets import USD, get_asset, normalize_asset_id, quantize
from custody.core.config import get_settings, parse_json_object
from custody.core.errors import (
    AlreadyClosed,
    ConcurrentUpdate,
    ConfigurationError,
    InsufficientFunds,
    PositionNotFound,
    StakingUnavailable,
)
from custody.models import StakingPosition, StakingStatus, TransactionType
from custody.services import ledger

logger = logging.getLogger(__name__)

WEEK_SECONDS = 7 * 24 * 60 * 60
PAYOUT_ATTEMPTS = 3


@dataclass(frozen=True)
class StakingProduct:
    asset_id: str
    # Fraction of principal paid per period.
    rate: Decimal
    period_seconds: int = WEEK_SECONDS
    min_amount: Decimal = Decimal("0")


DEFAULT_PRODUCTS: dict[str, StakingProduct] = {
    "BTC": StakingProduct("BTC", Decimal("0.005"), WEEK_SECONDS, Decimal("0.0001")),
    "ETH": StakingProduct("ETH", Decimal("0.007"), WEEK_SECONDS, Decimal("0.001")),
    "BNB": StakingProduct("BNB", Decimal("0.009"), WEEK_SECONDS, Decimal("0.01")),
    "USDT": StakingProduct("USDT", Decimal("0.004"), WEEK_SECONDS, Decimal("1")),
}


@dataclass
class StakingOverview:
    positions: list[StakingPosition]
    total_staked: dict[str, Decimal] = field(default_factory=dict)
    total_rewards: dict[str, Decimal] = field(default_factory=dict)
    estimated_rewards_per_period: dict[str, Decimal] = field(default_factory=dict)


def _decimal(value, label: str) -> Decimal:
    try:
        parsed = Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise ConfigurationError(f"Invalid staking {label}: {value!r}") from exc
    if not parsed.is_finite() or parsed < 0:
        raise ConfigurationError(f"Invalid staking {label}: {value!r}")
    return parsed


def parse_staking_products(raw: str) -> dict[str, StakingProduct]:
    """Merge ``STAKING_RATES`` overrides into the default products.

    ``{"BTC": {"rate": "0.005", "period_seconds": 604800, "min_amount": "0.0001"}}``;
    an asset mapped to ``null`` is withdrawn from staking.
    """
    products = dict(DEFAULT_PRODUCTS)
    for key, item in parse_json_object(raw).items():
        asset_id = get_asset(key).symbol
        if item is None:
            products.pop(asset_id, None)
            continue
        if not isinstance(item, dict) or "rate" not in item:
            raise ConfigurationError(f"Staking product for {asset_id} needs a rate")
        base = products.get(asset_id)
        period_seconds = int(item.get("period_seconds") or (base.period_seconds if base else WEEK_SECONDS))
        if period_seconds <= 0:
            raise ConfigurationError(f"Staking period for {asset_id} must be positive")
        products[asset_id] = StakingProduct(
            asset_id,
            _decimal(item["rate"], "rate"),
            period_seconds,
            _decimal(item.get("min_amount", base.min_amount if base else 0), "min_amount"),
        )
    return products


@lru_cache
def get_staking_products() -> dict[str, StakingProduct]:
    return parse_staking_products(get_settings().staking_rates)


def get_product(asset_id: str, products: dict[str, StakingProduct] | None = None) -> StakingProduct:
    products = get_staking_products() if products is None else products
    product = products.get(normalize_asset_id(asset_id))
    if product is None:
        raise StakingUnavailable(f"Staking is not available for {asset_id}")
    return product


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; everything stored here is UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _get_position(db: Session, position_id: int) -> StakingPosition:
    position = db.get(StakingPosition, position_id)
    if position is None:
        raise PositionNotFound(f"Staking position {position_id} not found")
    return position


def _ledger_asset(product: StakingProduct, ledger_asset_id: str | None) -> str:
    if ledger_asset_id is None:
        usd_ledger = get_settings().ledger_denomination.strip().lower() == "usd"
        return USD if usd_ledger else product.asset_id
    ledger_asset_id = normalize_asset_id(ledger_asset_id)
    if ledger_asset_id not in (product.asset_id, USD):
        raise StakingUnavailable(f"{product.asset_id} staking cannot be funded from {ledger_asset_id}")
    return ledger_asset_id


def open_stake(
    db: Session,
    user_id: str,
    asset_id: str,
    amount,
    *,
    ledger_asset_id: str | None = None,
    now: datetime | None = None,
    products: dict[str, StakingProduct] | None = None,
) -> StakingPosition:
    """Move ``amount`` of the funding balance into a new position on ``asset_id``.

    ``ledger_asset_id`` defaults to the ledger denomination: the asset itself,
    or USD, in which case ``amount`` is a USD amount and the asset's minimum
    does not apply.
    """
    product = get_product(asset_id, products)
    funding = _ledger_asset(product, ledger_asset_id)
    amount = quantize(funding, amount)
    if amount <= 0:
        raise ValueError("Stake amount must be positive")
    if funding == product.asset_id and amount < product.min_amount:
        raise StakingUnavailable(f"Minimum {product.asset_id} stake is {product.min_amount}")
    now = _as_utc(now or _utcnow())

    try:
        entry = ledger.debit(
            db,
            user_id,
            funding,
            amount,
            TransactionType.STAKE,
            description=f"Staked {amount} {funding} in {product.asset_id} at {product.rate} per period",
        )
    except InsufficientFunds:
        db.rollback()
        raise

    position = StakingPosition(
        user_id=user_id,
        asset_id=product.asset_id,
        ledger_asset_id=funding,
        principal=amount,
        rate=product.rate,
        period_seconds=product.period_seconds,
        started_at=now,
        last_reward_at=now,
        accrued_rewards=0,
        claimed_rewards=0,
        status=StakingStatus.ACTIVE,
    )
    db.add(position)
    db.flush()
    entry.meta = {"position_id": position.id, "asset": product.asset_id}
    db.commit()
    db.refresh(position)
    logger.info(
        "Opened staking position %s: %s %s in %s for user %s",
        position.id,
        amount,
        funding,
        product.asset_id,
        user_id,
    )
    return position


def rewards_owed(position: StakingPosition, periods: int) -> Decimal:
    """Total reward for ``periods`` whole periods, rounded down once."""
    return quantize(
        position.ledger_asset_id,
        Decimal(str(position.principal)) * Decimal(str(position.rate)) * periods,
    )


def accrue(db: Session, position: StakingPosition, now: datetime | None = None) -> Decimal:
    """Bring ``accrued_rewards`` up to the whole periods elapsed by ``now``.

    Returns the reward added by this call, zero when there was nothing to add
    or another caller accrued the same periods first. Does not commit.
    """
    if position.status != StakingStatus.ACTIVE:
        return Decimal("0")
    now = _as_utc(now or _utcnow())
    started = _as_utc(position.started_at)
    previous = position.last_reward_at
    period = timedelta(seconds=int(position.period_seconds))
    accrued_periods = (_as_utc(previous) - started) // period
    total_periods = (now - started) // period
    if total_periods <= accrued_periods:
        return Decimal("0")

    owed = rewards_owed(position, total_periods)
    reward = owed - Decimal(str(position.accrued_rewards))
    stmt = (
        update(StakingPosition)
        .where(
            StakingPosition.id == position.id,
            StakingPosition.status == StakingStatus.ACTIVE,
            StakingPosition.last_reward_at == previous,
        )
        .values(
            last_reward_at=started + period * total_periods,
            accrued_rewards=owed,
        )
        .execution_options(synchronize_session=False)
    )
    result = db.execute(stmt)
    db.expire(position)
    if result.rowcount != 1:
        logger.debug("Position %s was accrued concurrently; skipping", position.id)
        return Decimal("0")
    logger.debug(
        "Position %s accrued %s %s (%s period(s) in total)",
        position.id,
        reward,
        position.ledger_asset_id,
        total_periods,
    )
    return reward


def _pay_out(db: Session, position: StakingPosition, values: dict) -> Decimal | None:
    """Mark everything accrued so far as paid, plus ``values``; None if another writer got there first."""
    db.refresh(position)
    accrued = Decimal(str(position.accrued_rewards))
    claimed = Decimal(str(position.claimed_rewards))
    result = db.execute(
        update(StakingPosition)
        .where(
            StakingPosition.id == position.id,
            StakingPosition.status == StakingStatus.ACTIVE,
            StakingPosition.claimed_rewards == claimed,
        )
        .values(claimed_rewards=accrued, **values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        return None
    return accrued - claimed


def close_stake(db: Session, position_id: int, now: datetime | None = None) -> dict:
    now = _as_utc(now or _utcnow())
    position = _get_position(db, position_id)
    for _ in range(PAYOUT_ATTEMPTS):
        if position.status != StakingStatus.ACTIVE:
            raise AlreadyClosed(f"Staking position {position_id} is already closed")
        accrue(db, position, now)
        rewards = _pay_out(db, position, {"status": StakingStatus.COMPLETED, "ends_at": now})
        if rewards is not None:
            break
        # Closed or claimed concurrently; look again.
        db.rollback()
        db.refresh(position)
    else:
        raise ConcurrentUpdate(f"Could not close staking position {position_id}; retry")

    db.refresh(position)
    asset_id = position.ledger_asset_id
    principal = quantize(asset_id, position.principal)
    meta = {"position_id": position.id, "asset": position.asset_id}
    ledger.credit(
        db,
        position.user_id,
        asset_id,
        principal,
        TransactionType.UNSTAKE,
        description=f"Unstaked {principal} {asset_id} from {position.asset_id}",
        meta=meta,
    )
    if rewards > 0:
        ledger.credit(
            db,
            position.user_id,
            asset_id,
            rewards,
            TransactionType.REWARD,
            description=f"Staking rewards for position {position.id}",
            meta=meta,
        )
    db.commit()
    logger.info(
        "Closed staking position %s for user %s: principal=%s rewards=%s %s",
        position_id,
        position.user_id,
        principal,
        rewards,
        asset_id,
    )
    return {
        "position_id": position_id,
        "asset_id": asset_id,
        "principal": principal,
        "rewards": rewards,
    }


def claim_rewards(db: Session, position_id: int, now: datetime | None = None) -> Decimal:
    """Pay out unclaimed rewards while leaving the principal staked."""
    position = _get_position(db, position_id)
    if position.status != StakingStatus.ACTIVE:
        raise AlreadyClosed(f"Staking position {position_id} is already closed")

    accrue(db, position, now)
    db.refresh(position)
    if position.accumulated_rewards <= 0:
        db.commit()
        return Decimal("0")

    rewards = _pay_out(db, position, {})
    if rewards is None:
        db.rollback()
        logger.info("Rewards of position %s were claimed or settled concurrently", position_id)
        return Decimal("0")

    ledger.credit(
        db,
        position.user_id,
        position.ledger_asset_id,
        rewards,
        TransactionType.REWARD,
        description=f"Staking rewards for position {position.id}",
        meta={"position_id": position.id, "asset": position.asset_id, "claimed": True},
    )
    db.commit()
    logger.info("Paid %s %s rewards from position %s", rewards, position.ledger_asset_id, position_id)
    return rewards


def list_positions(db: Session, user_id: str, status: StakingStatus | None = None) -> list[StakingPosition]:
    query = db.query(StakingPosition).filter(StakingPosition.user_id == user_id)
    if status is not None:
        query = query.filter(StakingPosition.status == status)
    return query.order_by(StakingPosition.id.desc()).all()


def get_staking_positions(db: Session, user_id: str, now: datetime | None = None) -> StakingOverview:
    """Accrue the user's active positions and summarize them per ledger asset."""
    now = _as_utc(now or _utcnow())
    for position in list_positions(db, user_id, StakingStatus.ACTIVE):
        accrue(db, position, now)
    db.commit()

    overview = StakingOverview(positions=list_positions(db, user_id))
    for position in overview.positions:
        if position.status != StakingStatus.ACTIVE:
            continue
        asset_id = position.ledger_asset_id
        principal = quantize(asset_id, position.principal)
        rewards = quantize(asset_id, position.accumulated_rewards)
        overview.total_rewards[asset_id] = overview.total_rewards.get(asset_id, Decimal("0")) + rewards
        per_period = quantize(asset_id, principal * Decimal(str(position.rate)))
        overview.total_staked[asset_id] = overview.total_staked.get(asset_id, Decimal("0")) + principal
        overview.estimated_rewards_per_period[asset_id] = (
            overview.estimated_rewards_per_period.get(asset_id, Decimal("0")) + per_period
        )
    return overview


def accrue_all(session_factory, now: datetime | None = None) -> int:
    """Accrue every active position; returns how many received a reward."""
    now = _as_utc(now or _utcnow())
    db = session_factory()
    try:
        position_ids = [
            row.id
            for row in db.query(StakingPosition.id)
            .filter(StakingPosition.status == StakingStatus.ACTIVE)
            .order_by(StakingPosition.id)
            .all()
        ]
    finally:
        db.close()

    rewarded = 0
    for position_id in position_ids:
        db = session_factory()
        try:
            position = db.get(StakingPosition, position_id)
            if position is None:
                continue
            if accrue(db, position, now) > 0:
                rewarded += 1
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            logger.error("Accrual of staking position %s failed: %s", position_id, exc)
        finally:
            db.close()
    if rewarded:
        logger.info("Accrued rewards on %s staking position(s)", rewarded)
    return rewarded
