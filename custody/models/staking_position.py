import enum
from decimal import Decimal
from sqlalchemy import Column, Integer, String, Numeric, DateTime, Index
from custody.core.database import Base
from custody.models.base import TimestampMixin, enum_type, Money


class StakingStatus(str, enum.Enum):
    ACTIVE = "active"
    COMPLETED = "completed"


class StakingPosition(Base, TimestampMixin):
    __tablename__ = "staking_positions"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(64), nullable=False)
    # Product the position earns on, e.g. BTC.
    asset_id = Column(String(16), nullable=False)
    # Ledger balance the principal came from and rewards are paid to: the asset itself, or USD.
    ledger_asset_id = Column(String(16), nullable=False)
    principal = Column(Money(), nullable=False)
    # Fraction per period, e.g. 0.01 for 1% per period.
    rate = Column(Numeric(20, 10), nullable=False)
    period_seconds = Column(Integer, nullable=False)
    started_at = Column(DateTime(timezone=True), nullable=False)
    last_reward_at = Column(DateTime(timezone=True), nullable=False)
    # Reward owed for every whole period between started_at and last_reward_at.
    accrued_rewards = Column(Money(), default=0, nullable=False)
    claimed_rewards = Column(Money(), default=0, nullable=False)
    status = Column(enum_type(StakingStatus, "stakingstatus"), nullable=False, default=StakingStatus.ACTIVE)
    ends_at = Column(DateTime(timezone=True), nullable=True)

    @property
    def accumulated_rewards(self) -> Decimal:
        """Rewards accrued but not yet paid out."""
        return Decimal(self.accrued_rewards or 0) - Decimal(self.claimed_rewards or 0)


Index("ix_staking_positions_user_status", StakingPosition.user_id, StakingPosition.status)
