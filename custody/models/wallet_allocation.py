from sqlalchemy import Column, Integer, String, DateTime, Text, Index, UniqueConstraint
from custody.core.database import Base
from custody.models.base import TimestampMixin, Money


class WalletAllocation(Base, TimestampMixin):
    __tablename__ = "wallet_allocations"
    __table_args__ = (
        UniqueConstraint("user_id", "asset_id", name="uq_wallet_allocations_user_asset"),
        UniqueConstraint("namespace", "derivation_index", name="uq_wallet_allocations_namespace_index"),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(64), nullable=False)
    asset_id = Column(String(16), nullable=False)
    namespace = Column(String(16), nullable=False)
    derivation_index = Column(Integer, nullable=False)
    hd_path = Column(String(64), nullable=False)
    address = Column(String(128), nullable=False, unique=True)
    private_key_encrypted = Column(Text, nullable=True)
    last_observed_balance = Column(Money(), default=0, nullable=False)
    last_checked_at = Column(DateTime(timezone=True), nullable=True)


Index("ix_wallet_allocations_user_id", WalletAllocation.user_id)
