from sqlalchemy import Column, Integer, String, CheckConstraint, UniqueConstraint
from custody.core.database import Base
from custody.models.base import TimestampMixin, Money


class LedgerBalance(Base, TimestampMixin):
    __tablename__ = "ledger_balances"
    __table_args__ = (
        UniqueConstraint("user_id", "asset_id", name="uq_ledger_balances_user_asset"),
        CheckConstraint("amount >= 0", name="ck_ledger_balances_amount_non_negative"),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(64), nullable=False, index=True)
    asset_id = Column(String(16), nullable=False)
    amount = Column(Money(), default=0, nullable=False)
