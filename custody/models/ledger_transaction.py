import enum
from sqlalchemy import Column, Integer, String, Index, JSON
from custody.core.database import Base
from custody.models.base import TimestampMixin, enum_type, Money


class TransactionType(str, enum.Enum):
    DEPOSIT = "deposit"
    STAKE = "stake"
    UNSTAKE = "unstake"
    REWARD = "reward"


class TransactionStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class LedgerTransaction(Base, TimestampMixin):
    __tablename__ = "ledger_transactions"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(64), nullable=False)
    tx_type = Column(enum_type(TransactionType, "ledgertransactiontype"), nullable=False)
    asset_id = Column(String(16), nullable=False)
    amount = Column(Money(), nullable=False)
    status = Column(enum_type(TransactionStatus, "ledgertransactionstatus"), nullable=False, default=TransactionStatus.COMPLETED)
    dedup_key = Column(String(255), nullable=True, unique=True)
    reference = Column(String(64), nullable=True)
    description = Column(String(255), nullable=True)
    meta = Column(JSON, nullable=True)


Index("ix_ledger_transactions_user_created", LedgerTransaction.user_id, LedgerTransaction.created_at)
Index("ix_ledger_transactions_reference", LedgerTransaction.reference)
