from custody.models.wallet_allocation import WalletAllocation
from custody.models.derivation_counter import DerivationCounter
from custody.models.ledger_balance import LedgerBalance
from custody.models.ledger_transaction import LedgerTransaction, TransactionStatus, TransactionType
from custody.models.staking_position import StakingPosition, StakingStatus

__all__ = [
    "WalletAllocation",
    "DerivationCounter",
    "LedgerBalance",
    "LedgerTransaction",
    "TransactionStatus",
    "TransactionType",
    "StakingPosition",
    "StakingStatus",
]
