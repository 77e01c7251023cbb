"""initial

Revision ID: 0001_initial
Revises: 
Create Date: 2026-10-19
"""
from alembic import op
import sqlalchemy as sa

revision = "0001_initial"
down_revision = None
branch_labels = None
depends_on = None

MONEY = sa.Numeric(38, 18)


def _timestamps():
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    ]


def upgrade():
    op.create_table(
        "derivation_counters",
        sa.Column("namespace", sa.String(16), primary_key=True),
        sa.Column("next_index", sa.Integer, nullable=False, server_default="0"),
        *_timestamps(),
    )

    op.create_table(
        "wallet_allocations",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("asset_id", sa.String(16), nullable=False),
        sa.Column("namespace", sa.String(16), nullable=False),
        sa.Column("derivation_index", sa.Integer, nullable=False),
        sa.Column("hd_path", sa.String(64), nullable=False),
        sa.Column("address", sa.String(128), nullable=False),
        sa.Column("private_key_encrypted", sa.Text, nullable=True),
        sa.Column("last_observed_balance", MONEY, nullable=False, server_default="0"),
        sa.Column("last_checked_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("user_id", "asset_id", name="uq_wallet_allocations_user_asset"),
        sa.UniqueConstraint("namespace", "derivation_index", name="uq_wallet_allocations_namespace_index"),
        sa.UniqueConstraint("address", name="uq_wallet_allocations_address"),
    )
    op.create_index("ix_wallet_allocations_user_id", "wallet_allocations", ["user_id"], unique=False)

    op.create_table(
        "ledger_balances",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("asset_id", sa.String(16), nullable=False),
        sa.Column("amount", MONEY, nullable=False, server_default="0"),
        *_timestamps(),
        sa.UniqueConstraint("user_id", "asset_id", name="uq_ledger_balances_user_asset"),
        sa.CheckConstraint("amount >= 0", name="ck_ledger_balances_amount_non_negative"),
    )
    op.create_index("ix_ledger_balances_user_id", "ledger_balances", ["user_id"], unique=False)

    op.create_table(
        "ledger_transactions",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column(
            "tx_type",
            sa.Enum("deposit", "stake", "unstake", "reward", name="ledgertransactiontype"),
            nullable=False,
        ),
        sa.Column("asset_id", sa.String(16), nullable=False),
        sa.Column("amount", MONEY, nullable=False),
        sa.Column(
            "status",
            sa.Enum("pending", "completed", "failed", name="ledgertransactionstatus"),
            nullable=False,
        ),
        sa.Column("dedup_key", sa.String(255), nullable=True),
        sa.Column("reference", sa.String(64), nullable=True),
        sa.Column("description", sa.String(255), nullable=True),
        sa.Column("meta", sa.JSON, nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("dedup_key", name="uq_ledger_transactions_dedup_key"),
    )
    op.create_index("ix_ledger_transactions_user_created", "ledger_transactions", ["user_id", "created_at"], unique=False)
    op.create_index("ix_ledger_transactions_reference", "ledger_transactions", ["reference"], unique=False)

    op.create_table(
        "staking_positions",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("asset_id", sa.String(16), nullable=False),
        sa.Column("ledger_asset_id", sa.String(16), nullable=False),
        sa.Column("principal", MONEY, nullable=False),
        sa.Column("rate", sa.Numeric(20, 10), nullable=False),
        sa.Column("period_seconds", sa.Integer, nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_reward_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("accrued_rewards", MONEY, nullable=False, server_default="0"),
        sa.Column("claimed_rewards", MONEY, nullable=False, server_default="0"),
        sa.Column("status", sa.Enum("active", "completed", name="stakingstatus"), nullable=False),
        sa.Column("ends_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_staking_positions_user_status", "staking_positions", ["user_id", "status"], unique=False)


def downgrade():
    op.drop_table("staking_positions")
    op.drop_table("ledger_transactions")
    op.drop_table("ledger_balances")
    op.drop_table("wallet_allocations")
    op.drop_table("derivation_counters")
    op.execute("DROP TYPE IF EXISTS stakingstatus")
    op.execute("DROP TYPE IF EXISTS ledgertransactionstatus")
    op.execute("DROP TYPE IF EXISTS ledgertransactiontype")
