"""init advance tables

Revision ID: 20261019_0001
Revises:
Create Date: 2026-10-19
"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


def _ts(name: str, nullable: bool = True, server_default: bool = False) -> sa.Column:
    return sa.Column(
        name,
        sa.DateTime(timezone=True),
        nullable=nullable,
        server_default=sa.func.now() if server_default else None,
    )


def _money(name: str, nullable: bool = False) -> sa.Column:
    # Stored in cents.
    return sa.Column(name, sa.BigInteger(), nullable=nullable)


def _pct(name: str) -> sa.Column:
    return sa.Column(name, sa.Numeric(9, 4), nullable=False)


def upgrade() -> None:
    op.create_table(
        "orders",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("order_number", sa.String(length=50), nullable=False, unique=True),
        sa.Column("producer_id", sa.String(length=36), nullable=False),
        sa.Column("buyer_id", sa.String(length=36), nullable=False),
        _money("total_amount"),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("advance_eligible", sa.Boolean(), nullable=False),
        sa.Column("advance_requested", sa.Boolean(), nullable=False),
        _ts("advance_requested_at"),
        sa.Column("expected_delivery_date", sa.Date(), nullable=False),
        _ts("created_at", server_default=True),
    )
    op.create_index("ix_orders_producer_id", "orders", ["producer_id"])
    op.create_index("ix_orders_buyer_id", "orders", ["buyer_id"])

    op.create_table(
        "liquidity_pools",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("status", sa.String(length=6), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        _money("available_capital"),
        _ts("created_at", server_default=True),
    )
    op.create_index("ix_liquidity_pools_status", "liquidity_pools", ["status"])

    op.create_table(
        "contract_number_sequences",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("prefix", sa.String(length=8), nullable=False),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column("last_seq", sa.Integer(), nullable=False),
        _ts("updated_at", nullable=False, server_default=True),
        sa.UniqueConstraint("prefix", "year", name="uq_contract_seq_prefix_year"),
    )

    op.create_table(
        "advance_contracts",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("contract_number", sa.String(length=20), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("approval_method", sa.String(length=9), nullable=False),
        sa.Column("farmer_id", sa.String(length=36), nullable=False),
        sa.Column("buyer_id", sa.String(length=36), nullable=False),
        sa.Column("order_id", sa.String(length=36), sa.ForeignKey("orders.id"), nullable=False),
        sa.Column("pool_id", sa.String(length=36), sa.ForeignKey("liquidity_pools.id"), nullable=True),
        sa.Column("currency", sa.String(length=3), nullable=False),
        _money("order_amount"),
        _pct("advance_percentage"),
        _money("advance_amount"),
        _pct("farmer_fee_percentage"),
        _money("farmer_fee_amount"),
        _pct("buyer_fee_percentage"),
        _money("buyer_fee_amount"),
        _money("platform_fee_total"),
        _money("net_to_farmer"),
        _money("implicit_interest"),
        _money("cost_of_capital"),
        _money("risk_provision"),
        _money("operating_costs"),
        _money("gross_profit"),
        _pct("profit_margin"),
        _money("amount_repaid"),
        _money("amount_written_off"),
        _money("remaining_balance"),
        sa.Column("credit_score", sa.Integer(), nullable=False),
        sa.Column("risk_tier", sa.String(length=1), nullable=False),
        sa.Column("fraud_score", sa.Integer(), nullable=True),
        sa.Column("disbursement_method", sa.String(length=14), nullable=True),
        sa.Column("disbursement_reference", sa.String(length=128), nullable=True),
        _money("disbursement_fee", nullable=True),
        sa.Column("rejection_reason", sa.Text(), nullable=True),
        _ts("requested_at", nullable=False),
        _ts("approved_at"),
        _ts("disbursed_at"),
        sa.Column("due_date", sa.Date(), nullable=False),
        sa.Column("expected_delivery_date", sa.Date(), nullable=False),
        _ts("repaid_at"),
        _ts("defaulted_at"),
        _ts("created_at", server_default=True),
        _ts("updated_at", server_default=True),
        sa.UniqueConstraint("order_id", name="uq_advance_contracts_order_id"),
        sa.CheckConstraint("remaining_balance >= 0", name="ck_advance_contracts_remaining_nonneg"),
    )
    op.create_index(
        "ix_advance_contracts_contract_number", "advance_contracts", ["contract_number"], unique=True
    )
    op.create_index("ix_advance_contracts_status", "advance_contracts", ["status"])
    op.create_index("ix_advance_contracts_farmer_id", "advance_contracts", ["farmer_id"])
    op.create_index("ix_advance_contracts_buyer_id", "advance_contracts", ["buyer_id"])
    op.create_index("ix_advance_contracts_pool_id", "advance_contracts", ["pool_id"])

    op.create_table(
        "advance_status_history",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "contract_id", sa.String(length=36), sa.ForeignKey("advance_contracts.id"), nullable=False
        ),
        sa.Column("from_status", sa.String(length=32), nullable=True),
        sa.Column("to_status", sa.String(length=32), nullable=False),
        sa.Column("changed_by", sa.String(length=64), nullable=False),
        sa.Column("reason", sa.Text(), nullable=True),
        _ts("created_at", nullable=False, server_default=True),
    )
    op.create_index(
        "ix_advance_status_history_contract_id", "advance_status_history", ["contract_id"]
    )

    op.create_table(
        "advance_transactions",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("transaction_number", sa.String(length=40), nullable=False, unique=True),
        sa.Column(
            "contract_id", sa.String(length=36), sa.ForeignKey("advance_contracts.id"), nullable=False
        ),
        sa.Column("type", sa.String(length=17), nullable=False),
        _money("amount"),
        _money("balance_before"),
        _money("balance_after"),
        sa.Column("payment_method", sa.String(length=14), nullable=True),
        sa.Column("payment_reference", sa.String(length=128), nullable=True),
        sa.Column("source", sa.String(length=64), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        _ts("created_at", nullable=False, server_default=True),
    )
    op.create_index("ix_advance_transactions_contract_id", "advance_transactions", ["contract_id"])


def downgrade() -> None:
    op.drop_index("ix_advance_transactions_contract_id", table_name="advance_transactions")
    op.drop_table("advance_transactions")
    op.drop_index("ix_advance_status_history_contract_id", table_name="advance_status_history")
    op.drop_table("advance_status_history")
    for name in (
        "ix_advance_contracts_pool_id",
        "ix_advance_contracts_buyer_id",
        "ix_advance_contracts_farmer_id",
        "ix_advance_contracts_status",
        "ix_advance_contracts_contract_number",
    ):
        op.drop_index(name, table_name="advance_contracts")
    op.drop_table("advance_contracts")
    op.drop_table("contract_number_sequences")
    op.drop_index("ix_liquidity_pools_status", table_name="liquidity_pools")
    op.drop_table("liquidity_pools")
    op.drop_index("ix_orders_buyer_id", table_name="orders")
    op.drop_index("ix_orders_producer_id", table_name="orders")
    op.drop_table("orders")
