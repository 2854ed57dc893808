"""Baseline schema for mirrored markets, history, hedges and balances.

Revision ID: 20261019_baseline
Revises:
Create Date: 2026-10-19 00:00:00.000000
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "20261019_baseline"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "events",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column("title", sa.String(length=512), nullable=True),
        sa.Column("type", sa.String(length=32), nullable=False, server_default="BINARY"),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="ACTIVE"),
        sa.Column("source", sa.String(length=32), nullable=False, server_default="POLYMARKET"),
        sa.Column("liquidity_parameter", sa.Float(), nullable=False, server_default="20000"),
        sa.Column("q_yes", sa.Float(), nullable=False, server_default="0"),
        sa.Column("q_no", sa.Float(), nullable=False, server_default="0"),
        sa.Column("resolution_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("result", sa.String(length=64), nullable=True),
        sa.Column("resolution_source", sa.String(length=32), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index(
        "ix_events_source_status_resolution",
        "events",
        ["source", "status", "resolution_date"],
    )

    op.create_table(
        "outcomes",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column("event_id", sa.String(length=64), sa.ForeignKey("events.id", ondelete="CASCADE"), nullable=False),
        sa.Column("name", sa.String(length=256), nullable=False),
        sa.Column("probability", sa.Float(), nullable=False, server_default="0"),
        sa.Column("external_token_id", sa.String(length=128), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_outcomes_event_id", "outcomes", ["event_id"])
    op.create_index("ix_outcomes_event_token", "outcomes", ["event_id", "external_token_id"])

    op.create_table(
        "market_mappings",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column(
            "internal_event_id",
            sa.String(length=64),
            sa.ForeignKey("events.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("external_market_id", sa.String(length=128), nullable=False),
        sa.Column("yes_token_id", sa.String(length=128), nullable=True),
        sa.Column("no_token_id", sa.String(length=128), nullable=True),
        sa.Column("outcome_mapping", sa.JSON(), nullable=True),
        sa.Column("external_start_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_market_mappings_internal_event_id", "market_mappings", ["internal_event_id"])
    op.create_index("ix_market_mappings_active", "market_mappings", ["is_active"])

    op.create_table(
        "odds_history",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("event_id", sa.String(length=64), nullable=False),
        sa.Column("outcome_id", sa.String(length=64), nullable=False),
        sa.Column("external_token_id", sa.String(length=128), nullable=True),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column("price", sa.Float(), nullable=False),
        sa.Column("probability", sa.Float(), nullable=False),
        sa.Column("source", sa.String(length=32), nullable=False, server_default="POLYMARKET"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("event_id", "outcome_id", "timestamp", name="uq_odds_history_bucket"),
    )
    op.create_index("ix_odds_history_event_ts", "odds_history", ["event_id", "timestamp"])

    op.create_table(
        "hedge_positions",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("external_order_id", sa.String(length=128), nullable=True),
        sa.Column("failure_reason", sa.String(length=512), nullable=True),
        sa.Column("hedged_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_hedge_positions_status_created", "hedge_positions", ["status", "created_at"])

    op.create_table(
        "balances",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("token_symbol", sa.String(length=64), nullable=False),
        sa.Column("event_id", sa.String(length=64), nullable=True),
        sa.Column("outcome_id", sa.String(length=64), nullable=True),
        sa.Column("amount", sa.Numeric(38, 18), nullable=False, server_default="0"),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_balances_event_outcome", "balances", ["event_id", "outcome_id"])
    op.create_index("ix_balances_user_symbol", "balances", ["user_id", "token_symbol"])


def downgrade() -> None:
    op.drop_index("ix_balances_user_symbol", table_name="balances")
    op.drop_index("ix_balances_event_outcome", table_name="balances")
    op.drop_table("balances")
    op.drop_index("ix_hedge_positions_status_created", table_name="hedge_positions")
    op.drop_table("hedge_positions")
    op.drop_index("ix_odds_history_event_ts", table_name="odds_history")
    op.drop_table("odds_history")
    op.drop_index("ix_market_mappings_active", table_name="market_mappings")
    op.drop_index("ix_market_mappings_internal_event_id", table_name="market_mappings")
    op.drop_table("market_mappings")
    op.drop_index("ix_outcomes_event_token", table_name="outcomes")
    op.drop_index("ix_outcomes_event_id", table_name="outcomes")
    op.drop_table("outcomes")
    op.drop_index("ix_events_source_status_resolution", table_name="events")
    op.drop_table("events")
