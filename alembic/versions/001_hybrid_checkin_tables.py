"""Hybrid check-in (CIV) and deferred validation settlement tables.

Revision ID: 001
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = '001'
down_revision = None
branch_labels = None
depends_on = None

SESSION_STATUSES = ("ACTIVE", "COMPLETED", "EXPIRED")
PENDING_STATUSES = ("PENDING", "UNLOCKED", "EXPIRED")
TRIGGER_TYPES = ("RETURN_VISIT", "NEW_TRANSACTION", "MANUAL_CHECK", "TIME_ELAPSED")


def _trigger_type(create: bool):
    # The enum type is shared by two tables; Postgres must only create it once
    if not create and op.get_bind().dialect.name == "postgresql":
        return postgresql.ENUM(*TRIGGER_TYPES, name="settlementtriggertype", create_type=False)
    return sa.Enum(*TRIGGER_TYPES, name="settlementtriggertype")


def upgrade():
    op.create_table(
        "stores",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("category", sa.String(50), nullable=True),
        sa.Column("lat", sa.Float(), nullable=True),
        sa.Column("lng", sa.Float(), nullable=True),
        sa.Column("geofence_radius_m", sa.Float(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )

    op.create_table(
        "store_customer_blacklist",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("store_id", sa.Integer(), sa.ForeignKey("stores.id"), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("reason", sa.String(500), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("store_id", "user_id", name="uq_store_blacklist_pair"),
    )
    op.create_index("ix_store_customer_blacklist_store_id", "store_customer_blacklist", ["store_id"])
    op.create_index("ix_store_customer_blacklist_user_id", "store_customer_blacklist", ["user_id"])

    op.create_table(
        "checkin_sessions",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("store_id", sa.Integer(), sa.ForeignKey("stores.id"), nullable=False),
        sa.Column("status", sa.Enum(*SESSION_STATUSES, name="checkinsessionstatus"), nullable=False),
        sa.Column("opened_at", sa.DateTime(), nullable=False),
        sa.Column("expires_at", sa.DateTime(), nullable=False),
        sa.Column("completed_at", sa.DateTime(), nullable=True),
        sa.Column("expired_at", sa.DateTime(), nullable=True),
        sa.Column("civ_score", sa.Float(), nullable=True),
    )
    op.create_index("ix_checkin_sessions_user_id", "checkin_sessions", ["user_id"])
    op.create_index("ix_checkin_sessions_store_id", "checkin_sessions", ["store_id"])
    op.create_index(
        "uq_checkin_sessions_active_pair",
        "checkin_sessions",
        ["user_id", "store_id"],
        unique=True,
        sqlite_where=sa.text("status = 'ACTIVE'"),
        postgresql_where=sa.text("status = 'ACTIVE'"),
    )
    op.create_index("ix_checkin_sessions_status_expires", "checkin_sessions", ["status", "expires_at"])
    op.create_index(
        "ix_checkin_sessions_user_store_opened", "checkin_sessions", ["user_id", "store_id", "opened_at"]
    )

    op.create_table(
        "location_samples",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("session_id", sa.String(36), sa.ForeignKey("checkin_sessions.id"), nullable=False),
        sa.Column("lat", sa.Float(), nullable=False),
        sa.Column("lng", sa.Float(), nullable=False),
        sa.Column("accuracy_m", sa.Float(), nullable=True),
        sa.Column("captured_at", sa.DateTime(), nullable=False),
        sa.Column("received_at", sa.DateTime(), nullable=False),
    )
    op.create_index(
        "ix_location_samples_session_captured", "location_samples", ["session_id", "captured_at"]
    )

    op.create_table(
        "pending_points",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("store_id", sa.Integer(), sa.ForeignKey("stores.id"), nullable=False),
        sa.Column("session_id", sa.String(36), sa.ForeignKey("checkin_sessions.id"), nullable=True),
        sa.Column("loops_pending", sa.Integer(), nullable=False),
        sa.Column("loops_unlocked", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("civ_score", sa.Float(), nullable=False, server_default="0.5"),
        sa.Column("status", sa.Enum(*PENDING_STATUSES, name="pendingpointsstatus"), nullable=False),
        sa.Column("unlock_trigger", _trigger_type(create=True), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("expires_at", sa.DateTime(), nullable=False),
        sa.Column("unlocked_at", sa.DateTime(), nullable=True),
        sa.CheckConstraint("loops_pending > 0", name="ck_pending_points_positive"),
        sa.CheckConstraint(
            "loops_unlocked >= 0 AND loops_unlocked <= loops_pending", name="ck_pending_points_unlocked_range"
        ),
        sa.CheckConstraint("civ_score >= 0 AND civ_score <= 1", name="ck_pending_points_civ_range"),
    )
    op.create_index("ix_pending_points_session_id", "pending_points", ["session_id"])
    op.create_index(
        "ix_pending_points_user_status_expires", "pending_points", ["user_id", "status", "expires_at"]
    )
    op.create_index("ix_pending_points_store_status", "pending_points", ["store_id", "status"])

    op.create_table(
        "settlement_triggers",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("pending_points_id", sa.String(36), sa.ForeignKey("pending_points.id"), nullable=False),
        sa.Column("trigger_type", _trigger_type(create=False), nullable=False),
        sa.Column("trigger_data", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_settlement_triggers_pending_points_id", "settlement_triggers", ["pending_points_id"])

    op.create_table(
        "loops_wallets",
        sa.Column("user_id", sa.Integer(), primary_key=True, autoincrement=False),
        sa.Column("plan", sa.String(20), nullable=True),
        sa.Column("loops_balance", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_loops_earned", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=True),
        sa.CheckConstraint("loops_balance >= 0", name="ck_loops_wallet_balance_non_negative"),
    )

    op.create_table(
        "loops_ledger",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("loops_wallets.user_id"), nullable=False),
        sa.Column("change_type", sa.String(20), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("balance_after", sa.Integer(), nullable=False),
        sa.Column("idempotency_key", sa.String(100), nullable=True, unique=True),
        sa.Column("meta", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_loops_ledger_user_created", "loops_ledger", ["user_id", "created_at"])

    op.create_table(
        "transactions",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("store_id", sa.Integer(), sa.ForeignKey("stores.id"), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint("amount_cents > 0", name="ck_transactions_amount_positive"),
    )
    op.create_index(
        "ix_transactions_user_store_created", "transactions", ["user_id", "store_id", "created_at"]
    )


def downgrade():
    op.drop_table("transactions")
    op.drop_table("loops_ledger")
    op.drop_table("loops_wallets")
    op.drop_table("settlement_triggers")
    op.drop_table("pending_points")
    op.drop_table("location_samples")
    op.drop_table("checkin_sessions")
    op.drop_table("store_customer_blacklist")
    op.drop_table("stores")

    bind = op.get_bind()
    if bind.dialect.name == "postgresql":
        for name in ("settlementtriggertype", "pendingpointsstatus", "checkinsessionstatus"):
            sa.Enum(name=name).drop(bind, checkfirst=True)
