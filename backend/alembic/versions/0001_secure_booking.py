"""secure booking schema

Revision ID: 0001_secure_booking
Revises:
Create Date: 2026-01-12 00:00:00
"""
from alembic import op
import sqlalchemy as sa

revision = "0001_secure_booking"
down_revision = None
branch_labels = None
depends_on = None

UUID_TYPE = sa.Uuid(as_uuid=True)


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            # ORM-managed updated_at (no database trigger).
            nullable=False,
        ),
    ]


def upgrade() -> None:
    bind = op.get_bind()
    is_postgres = bind.dialect.name == "postgresql"

    op.create_table(
        "booking_holds",
        sa.Column("hold_id", sa.String(length=36), primary_key=True),
        sa.Column("tenant_id", UUID_TYPE, nullable=False),
        sa.Column("vertical", sa.String(length=32), nullable=False),
        sa.Column("resource_id", sa.String(length=128), nullable=False),
        sa.Column("hold_type", sa.String(length=32), nullable=False),
        sa.Column("window_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("window_end", sa.DateTime(timezone=True), nullable=False),
        sa.Column("customer_fingerprint", sa.String(length=128), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("requires_confirmation", sa.Boolean(), nullable=False),
        sa.Column("requires_deposit", sa.Boolean(), nullable=False),
        sa.Column("deposit_cents", sa.Integer()),
        sa.Column("trust_score_at_hold", sa.Integer()),
        sa.Column("release_reason", sa.String(length=64)),
        sa.Column("released_at", sa.DateTime(timezone=True)),
        sa.Column("converted_at", sa.DateTime(timezone=True)),
        *_timestamps(),
        sa.CheckConstraint("window_end > window_start", name="ck_booking_holds_window"),
    )
    op.create_index("ix_booking_holds_resource_status", "booking_holds", ["tenant_id", "resource_id", "status"])
    op.create_index("ix_booking_holds_status_expires", "booking_holds", ["status", "expires_at"])
    op.create_index("ix_booking_holds_customer", "booking_holds", ["tenant_id", "customer_fingerprint"])

    if is_postgres:
        # Backstop for the resource lock: two active holds on one resource may never overlap.
        op.execute("CREATE EXTENSION IF NOT EXISTS btree_gist")
        op.execute(
            """
            ALTER TABLE booking_holds
            ADD CONSTRAINT ex_booking_holds_no_overlap
            EXCLUDE USING gist (
                tenant_id WITH =,
                resource_id WITH =,
                tstzrange(window_start, window_end, '[)') WITH &&
            )
            WHERE (status = 'active')
            """
        )

    op.create_table(
        "booking_records",
        sa.Column("booking_id", sa.String(length=36), primary_key=True),
        sa.Column("tenant_id", UUID_TYPE, nullable=False),
        sa.Column("vertical", sa.String(length=32), nullable=False),
        sa.Column("resource_id", sa.String(length=128), nullable=False),
        sa.Column("window_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("window_end", sa.DateTime(timezone=True), nullable=False),
        sa.Column("customer_fingerprint", sa.String(length=128), nullable=False),
        sa.Column("hold_id", sa.String(length=36), sa.ForeignKey("booking_holds.hold_id"), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("deposit_required", sa.Boolean(), nullable=False),
        sa.Column("deposit_cents", sa.Integer()),
        sa.Column("outcome_recorded_at", sa.DateTime(timezone=True)),
        *_timestamps(),
        sa.UniqueConstraint("hold_id", name="uq_booking_records_hold"),
    )
    op.create_index("ix_booking_records_resource_status", "booking_records", ["tenant_id", "resource_id", "status"])
    op.create_index("ix_booking_records_customer", "booking_records", ["tenant_id", "customer_fingerprint"])

    op.create_table(
        "booking_confirmations",
        sa.Column("confirmation_id", sa.String(length=36), primary_key=True),
        sa.Column("tenant_id", UUID_TYPE, nullable=False),
        sa.Column(
            "hold_id",
            sa.String(length=36),
            sa.ForeignKey("booking_holds.hold_id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("customer_fingerprint", sa.String(length=128), nullable=False),
        sa.Column("confirmation_type", sa.String(length=32), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("code", sa.String(length=12), nullable=False),
        sa.Column("recipient", sa.String(length=128)),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("responded_at", sa.DateTime(timezone=True)),
        sa.Column("response_text", sa.Text()),
        sa.Column("provider_message_id", sa.String(length=128)),
        sa.Column("delivery_status", sa.String(length=32)),
        *_timestamps(),
    )
    op.create_index(
        "uq_booking_confirmations_one_pending",
        "booking_confirmations",
        ["hold_id"],
        unique=True,
        postgresql_where=sa.text("status = 'pending'"),
        sqlite_where=sa.text("status = 'pending'"),
    )
    op.create_index("ix_booking_confirmations_status_expires", "booking_confirmations", ["status", "expires_at"])
    op.create_index(
        "ix_booking_confirmations_customer",
        "booking_confirmations",
        ["tenant_id", "customer_fingerprint", "status"],
    )

    op.create_table(
        "customer_trust_scores",
        sa.Column("trust_id", sa.String(length=36), primary_key=True),
        sa.Column("tenant_id", UUID_TYPE, nullable=False),
        sa.Column("customer_fingerprint", sa.String(length=128), nullable=False),
        sa.Column("vertical", sa.String(length=32), nullable=False),
        sa.Column("score", sa.Integer(), nullable=False),
        sa.Column("completed_count", sa.Integer(), nullable=False),
        sa.Column("cancelled_count", sa.Integer(), nullable=False),
        sa.Column("no_show_count", sa.Integer(), nullable=False),
        sa.Column("is_vip", sa.Boolean(), nullable=False),
        sa.Column("last_updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("tenant_id", "customer_fingerprint", name="uq_customer_trust_scores_customer"),
        sa.CheckConstraint("score >= 0 AND score <= 100", name="ck_customer_trust_scores_range"),
    )

    op.create_table(
        "customer_trust_events",
        sa.Column("event_id", sa.String(length=36), primary_key=True),
        sa.Column("tenant_id", UUID_TYPE, nullable=False),
        sa.Column("customer_fingerprint", sa.String(length=128), nullable=False),
        sa.Column("kind", sa.String(length=32), nullable=False),
        sa.Column("delta", sa.Integer(), nullable=False),
        sa.Column("penalty_id", sa.String(length=36)),
        sa.Column("related_hold_id", sa.String(length=36)),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index(
        "ix_customer_trust_events_customer",
        "customer_trust_events",
        ["tenant_id", "customer_fingerprint", "occurred_at"],
    )

    op.create_table(
        "customer_penalties",
        sa.Column("penalty_id", sa.String(length=36), primary_key=True),
        sa.Column("tenant_id", UUID_TYPE, nullable=False),
        sa.Column("customer_fingerprint", sa.String(length=128), nullable=False),
        sa.Column("violation_type", sa.String(length=32), nullable=False),
        sa.Column("weight", sa.Integer(), nullable=False),
        sa.Column("strike_count", sa.Integer(), nullable=False),
        sa.Column("related_hold_id", sa.String(length=36)),
        sa.Column("notes", sa.String(length=500)),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index(
        "ix_customer_penalties_customer",
        "customer_penalties",
        ["tenant_id", "customer_fingerprint", "occurred_at"],
    )

    op.create_table(
        "customer_blocks",
        sa.Column("block_id", sa.String(length=36), primary_key=True),
        sa.Column("tenant_id", UUID_TYPE, nullable=False),
        sa.Column("customer_fingerprint", sa.String(length=128), nullable=False),
        sa.Column("reason", sa.String(length=32), nullable=False),
        sa.Column("blocked_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("blocked_until", sa.DateTime(timezone=True)),
        sa.Column("created_from_penalty_id", sa.String(length=36)),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("lifted_at", sa.DateTime(timezone=True)),
        sa.Column("lifted_by", sa.String(length=100)),
        sa.Column("lift_reason", sa.String(length=255)),
        sa.Column("notes", sa.String(length=500)),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
    )
    op.create_index(
        "uq_customer_blocks_one_active",
        "customer_blocks",
        ["tenant_id", "customer_fingerprint"],
        unique=True,
        postgresql_where=sa.text("is_active"),
        sqlite_where=sa.text("is_active = 1"),
    )
    op.create_index("ix_customer_blocks_active_until", "customer_blocks", ["is_active", "blocked_until"])

    op.create_table(
        "booking_policies",
        sa.Column("policy_id", sa.String(length=36), primary_key=True),
        sa.Column("tenant_id", UUID_TYPE, nullable=False),
        sa.Column("vertical", sa.String(length=32), nullable=False),
        sa.Column("overrides", sa.JSON(), nullable=False),
        sa.Column("updated_by", sa.String(length=100)),
        *_timestamps(),
        sa.UniqueConstraint("tenant_id", "vertical", name="uq_booking_policies_tenant_vertical"),
    )

    op.create_table(
        "job_heartbeats",
        sa.Column("name", sa.String(length=64), primary_key=True),
        sa.Column("last_heartbeat", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("last_success_at", sa.DateTime(timezone=True)),
        sa.Column("last_error", sa.String(length=128)),
        sa.Column("last_error_at", sa.DateTime(timezone=True)),
        sa.Column("runner_id", sa.String(length=128)),
        sa.Column("consecutive_failures", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_processed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )

    op.create_table(
        "resource_locks",
        sa.Column("lock_key", sa.String(length=255), primary_key=True),
        sa.Column("owner", sa.String(length=64), nullable=False),
        sa.Column("acquired_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
    )


def downgrade() -> None:
    op.drop_table("resource_locks")
    op.drop_table("job_heartbeats")
    op.drop_table("booking_policies")
    op.drop_index("ix_customer_blocks_active_until", table_name="customer_blocks")
    op.drop_index("uq_customer_blocks_one_active", table_name="customer_blocks")
    op.drop_table("customer_blocks")
    op.drop_index("ix_customer_penalties_customer", table_name="customer_penalties")
    op.drop_table("customer_penalties")
    op.drop_index("ix_customer_trust_events_customer", table_name="customer_trust_events")
    op.drop_table("customer_trust_events")
    op.drop_table("customer_trust_scores")
    op.drop_index("ix_booking_confirmations_customer", table_name="booking_confirmations")
    op.drop_index("ix_booking_confirmations_status_expires", table_name="booking_confirmations")
    op.drop_index("uq_booking_confirmations_one_pending", table_name="booking_confirmations")
    op.drop_table("booking_confirmations")
    op.drop_index("ix_booking_records_customer", table_name="booking_records")
    op.drop_index("ix_booking_records_resource_status", table_name="booking_records")
    op.drop_table("booking_records")
    op.drop_index("ix_booking_holds_customer", table_name="booking_holds")
    op.drop_index("ix_booking_holds_status_expires", table_name="booking_holds")
    op.drop_index("ix_booking_holds_resource_status", table_name="booking_holds")
    op.drop_table("booking_holds")
