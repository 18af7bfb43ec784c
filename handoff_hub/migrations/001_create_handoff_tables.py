"""Create the conversation, timeline, delivery and audit tables."""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op

revision = "001_create_handoff_tables"
down_revision = None
branch_labels = None
depends_on = None


def _timestamp(name: str, nullable: bool = False) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable)


def upgrade() -> None:
    op.create_table(
        "sales_agents",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("contact_number", sa.String(length=32), nullable=True),
        sa.Column("transport_token", sa.String(length=255), nullable=True),
        sa.Column(
            "is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")
        ),
        _timestamp("created_at"),
    )

    op.create_table(
        "conversations",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("customer_contact", sa.String(length=64), nullable=False),
        sa.Column("customer_name", sa.String(length=255), nullable=True),
        sa.Column(
            "status", sa.String(length=16), nullable=False, server_default=sa.text("'bot'")
        ),
        sa.Column(
            "lead_temperature",
            sa.String(length=8),
            nullable=False,
            server_default=sa.text("'cold'"),
        ),
        sa.Column(
            "assigned_agent_id",
            sa.Integer(),
            sa.ForeignKey("sales_agents.id"),
            nullable=True,
        ),
        sa.Column(
            "source",
            sa.String(length=32),
            nullable=False,
            server_default=sa.text("'whatsapp'"),
        ),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        _timestamp("closed_at", nullable=True),
        sa.CheckConstraint(
            "(status = 'seller') = (assigned_agent_id IS NOT NULL)",
            name="ck_conversations_seller_assignment",
        ),
    )
    op.create_index(
        "ix_conversations_contact_status",
        "conversations",
        ["customer_contact", "status"],
    )

    op.create_table(
        "messages",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "conversation_id",
            sa.Integer(),
            sa.ForeignKey("conversations.id"),
            nullable=False,
        ),
        sa.Column("sender_type", sa.String(length=16), nullable=False),
        sa.Column("sender_name", sa.String(length=255), nullable=True),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column(
            "message_kind",
            sa.String(length=16),
            nullable=False,
            server_default=sa.text("'text'"),
        ),
        sa.Column("transport_message_id", sa.String(length=128), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("metadata", sa.JSON(), nullable=False),
        _timestamp("created_at"),
    )
    op.create_index(
        "ux_messages_transport_message_id",
        "messages",
        ["transport_message_id"],
        unique=True,
    )
    op.create_index(
        "ix_messages_conversation_created",
        "messages",
        ["conversation_id", "created_at"],
    )

    op.create_table(
        "agent_channel_log",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "conversation_id",
            sa.Integer(),
            sa.ForeignKey("conversations.id"),
            nullable=True,
        ),
        sa.Column("customer_contact", sa.String(length=64), nullable=True),
        sa.Column("transport_message_id", sa.String(length=128), nullable=False),
        sa.Column("from_agent", sa.Boolean(), nullable=False),
        sa.Column("content", sa.Text(), nullable=True),
        sa.Column(
            "message_kind",
            sa.String(length=16),
            nullable=False,
            server_default=sa.text("'text'"),
        ),
        sa.Column("media_url", sa.Text(), nullable=True),
        sa.Column(
            "agent_id",
            sa.Integer(),
            sa.ForeignKey("sales_agents.id"),
            nullable=False,
        ),
        _timestamp("sent_at"),
        _timestamp("created_at"),
    )
    op.create_index(
        "ix_agent_channel_log_transport_message_id",
        "agent_channel_log",
        ["transport_message_id"],
    )
    op.create_index(
        "ix_agent_channel_log_agent_contact",
        "agent_channel_log",
        ["agent_id", "customer_contact"],
    )

    op.create_table(
        "control_notices",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "conversation_id",
            sa.Integer(),
            sa.ForeignKey("conversations.id"),
            nullable=False,
        ),
        sa.Column("kind", sa.String(length=32), nullable=False),
        sa.Column("from_status", sa.String(length=16), nullable=False),
        sa.Column("to_status", sa.String(length=16), nullable=False),
        sa.Column("actor", sa.String(length=255), nullable=False),
        sa.Column("recipient_agent_id", sa.Integer(), nullable=True),
        sa.Column("details", sa.JSON(), nullable=False),
        _timestamp("created_at"),
    )
    op.create_index(
        "ix_control_notices_conversation", "control_notices", ["conversation_id"]
    )

    op.create_table(
        "delivery_log",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("sender_identity", sa.String(length=128), nullable=False),
        sa.Column("recipient", sa.String(length=64), nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("context_type", sa.String(length=32), nullable=False),
        sa.Column("transport_message_id", sa.String(length=128), nullable=True),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("metadata", sa.JSON(), nullable=False),
        sa.Column(
            "resend_of_id",
            sa.Integer(),
            sa.ForeignKey("delivery_log.id"),
            nullable=True,
        ),
        _timestamp("created_at"),
    )
    op.create_index(
        "ix_delivery_log_context_created", "delivery_log", ["context_type", "created_at"]
    )
    op.create_index("ix_delivery_log_resend_of", "delivery_log", ["resend_of_id"])

    op.create_table(
        "audit_log",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("event_type", sa.String(length=64), nullable=False),
        sa.Column("identity", sa.String(length=320), nullable=True),
        sa.Column("severity", sa.String(length=16), nullable=False),
        sa.Column("origin", sa.String(length=64), nullable=True),
        sa.Column("details", sa.JSON(), nullable=False),
        _timestamp("created_at"),
    )
    op.create_index(
        "ix_audit_log_identity_event_created",
        "audit_log",
        ["identity", "event_type", "created_at"],
    )


def downgrade() -> None:
    for table in (
        "audit_log",
        "delivery_log",
        "control_notices",
        "agent_channel_log",
        "messages",
        "conversations",
        "sales_agents",
    ):
        op.drop_table(table)
