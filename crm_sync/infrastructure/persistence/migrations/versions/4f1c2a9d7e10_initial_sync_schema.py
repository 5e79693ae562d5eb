"""initial_sync_schema

Revision ID: 4f1c2a9d7e10
Revises:
Create Date: 2026-10-19 09:12:41.503218

"""

from collections.abc import Sequence
from typing import Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "4f1c2a9d7e10"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
    ]


def upgrade() -> None:
    """Upgrade schema."""
    op.create_table(
        "oauth_credential",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("owner_id", sa.String(), nullable=False),
        sa.Column("provider", sa.String(length=32), nullable=False),
        sa.Column("email", sa.String(length=320), nullable=False),
        sa.Column("provider_account_id", sa.String(), nullable=True),
        sa.Column("access_token_encrypted", sa.Text(), nullable=False),
        sa.Column("refresh_token_encrypted", sa.Text(), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("scopes", sa.JSON(), nullable=False),
        sa.Column("oauth_status", sa.String(length=32), nullable=False, server_default="active"),
        sa.Column("last_auth_error", sa.Text(), nullable=True),
        sa.Column("refresh_failure_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("token_refresh_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_refreshed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_sync_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("webhook_subscription_id", sa.String(), nullable=True),
        sa.Column("webhook_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "owner_id", "provider", "email", name="uq_oauth_credential_owner_provider_email"
        ),
    )
    op.create_index("ix_oauth_credential_owner_id", "oauth_credential", ["owner_id"])
    op.create_index(
        "ix_oauth_credential_provider_account",
        "oauth_credential",
        ["provider", "provider_account_id"],
    )
    op.create_index(
        "ix_oauth_credential_provider_subscription",
        "oauth_credential",
        ["provider", "webhook_subscription_id"],
    )

    op.create_table(
        "sync_mapping",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("credential_id", sa.String(), nullable=False),
        sa.Column("record_kind", sa.String(length=32), nullable=False),
        sa.Column("record_id", sa.String(), nullable=False),
        sa.Column("provider", sa.String(length=32), nullable=False),
        sa.Column("external_id", sa.String(length=1024), nullable=False),
        sa.Column("external_etag", sa.String(length=255), nullable=True),
        sa.Column("direction", sa.String(length=32), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="synced"),
        sa.Column("last_error", sa.Text(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["credential_id"], ["oauth_credential.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("provider", "external_id", name="uq_sync_mapping_provider_external"),
        sa.UniqueConstraint("record_id", "provider", name="uq_sync_mapping_record_provider"),
    )
    op.create_index(
        "ix_sync_mapping_credential_status", "sync_mapping", ["credential_id", "status"]
    )

    op.create_table(
        "sync_run",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("credential_id", sa.String(), nullable=False),
        sa.Column("direction", sa.String(length=16), nullable=False),
        sa.Column("trigger", sa.String(length=16), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="running"),
        sa.Column("imported", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("exported", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("updated", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("deleted", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("errors", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("error_messages", sa.JSON(), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["credential_id"], ["oauth_credential.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_sync_run_credential_started", "sync_run", ["credential_id", "started_at"]
    )

    op.create_table(
        "appointment",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("owner_id", sa.String(), nullable=False),
        sa.Column("credential_id", sa.String(), nullable=True),
        sa.Column("title", sa.String(length=1024), nullable=False),
        sa.Column("description", sa.Text(), nullable=False, server_default=""),
        sa.Column("location", sa.String(length=1024), nullable=False, server_default=""),
        sa.Column("start_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("end_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("timezone", sa.String(length=64), nullable=False, server_default="UTC"),
        sa.Column("all_day", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("attendees", sa.JSON(), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="scheduled"),
        *_timestamps(),
        sa.ForeignKeyConstraint(["credential_id"], ["oauth_credential.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_appointment_owner_start", "appointment", ["owner_id", "start_time"])

    op.create_table(
        "email_message",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("owner_id", sa.String(), nullable=False),
        sa.Column("credential_id", sa.String(), nullable=True),
        sa.Column("thread_id", sa.String(), nullable=True),
        sa.Column("subject", sa.Text(), nullable=False, server_default=""),
        sa.Column("sender", sa.String(length=320), nullable=False, server_default=""),
        sa.Column("to_addresses", sa.JSON(), nullable=False),
        sa.Column("cc_addresses", sa.JSON(), nullable=False),
        sa.Column("bcc_addresses", sa.JSON(), nullable=False),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("body_text", sa.Text(), nullable=False, server_default=""),
        sa.Column("body_html", sa.Text(), nullable=False, server_default=""),
        sa.Column("is_read", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("is_starred", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("folder", sa.String(length=16), nullable=False, server_default="inbox"),
        *_timestamps(),
        sa.ForeignKeyConstraint(["credential_id"], ["oauth_credential.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_email_message_owner_sent", "email_message", ["owner_id", "sent_at"])
    op.create_index(
        "ix_email_message_credential_folder", "email_message", ["credential_id", "folder"]
    )


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_index("ix_email_message_credential_folder", table_name="email_message")
    op.drop_index("ix_email_message_owner_sent", table_name="email_message")
    op.drop_table("email_message")
    op.drop_index("ix_appointment_owner_start", table_name="appointment")
    op.drop_table("appointment")
    op.drop_index("ix_sync_run_credential_started", table_name="sync_run")
    op.drop_table("sync_run")
    op.drop_index("ix_sync_mapping_credential_status", table_name="sync_mapping")
    op.drop_table("sync_mapping")
    op.drop_index("ix_oauth_credential_provider_subscription", table_name="oauth_credential")
    op.drop_index("ix_oauth_credential_provider_account", table_name="oauth_credential")
    op.drop_index("ix_oauth_credential_owner_id", table_name="oauth_credential")
    op.drop_table("oauth_credential")
