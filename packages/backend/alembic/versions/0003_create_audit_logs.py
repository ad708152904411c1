"""Create audit_logs table.

Revision ID: 0003_create_audit_logs
Revises: 0002_create_vault_items
Create Date: 2026-03-02 00:00:02
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "0003_create_audit_logs"
down_revision: Union[str, None] = "0002_create_vault_items"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


audit_log_action_enum = sa.Enum(
    "SHARE_ITEM",
    "RESHARE_ITEM",
    "UPDATE_SHARE",
    "REVOKE_SHARE",
    "EDIT_SHARED_ITEM",
    "SHARE_INVITE_SENT",
    "CHECKOUT_CREATED",
    "SUBSCRIPTION_CREATED",
    "SUBSCRIPTION_UPDATED",
    "SUBSCRIPTION_CANCELED",
    "SUBSCRIPTION_REACTIVATED",
    "SUBSCRIPTION_SEATS_UPDATED",
    "SUBSCRIPTION_EXPIRED",
    "MANUAL_GRANT",
    "MANUAL_REVOKE",
    "INVOICE_PAID",
    "INVOICE_PAYMENT_FAILED",
    "BULK_EMAIL_QUEUED",
    name="audit_log_action",
)


def upgrade() -> None:
    op.create_table(
        "audit_logs",
        sa.Column("id", sa.Uuid(), primary_key=True, nullable=False),
        sa.Column("org_id", sa.Uuid(), sa.ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False),
        sa.Column("actor_id", sa.Uuid(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        sa.Column("action", audit_log_action_enum, nullable=False),
        sa.Column("target_id", sa.Uuid(), nullable=True),
        sa.Column("ip_address", sa.String(length=45), nullable=False),
        sa.Column("user_agent", sa.Text(), nullable=False),
        sa.Column("geo_location", sa.String(length=255), nullable=False),
        sa.Column("details", sa.JSON(), nullable=False),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_audit_logs_org_id_timestamp", "audit_logs", ["org_id", "timestamp"], unique=False)
    op.create_index("ix_audit_logs_actor_id", "audit_logs", ["actor_id"], unique=False)
    op.execute(
        """
        CREATE TRIGGER trg_audit_logs_prevent_update
        BEFORE UPDATE ON audit_logs
        FOR EACH ROW
        SIGNAL SQLSTATE '45000'
        SET MESSAGE_TEXT = 'audit_logs is append-only'
        """
    )


def downgrade() -> None:
    op.execute("DROP TRIGGER IF EXISTS trg_audit_logs_prevent_update")
    op.drop_index("ix_audit_logs_actor_id", table_name="audit_logs")
    op.drop_index("ix_audit_logs_org_id_timestamp", table_name="audit_logs")
    op.drop_table("audit_logs")
