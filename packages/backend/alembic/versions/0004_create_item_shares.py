"""Create item_shares table.

Revision ID: 0004_create_item_shares
Revises: 0003_create_audit_logs
Create Date: 2026-03-02 00:00:03
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "0004_create_item_shares"
down_revision: Union[str, None] = "0003_create_audit_logs"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "item_shares",
        sa.Column("id", sa.Uuid(), primary_key=True, nullable=False),
        sa.Column("item_id", sa.Uuid(), sa.ForeignKey("vault_items.id", ondelete="CASCADE"), nullable=False),
        sa.Column("owner_id", sa.Uuid(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("shared_by_id", sa.Uuid(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column(
            "shared_with_user_id",
            sa.Uuid(),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "parent_share_id",
            sa.Uuid(),
            sa.ForeignKey("item_shares.id", ondelete="CASCADE"),
            nullable=True,
        ),
        sa.Column("can_view", sa.Boolean(), nullable=False, server_default=sa.text("1")),
        sa.Column("can_edit", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("can_share", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("encrypted_key", sa.Text(), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("item_id", "shared_with_user_id", name="uq_item_shares_item_recipient"),
    )
    op.create_index("ix_item_shares_item_id", "item_shares", ["item_id"], unique=False)
    op.create_index("ix_item_shares_owner_id", "item_shares", ["owner_id"], unique=False)
    op.create_index("ix_item_shares_shared_with_user_id", "item_shares", ["shared_with_user_id"], unique=False)
    op.create_index("ix_item_shares_parent_share_id", "item_shares", ["parent_share_id"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_item_shares_parent_share_id", table_name="item_shares")
    op.drop_index("ix_item_shares_shared_with_user_id", table_name="item_shares")
    op.drop_index("ix_item_shares_owner_id", table_name="item_shares")
    op.drop_index("ix_item_shares_item_id", table_name="item_shares")
    op.drop_table("item_shares")
