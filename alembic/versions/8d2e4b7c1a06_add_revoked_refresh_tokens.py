"""add revoked refresh tokens

Revision ID: 8d2e4b7c1a06
Revises: 5c1f0a9d2b3e
Create Date: 2026-10-20 09:31:07.114902

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '8d2e4b7c1a06'
down_revision: Union[str, Sequence[str], None] = '5c1f0a9d2b3e'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "revoked_refresh_tokens",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("user_id", sa.String(length=36), nullable=False),
        sa.Column("refresh_token", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "revoked_refresh_tokens_token_user_id",
        "revoked_refresh_tokens",
        ["refresh_token", "user_id"],
    )


def downgrade() -> None:
    op.drop_index("revoked_refresh_tokens_token_user_id", table_name="revoked_refresh_tokens")
    op.drop_table("revoked_refresh_tokens")
