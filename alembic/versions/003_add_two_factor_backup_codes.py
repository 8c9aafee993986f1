"""Add backup codes and last-used TOTP step to two_factor

Revision ID: 003
Revises: 002
Create Date: 2026-10-19

"""

from collections.abc import Sequence

import sqlalchemy as sa

from alembic import op

revision: str = "003"
down_revision: str | None = "002"
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    with op.batch_alter_table("two_factor") as batch_op:
        batch_op.add_column(sa.Column("backup_codes", sa.Text(), nullable=True))
        batch_op.add_column(sa.Column("last_used_step", sa.Integer(), nullable=True))
        batch_op.add_column(sa.Column("last_used_at", sa.DateTime(), nullable=True))


def downgrade() -> None:
    with op.batch_alter_table("two_factor") as batch_op:
        batch_op.drop_column("last_used_at")
        batch_op.drop_column("last_used_step")
        batch_op.drop_column("backup_codes")
