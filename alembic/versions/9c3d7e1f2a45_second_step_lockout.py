"""second step lockout counters

Revision ID: 9c3d7e1f2a45
Revises: 4b1e9c2a7d10
Create Date: 2026-10-17 18:30:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '9c3d7e1f2a45'
down_revision: Union[str, Sequence[str], None] = '4b1e9c2a7d10'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.add_column("users", sa.Column("failed_2fa_count", sa.Integer(), nullable=False, server_default="0"))
    op.add_column("users", sa.Column("two_factor_locked_until", sa.DateTime(), nullable=True))
    op.add_column("users", sa.Column("two_factor_total_lockouts", sa.Integer(), nullable=False, server_default="0"))
    op.add_column("users", sa.Column("last_failed_2fa_at", sa.DateTime(), nullable=True))


def downgrade() -> None:
    op.drop_column("users", "last_failed_2fa_at")
    op.drop_column("users", "two_factor_total_lockouts")
    op.drop_column("users", "two_factor_locked_until")
    op.drop_column("users", "failed_2fa_count")
