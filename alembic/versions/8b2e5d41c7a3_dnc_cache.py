"""DNC verdict cache

Revision ID: 8b2e5d41c7a3
Revises: 3f9a1c7d2e10
Create Date: 2026-10-18 10:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '8b2e5d41c7a3'
down_revision: Union[str, Sequence[str], None] = '3f9a1c7d2e10'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade schema."""
    op.create_table('dnc_cache',
        sa.Column('phone_number', sa.Text(), nullable=False),
        sa.Column('is_dnc', sa.Boolean(), nullable=False),
        sa.Column('source', sa.Text(), nullable=False),
        sa.Column('checked_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('phone_number'),
    )


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_table('dnc_cache')
