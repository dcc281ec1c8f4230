"""Skip-trace schema: leads, results ledger, provider calls, runs, items, reports, budget windows

Revision ID: 3f9a1c7d2e10
Revises:
Create Date: 2026-10-01 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '3f9a1c7d2e10'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade schema."""
    op.create_table('leads',
        sa.Column('id', sa.Text(), nullable=False),
        sa.Column('owner_name', sa.Text(), nullable=True),
        sa.Column('address', sa.Text(), nullable=False),
        sa.Column('city', sa.Text(), nullable=True),
        sa.Column('state', sa.Text(), nullable=True),
        sa.Column('zip_code', sa.Text(), nullable=True),
        sa.Column('phone', sa.Text(), nullable=True),
        sa.Column('email', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )

    op.create_table('enrichment_results',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('lead_id', sa.Text(), nullable=False),
        sa.Column('phones', sa.JSON(), nullable=True),
        sa.Column('emails', sa.JSON(), nullable=True),
        sa.Column('provider', sa.Text(), nullable=False),
        sa.Column('cost_cents', sa.Integer(), nullable=False),
        sa.Column('resolved_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('lead_id', name='uq_enrichment_results_lead_id'),
    )

    op.create_table('provider_calls',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('run_id', sa.Text(), nullable=True),
        sa.Column('lead_id', sa.Text(), nullable=False),
        sa.Column('provider', sa.Text(), nullable=False),
        sa.Column('adapter', sa.Text(), nullable=True),
        sa.Column('cost_cents', sa.Integer(), nullable=False),
        sa.Column('succeeded', sa.Boolean(), nullable=False),
        sa.Column('error_reason', sa.Text(), nullable=True),
        sa.Column('duration_ms', sa.Integer(), nullable=True),
        sa.Column('called_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_provider_calls_called_at', 'provider_calls', ['called_at'])
    op.create_index('ix_provider_calls_lead_id', 'provider_calls', ['lead_id'])
    op.create_index('ix_provider_calls_run_id', 'provider_calls', ['run_id'])

    op.create_table('skiptrace_runs',
        sa.Column('run_id', sa.Text(), nullable=False),
        sa.Column('source_label', sa.Text(), nullable=False),
        sa.Column('force', sa.Boolean(), nullable=False),
        sa.Column('total', sa.Integer(), nullable=False),
        sa.Column('queued', sa.Integer(), nullable=False),
        sa.Column('in_flight', sa.Integer(), nullable=False),
        sa.Column('done', sa.Integer(), nullable=False),
        sa.Column('failed', sa.Integer(), nullable=False),
        sa.Column('soft_paused', sa.Boolean(), nullable=False),
        sa.Column('pause_reason', sa.Text(), nullable=True),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('finished_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('run_id'),
    )

    op.create_table('skiptrace_run_items',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('run_id', sa.Text(), nullable=False),
        sa.Column('lead_id', sa.Text(), nullable=False),
        sa.Column('status', sa.Text(), nullable=False),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('cached', sa.Boolean(), nullable=False),
        sa.Column('provider', sa.Text(), nullable=True),
        sa.Column('cost_cents', sa.Integer(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['run_id'], ['skiptrace_runs.run_id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('run_id', 'lead_id', name='uq_run_item_lead'),
        sa.CheckConstraint("status IN ('queued', 'in_flight', 'done', 'failed')", name='ck_run_item_status'),
    )
    op.create_index('ix_skiptrace_run_items_run_status', 'skiptrace_run_items', ['run_id', 'status'])

    op.create_table('run_reports',
        sa.Column('run_id', sa.Text(), nullable=False),
        sa.Column('report', sa.JSON(), nullable=False),
        sa.Column('generated_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['run_id'], ['skiptrace_runs.run_id']),
        sa.PrimaryKeyConstraint('run_id'),
    )

    op.create_table('budget_windows',
        sa.Column('window_start', sa.Date(), nullable=False),
        sa.Column('limit_cents', sa.Integer(), nullable=True),
        sa.Column('soft_paused', sa.Boolean(), nullable=False),
        sa.Column('paused_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('reset_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('window_start'),
    )


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_table('budget_windows')
    op.drop_table('run_reports')
    op.drop_index('ix_skiptrace_run_items_run_status', 'skiptrace_run_items')
    op.drop_table('skiptrace_run_items')
    op.drop_table('skiptrace_runs')
    op.drop_index('ix_provider_calls_run_id', 'provider_calls')
    op.drop_index('ix_provider_calls_lead_id', 'provider_calls')
    op.drop_index('ix_provider_calls_called_at', 'provider_calls')
    op.drop_table('provider_calls')
    op.drop_table('enrichment_results')
    op.drop_table('leads')
