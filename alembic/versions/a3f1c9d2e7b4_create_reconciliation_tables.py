"""create curtailment, calculation, summary and reconciliation tables

Revision ID: a3f1c9d2e7b4
Revises:
Create Date: 2026-10-18 09:12:31.402117

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = 'a3f1c9d2e7b4'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Raw curtailment records
    op.create_table(
        'curtailment_records',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('settlement_date', sa.Date(), nullable=False),
        sa.Column('settlement_period', sa.Integer(), nullable=False),
        sa.Column('farm_id', sa.String(length=50), nullable=False),
        sa.Column('lead_party_name', sa.String(length=200), nullable=True),
        sa.Column('volume', sa.Numeric(precision=14, scale=4), nullable=False),
        sa.Column('payment', sa.Numeric(precision=16, scale=4), nullable=False),
        sa.Column('original_price', sa.Numeric(precision=12, scale=4), nullable=False),
        sa.Column('final_price', sa.Numeric(precision=12, scale=4), nullable=False),
        sa.Column('so_flag', sa.Boolean(), nullable=False),
        sa.Column('cadl_flag', sa.Boolean(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('settlement_date', 'settlement_period', 'farm_id', name='uq_curtailment_date_period_farm')
    )
    op.create_index(op.f('ix_curtailment_records_settlement_date'), 'curtailment_records', ['settlement_date'], unique=False)
    op.create_index('idx_curtailment_date_period', 'curtailment_records', ['settlement_date', 'settlement_period'], unique=False)

    # Derived bitcoin calculations
    op.create_table(
        'historical_bitcoin_calculations',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('settlement_date', sa.Date(), nullable=False),
        sa.Column('settlement_period', sa.Integer(), nullable=False),
        sa.Column('farm_id', sa.String(length=50), nullable=False),
        sa.Column('miner_model', sa.String(length=20), nullable=False),
        sa.Column('bitcoin_mined', sa.Numeric(precision=20, scale=8), nullable=False),
        sa.Column('difficulty', sa.Numeric(precision=30, scale=4), nullable=False),
        sa.Column('calculated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('settlement_date', 'settlement_period', 'farm_id', 'miner_model', name='uq_bitcoin_calc_key')
    )
    op.create_index(op.f('ix_historical_bitcoin_calculations_settlement_date'), 'historical_bitcoin_calculations', ['settlement_date'], unique=False)
    op.create_index('idx_bitcoin_calc_date_model', 'historical_bitcoin_calculations', ['settlement_date', 'miner_model'], unique=False)

    # Energy and payment summaries
    op.create_table(
        'daily_summaries',
        sa.Column('summary_date', sa.Date(), nullable=False),
        sa.Column('total_curtailed_energy', sa.Numeric(precision=16, scale=4), nullable=False),
        sa.Column('total_payment', sa.Numeric(precision=18, scale=4), nullable=False),
        sa.Column('record_count', sa.Integer(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('summary_date')
    )
    op.create_table(
        'monthly_summaries',
        sa.Column('year_month', sa.String(length=7), nullable=False),
        sa.Column('total_curtailed_energy', sa.Numeric(precision=18, scale=4), nullable=False),
        sa.Column('total_payment', sa.Numeric(precision=20, scale=4), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('year_month')
    )
    op.create_table(
        'yearly_summaries',
        sa.Column('year', sa.String(length=4), nullable=False),
        sa.Column('total_curtailed_energy', sa.Numeric(precision=20, scale=4), nullable=False),
        sa.Column('total_payment', sa.Numeric(precision=22, scale=4), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('year')
    )

    # Bitcoin summaries per miner model
    op.create_table(
        'bitcoin_daily_summaries',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('summary_date', sa.Date(), nullable=False),
        sa.Column('miner_model', sa.String(length=20), nullable=False),
        sa.Column('bitcoin_mined', sa.Numeric(precision=20, scale=8), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('summary_date', 'miner_model', name='uq_bitcoin_daily_date_model')
    )
    op.create_index(op.f('ix_bitcoin_daily_summaries_summary_date'), 'bitcoin_daily_summaries', ['summary_date'], unique=False)

    op.create_table(
        'bitcoin_monthly_summaries',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('year_month', sa.String(length=7), nullable=False),
        sa.Column('miner_model', sa.String(length=20), nullable=False),
        sa.Column('bitcoin_mined', sa.Numeric(precision=22, scale=8), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('year_month', 'miner_model', name='uq_bitcoin_monthly_month_model')
    )
    op.create_index(op.f('ix_bitcoin_monthly_summaries_year_month'), 'bitcoin_monthly_summaries', ['year_month'], unique=False)

    op.create_table(
        'bitcoin_yearly_summaries',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('year', sa.String(length=4), nullable=False),
        sa.Column('miner_model', sa.String(length=20), nullable=False),
        sa.Column('bitcoin_mined', sa.Numeric(precision=24, scale=8), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('year', 'miner_model', name='uq_bitcoin_yearly_year_model')
    )
    op.create_index(op.f('ix_bitcoin_yearly_summaries_year'), 'bitcoin_yearly_summaries', ['year'], unique=False)

    # Difficulty history
    op.create_table(
        'bitcoin_difficulty',
        sa.Column('difficulty_date', sa.Date(), nullable=False),
        sa.Column('difficulty', sa.Numeric(precision=30, scale=4), nullable=False),
        sa.Column('source', sa.String(length=50), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('difficulty_date')
    )

    # Reconciliation checkpoints and per-date claims
    op.create_table(
        'reconciliation_runs',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('run_key', sa.String(length=100), nullable=False),
        sa.Column('start_date', sa.Date(), nullable=False),
        sa.Column('end_date', sa.Date(), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('started_at', sa.DateTime(), nullable=True),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.Column('duration_seconds', sa.Float(), nullable=True),
        sa.Column('last_completed_date', sa.Date(), nullable=True),
        sa.Column('pending_dates', sa.JSON(), nullable=False),
        sa.Column('completed_dates', sa.JSON(), nullable=False),
        sa.Column('retried_dates', sa.JSON(), nullable=False),
        sa.Column('failed_dates', sa.JSON(), nullable=False),
        sa.Column('records_processed', sa.Integer(), nullable=False),
        sa.Column('calculations_written', sa.Integer(), nullable=False),
        sa.Column('total_bitcoin', sa.Numeric(precision=24, scale=8), nullable=False),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('options', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('run_key')
    )
    op.create_index(op.f('ix_reconciliation_runs_id'), 'reconciliation_runs', ['id'], unique=False)
    op.create_index(op.f('ix_reconciliation_runs_status'), 'reconciliation_runs', ['status'], unique=False)
    op.create_index('ix_reconciliation_runs_recent', 'reconciliation_runs', ['created_at'], unique=False)

    op.create_table(
        'reconciliation_date_claims',
        sa.Column('claim_date', sa.Date(), nullable=False),
        sa.Column('run_key', sa.String(length=100), nullable=False),
        sa.Column('claimed_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('claim_date')
    )


def downgrade() -> None:
    op.drop_table('reconciliation_date_claims')

    op.drop_index('ix_reconciliation_runs_recent', table_name='reconciliation_runs')
    op.drop_index(op.f('ix_reconciliation_runs_status'), table_name='reconciliation_runs')
    op.drop_index(op.f('ix_reconciliation_runs_id'), table_name='reconciliation_runs')
    op.drop_table('reconciliation_runs')

    op.drop_table('bitcoin_difficulty')

    op.drop_index(op.f('ix_bitcoin_yearly_summaries_year'), table_name='bitcoin_yearly_summaries')
    op.drop_table('bitcoin_yearly_summaries')
    op.drop_index(op.f('ix_bitcoin_monthly_summaries_year_month'), table_name='bitcoin_monthly_summaries')
    op.drop_table('bitcoin_monthly_summaries')
    op.drop_index(op.f('ix_bitcoin_daily_summaries_summary_date'), table_name='bitcoin_daily_summaries')
    op.drop_table('bitcoin_daily_summaries')

    op.drop_table('yearly_summaries')
    op.drop_table('monthly_summaries')
    op.drop_table('daily_summaries')

    op.drop_index('idx_bitcoin_calc_date_model', table_name='historical_bitcoin_calculations')
    op.drop_index(op.f('ix_historical_bitcoin_calculations_settlement_date'), table_name='historical_bitcoin_calculations')
    op.drop_table('historical_bitcoin_calculations')

    op.drop_index('idx_curtailment_date_period', table_name='curtailment_records')
    op.drop_index(op.f('ix_curtailment_records_settlement_date'), table_name='curtailment_records')
    op.drop_table('curtailment_records')
