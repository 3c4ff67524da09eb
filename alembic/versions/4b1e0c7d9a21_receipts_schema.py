"""receipts schema

Revision ID: 4b1e0c7d9a21
Revises:
Create Date: 2026-10-16 09:12:40.118532

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '4b1e0c7d9a21'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamp(name: str, nullable: bool = True):
    return sa.Column(name, sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=nullable)


def upgrade() -> None:
    op.create_table(
        'receipt_batches',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('original_filename', sa.String(), nullable=False),
        sa.Column('source_hash', sa.String(length=64), nullable=True),
        sa.Column('row_count', sa.Integer(), nullable=False),
        sa.Column('notes', sa.String(), nullable=True),
        sa.Column('uploaded_by', sa.String(), nullable=True),
        _timestamp('uploaded_at'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_receipt_batches_id'), 'receipt_batches', ['id'], unique=False)
    op.create_index(op.f('ix_receipt_batches_uploaded_at'), 'receipt_batches', ['uploaded_at'], unique=False)

    # Rules come before transactions, which reference them
    op.create_table(
        'receipt_rules',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('match_description', sa.Text(), nullable=True),
        sa.Column('match_transaction_type', sa.String(), nullable=True),
        sa.Column('match_direction', sa.String(), nullable=False),
        sa.Column('match_min_amount', sa.Numeric(12, 2), nullable=True),
        sa.Column('match_max_amount', sa.Numeric(12, 2), nullable=True),
        sa.Column('auto_status', sa.String(), nullable=False),
        sa.Column('set_vendor_name', sa.String(length=120), nullable=True),
        sa.Column('set_expense_category', sa.String(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('created_by', sa.String(), nullable=True),
        sa.Column('updated_by', sa.String(), nullable=True),
        _timestamp('created_at'),
        _timestamp('updated_at'),
        sa.CheckConstraint(
            "set_expense_category IS NULL OR match_direction = 'out'",
            name='ck_receipt_rules_expense_direction'
        ),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_receipt_rules_id'), 'receipt_rules', ['id'], unique=False)
    op.create_index(op.f('ix_receipt_rules_created_at'), 'receipt_rules', ['created_at'], unique=False)

    op.create_table(
        'receipt_transactions',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('batch_id', sa.Integer(), nullable=True),
        sa.Column('transaction_date', sa.Date(), nullable=False),
        sa.Column('details', sa.Text(), nullable=False),
        sa.Column('transaction_type', sa.String(), nullable=True),
        sa.Column('amount_in', sa.Numeric(12, 2), nullable=True),
        sa.Column('amount_out', sa.Numeric(12, 2), nullable=True),
        sa.Column('balance', sa.Numeric(12, 2), nullable=True),
        sa.Column('dedupe_hash', sa.String(length=64), nullable=False),
        sa.Column('status', sa.String(), nullable=False),
        sa.Column('receipt_required', sa.Boolean(), nullable=False),
        sa.Column('vendor_name', sa.String(length=120), nullable=True),
        sa.Column('vendor_source', sa.String(), nullable=True),
        sa.Column('vendor_rule_id', sa.Integer(), nullable=True),
        sa.Column('vendor_updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('expense_category', sa.String(), nullable=True),
        sa.Column('expense_category_source', sa.String(), nullable=True),
        sa.Column('expense_rule_id', sa.Integer(), nullable=True),
        sa.Column('expense_updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('marked_by', sa.String(), nullable=True),
        sa.Column('marked_by_email', sa.String(), nullable=True),
        sa.Column('marked_by_name', sa.String(), nullable=True),
        sa.Column('marked_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('marked_method', sa.String(), nullable=True),
        sa.Column('rule_applied_id', sa.Integer(), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('ai_confidence', sa.Integer(), nullable=True),
        sa.Column('ai_suggested_keywords', sa.String(length=300), nullable=True),
        _timestamp('created_at'),
        _timestamp('updated_at'),
        sa.CheckConstraint('amount_in IS NULL OR amount_in >= 0', name='ck_receipt_transactions_amount_in'),
        sa.CheckConstraint('amount_out IS NULL OR amount_out >= 0', name='ck_receipt_transactions_amount_out'),
        sa.ForeignKeyConstraint(['batch_id'], ['receipt_batches.id'], ),
        sa.ForeignKeyConstraint(['vendor_rule_id'], ['receipt_rules.id'], ),
        sa.ForeignKeyConstraint(['expense_rule_id'], ['receipt_rules.id'], ),
        sa.ForeignKeyConstraint(['rule_applied_id'], ['receipt_rules.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('dedupe_hash', name='uq_receipt_transactions_dedupe_hash')
    )
    op.create_index(op.f('ix_receipt_transactions_id'), 'receipt_transactions', ['id'], unique=False)
    op.create_index(op.f('ix_receipt_transactions_batch_id'), 'receipt_transactions', ['batch_id'], unique=False)
    op.create_index(op.f('ix_receipt_transactions_transaction_date'), 'receipt_transactions', ['transaction_date'], unique=False)
    op.create_index(op.f('ix_receipt_transactions_details'), 'receipt_transactions', ['details'], unique=False)
    op.create_index(op.f('ix_receipt_transactions_status'), 'receipt_transactions', ['status'], unique=False)
    # Retro runs page by (transaction_date, id)
    op.create_index('ix_receipt_transactions_date_id', 'receipt_transactions', ['transaction_date', 'id'], unique=False)

    op.create_table(
        'receipt_files',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('transaction_id', sa.Integer(), nullable=False),
        sa.Column('storage_path', sa.String(), nullable=False),
        sa.Column('file_name', sa.String(), nullable=False),
        sa.Column('mime_type', sa.String(), nullable=True),
        sa.Column('file_size_bytes', sa.Integer(), nullable=True),
        sa.Column('uploaded_by', sa.String(), nullable=True),
        _timestamp('uploaded_at'),
        sa.ForeignKeyConstraint(['transaction_id'], ['receipt_transactions.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('transaction_id', 'storage_path', name='uq_receipt_files_transaction_path')
    )
    op.create_index(op.f('ix_receipt_files_id'), 'receipt_files', ['id'], unique=False)
    op.create_index(op.f('ix_receipt_files_transaction_id'), 'receipt_files', ['transaction_id'], unique=False)

    op.create_table(
        'receipt_transaction_logs',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('transaction_id', sa.Integer(), nullable=False),
        sa.Column('previous_status', sa.String(), nullable=True),
        sa.Column('new_status', sa.String(), nullable=True),
        sa.Column('action_type', sa.String(), nullable=False),
        sa.Column('note', sa.Text(), nullable=True),
        sa.Column('performed_by', sa.String(), nullable=True),
        sa.Column('rule_id', sa.Integer(), nullable=True),
        _timestamp('performed_at'),
        sa.ForeignKeyConstraint(['transaction_id'], ['receipt_transactions.id'], ),
        sa.ForeignKeyConstraint(['rule_id'], ['receipt_rules.id'], ),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_receipt_transaction_logs_id'), 'receipt_transaction_logs', ['id'], unique=False)
    op.create_index(op.f('ix_receipt_transaction_logs_rule_id'), 'receipt_transaction_logs', ['rule_id'], unique=False)
    op.create_index('ix_receipt_transaction_logs_tx_performed', 'receipt_transaction_logs', ['transaction_id', 'performed_at'], unique=False)

    op.create_table(
        'cron_job_runs',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('job_name', sa.String(), nullable=False),
        sa.Column('run_key', sa.String(), nullable=False),
        sa.Column('status', sa.String(), nullable=False),
        _timestamp('started_at', nullable=False),
        sa.Column('finished_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('job_name', 'run_key', name='uq_cron_job_runs_job_run_key')
    )
    op.create_index(op.f('ix_cron_job_runs_id'), 'cron_job_runs', ['id'], unique=False)

    op.create_table(
        'audit_events',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('operation_type', sa.String(), nullable=False),
        sa.Column('resource_type', sa.String(), nullable=False),
        sa.Column('resource_id', sa.String(), nullable=True),
        sa.Column('operation_status', sa.String(), nullable=False),
        sa.Column('user_id', sa.String(), nullable=True),
        sa.Column('additional_info', sa.JSON(), nullable=True),
        _timestamp('created_at'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_audit_events_id'), 'audit_events', ['id'], unique=False)
    op.create_index(op.f('ix_audit_events_created_at'), 'audit_events', ['created_at'], unique=False)

    op.create_table(
        'ai_usage_events',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('context', sa.String(), nullable=True),
        sa.Column('model', sa.String(), nullable=True),
        sa.Column('prompt_tokens', sa.Integer(), nullable=True),
        sa.Column('completion_tokens', sa.Integer(), nullable=True),
        sa.Column('total_tokens', sa.Integer(), nullable=True),
        sa.Column('cost', sa.Float(), nullable=True),
        _timestamp('created_at'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_ai_usage_events_id'), 'ai_usage_events', ['id'], unique=False)


def downgrade() -> None:
    op.drop_table('ai_usage_events')
    op.drop_table('audit_events')
    op.drop_table('cron_job_runs')
    op.drop_table('receipt_transaction_logs')
    op.drop_table('receipt_files')
    op.drop_table('receipt_transactions')
    op.drop_table('receipt_rules')
    op.drop_table('receipt_batches')
