"""Initial migration - create payers, statements, payments, transactions and notifications tables

Revision ID: 001_initial
Revises:
Create Date: 2026-10-19

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '001_initial'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'payers',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('payment_reference', sa.String(100), nullable=False, unique=True),
        sa.Column('student_number', sa.String(20), nullable=True, unique=True),
        sa.Column('full_name', sa.String(255), nullable=False),
        sa.Column('monthly_fee', sa.Numeric(12, 2), nullable=False),
        sa.Column('active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_payers_active', 'payers', ['active'])

    op.create_table(
        'statements',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('file_name', sa.String(255), nullable=False),
        sa.Column('dialect', sa.String(30), nullable=True),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('total_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('matched_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('unmatched_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('duplicate_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('skipped_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('uploaded_at', sa.DateTime(), nullable=False),
        sa.Column('processed_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_statements_status', 'statements', ['status'])
    op.create_index('ix_statements_uploaded_at', 'statements', ['uploaded_at'])

    op.create_table(
        'payments',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('payer_id', sa.String(36), sa.ForeignKey('payers.id'), nullable=False),
        sa.Column('period_month', sa.Integer(), nullable=False),
        sa.Column('period_year', sa.Integer(), nullable=False),
        sa.Column('amount_paid', sa.Numeric(12, 2), nullable=False, server_default='0'),
        sa.Column('expected_amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('source_transaction_id', sa.String(36), nullable=True),
        sa.Column('matched_automatically', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.UniqueConstraint('payer_id', 'period_month', 'period_year', name='uq_payments_payer_period'),
    )
    op.create_index('ix_payments_status', 'payments', ['status'])

    op.create_table(
        'transactions',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('bank_reference', sa.String(255), nullable=False, unique=True),
        sa.Column('amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('transaction_date', sa.Date(), nullable=False),
        sa.Column('reference', sa.String(255), nullable=True),
        sa.Column('description', sa.Text(), nullable=False),
        sa.Column('balance', sa.Numeric(12, 2), nullable=True),
        sa.Column('sender_name', sa.String(255), nullable=True),
        sa.Column('content_hash', sa.String(64), nullable=True),
        sa.Column('source_kind', sa.String(20), nullable=False),
        sa.Column('status', sa.String(30), nullable=False),
        sa.Column('manually_matched', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('match_notes', sa.Text(), nullable=True),
        sa.Column('statement_id', sa.String(36), sa.ForeignKey('statements.id'), nullable=True),
        sa.Column('payer_id', sa.String(36), sa.ForeignKey('payers.id'), nullable=True),
        sa.Column('payment_id', sa.String(36), sa.ForeignKey('payments.id'), nullable=True),
        sa.Column('raw_data', sa.Text(), nullable=True),
        sa.Column('matched_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_transactions_status', 'transactions', ['status'])
    op.create_index('ix_transactions_statement_id', 'transactions', ['statement_id'])
    op.create_index('ix_transactions_content_hash', 'transactions', ['content_hash'])
    op.create_index('ix_transactions_transaction_date', 'transactions', ['transaction_date'])

    op.create_table(
        'notifications',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('received_at', sa.DateTime(), nullable=False),
        sa.Column('raw_payload', sa.Text(), nullable=False),
        sa.Column('subject', sa.String(500), nullable=True),
        sa.Column('sender', sa.String(255), nullable=True),
        sa.Column('source', sa.String(50), nullable=True),
        sa.Column('duplicate_hash', sa.String(64), nullable=True, unique=True),
        sa.Column('match_status', sa.String(20), nullable=False),
        sa.Column('processed', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('processed_at', sa.DateTime(), nullable=True),
        sa.Column('transaction_date', sa.Date(), nullable=True),
        sa.Column('amount', sa.Numeric(12, 2), nullable=True),
        sa.Column('reference', sa.String(255), nullable=True),
        sa.Column('balance', sa.Numeric(12, 2), nullable=True),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('transaction_type', sa.String(10), nullable=True),
        sa.Column('transaction_id', sa.String(36), sa.ForeignKey('transactions.id'), nullable=True),
        sa.Column('matched_payer_id', sa.String(36), sa.ForeignKey('payers.id'), nullable=True),
        sa.Column('matched_payment_id', sa.String(36), sa.ForeignKey('payments.id'), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('retry_count', sa.Integer(), nullable=False, server_default='0'),
    )
    op.create_index('ix_notifications_match_status', 'notifications', ['match_status'])
    op.create_index('ix_notifications_received_at', 'notifications', ['received_at'])
    op.create_index('ix_notifications_transaction_id', 'notifications', ['transaction_id'])


def downgrade() -> None:
    op.drop_index('ix_notifications_transaction_id', table_name='notifications')
    op.drop_index('ix_notifications_received_at', table_name='notifications')
    op.drop_index('ix_notifications_match_status', table_name='notifications')
    op.drop_table('notifications')

    op.drop_index('ix_transactions_transaction_date', table_name='transactions')
    op.drop_index('ix_transactions_content_hash', table_name='transactions')
    op.drop_index('ix_transactions_statement_id', table_name='transactions')
    op.drop_index('ix_transactions_status', table_name='transactions')
    op.drop_table('transactions')

    op.drop_index('ix_payments_status', table_name='payments')
    op.drop_table('payments')

    op.drop_index('ix_statements_uploaded_at', table_name='statements')
    op.drop_index('ix_statements_status', table_name='statements')
    op.drop_table('statements')

    op.drop_index('ix_payers_active', table_name='payers')
    op.drop_table('payers')
