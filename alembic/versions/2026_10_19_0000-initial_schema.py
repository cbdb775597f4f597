"""initial schema

Revision ID: 2026_10_19_0000
Revises:
Create Date: 2026-10-19 08:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID


# revision identifiers, used by Alembic.
revision: str = '2026_10_19_0000'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create initial database schema."""

    # ========================================================================
    # Create accounts table
    # ========================================================================
    op.create_table(
        'accounts',
        sa.Column('user_id', sa.String(128), primary_key=True),
        sa.Column('email', sa.String(255), nullable=True),
        sa.Column('display_name', sa.String(255), nullable=True),
        sa.Column('credit_balance', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('balance_projected_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        sa.CheckConstraint('credit_balance >= 0', name='ck_credit_balance_non_negative'),
    )
    op.create_index('idx_accounts_email', 'accounts', ['email'], postgresql_where=sa.text('email IS NOT NULL'))

    # ========================================================================
    # Create ledger_entries table (append-only)
    # ========================================================================
    op.create_table(
        'ledger_entries',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('user_id', sa.String(128), nullable=False),
        sa.Column('amount', sa.BigInteger(), nullable=False),
        sa.Column('reason', sa.String(30), nullable=False),
        sa.Column('external_ref', sa.String(255), nullable=True),
        sa.Column('description', sa.Text(), nullable=False),
        sa.Column('balance_after', sa.BigInteger(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        sa.CheckConstraint('amount <> 0', name='ck_ledger_amount_non_zero'),
        sa.CheckConstraint('balance_after >= 0', name='ck_ledger_balance_after_non_negative'),
        sa.CheckConstraint(
            "reason IN ('purchase', 'vote-cast', 'vote-package', 'admin-grant', 'admin-correction')",
            name='ck_ledger_reason',
        ),
        sa.UniqueConstraint('user_id', 'external_ref', name='uq_ledger_user_external_ref'),
        sa.ForeignKeyConstraint(['user_id'], ['accounts.user_id'], name='fk_ledger_entries_account', ondelete='RESTRICT'),
    )
    op.create_index('idx_ledger_entries_user_created', 'ledger_entries', ['user_id', 'created_at'])
    op.create_index('idx_ledger_entries_reason', 'ledger_entries', ['reason'])

    # Ledger entries are immutable
    op.execute("""
        CREATE OR REPLACE FUNCTION reject_ledger_entry_change() RETURNS trigger AS $$
        BEGIN
            RAISE EXCEPTION 'ledger_entries is append-only';
        END;
        $$ LANGUAGE plpgsql;
    """)
    op.execute("""
        CREATE TRIGGER ledger_entries_append_only
        BEFORE UPDATE OR DELETE ON ledger_entries
        FOR EACH ROW EXECUTE FUNCTION reject_ledger_entry_change();
    """)

    # ========================================================================
    # Create contests table
    # ========================================================================
    op.create_table(
        'contests',
        sa.Column('id', sa.String(128), primary_key=True),
        sa.Column('title', sa.String(255), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='draft'),
        sa.Column('voting_starts_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('voting_ends_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        sa.CheckConstraint(
            "status IN ('draft', 'upcoming', 'submission', 'voting', 'ended', 'announced')",
            name='ck_contest_status',
        ),
    )
    op.create_index('idx_contests_status', 'contests', ['status'])

    # ========================================================================
    # Create submissions table
    # ========================================================================
    op.create_table(
        'submissions',
        sa.Column('id', sa.String(128), primary_key=True),
        sa.Column('contest_id', sa.String(128), nullable=False),
        sa.Column('author_id', sa.String(128), nullable=False),
        sa.Column('title', sa.String(255), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('votes_free', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('votes_premium', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('votes_super', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('votes_total', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('votes_weighted_total', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        sa.CheckConstraint(
            "status IN ('pending', 'approved', 'rejected', 'disqualified')",
            name='ck_submission_status',
        ),
        sa.CheckConstraint('votes_total >= 0', name='ck_submission_votes_total_non_negative'),
        sa.CheckConstraint('votes_weighted_total >= 0', name='ck_submission_weighted_total_non_negative'),
        sa.ForeignKeyConstraint(['contest_id'], ['contests.id'], name='fk_submissions_contest', ondelete='RESTRICT'),
    )
    op.create_index('idx_submissions_contest_weighted', 'submissions', ['contest_id', 'votes_weighted_total'])

    # ========================================================================
    # Create vote_allowances table
    # ========================================================================
    op.create_table(
        'vote_allowances',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('user_id', sa.String(128), nullable=False),
        sa.Column('contest_id', sa.String(128), nullable=False),
        sa.Column('free_remaining', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('premium_remaining', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('super_remaining', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('free_used', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('premium_used', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('super_used', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('daily_streak', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_daily_claim_on', sa.Date(), nullable=True),
        sa.Column('last_vote_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        sa.CheckConstraint('free_remaining >= 0', name='ck_allowance_free_non_negative'),
        sa.CheckConstraint('premium_remaining >= 0', name='ck_allowance_premium_non_negative'),
        sa.CheckConstraint('super_remaining >= 0', name='ck_allowance_super_non_negative'),
        sa.UniqueConstraint('user_id', 'contest_id', name='uq_allowance_user_contest'),
        sa.ForeignKeyConstraint(['contest_id'], ['contests.id'], name='fk_allowances_contest', ondelete='RESTRICT'),
    )

    # ========================================================================
    # Create votes table
    # ========================================================================
    op.create_table(
        'votes',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('user_id', sa.String(128), nullable=False),
        sa.Column('contest_id', sa.String(128), nullable=False),
        sa.Column('submission_id', sa.String(128), nullable=False),
        sa.Column('tier', sa.String(10), nullable=False),
        sa.Column('weight', sa.Integer(), nullable=False),
        sa.Column('cast_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        sa.CheckConstraint('weight > 0', name='ck_vote_weight_positive'),
        sa.CheckConstraint("tier IN ('free', 'premium', 'super')", name='ck_vote_tier'),
        sa.ForeignKeyConstraint(['submission_id'], ['submissions.id'], name='fk_votes_submission', ondelete='RESTRICT'),
    )
    op.create_index('idx_votes_submission', 'votes', ['submission_id'])
    op.create_index('idx_votes_user_contest', 'votes', ['user_id', 'contest_id'])

    # ========================================================================
    # Create view_fingerprints and view_counters tables
    # ========================================================================
    op.create_table(
        'view_fingerprints',
        sa.Column('fingerprint', sa.String(64), primary_key=True),
        sa.Column('content_id', sa.String(128), nullable=False),
        sa.Column('view_day', sa.Date(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
    )
    op.create_index('idx_view_fingerprints_day', 'view_fingerprints', ['view_day'])

    op.create_table(
        'view_counters',
        sa.Column('content_id', sa.String(128), primary_key=True),
        sa.Column('views', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        sa.CheckConstraint('views >= 0', name='ck_view_counter_non_negative'),
    )

    # ========================================================================
    # Create payment_settlements table
    # ========================================================================
    op.create_table(
        'payment_settlements',
        sa.Column('session_id', sa.String(255), primary_key=True),
        sa.Column('user_id', sa.String(128), nullable=False),
        sa.Column('ledger_entry_id', UUID(as_uuid=True), nullable=False),
        sa.Column('credits', sa.BigInteger(), nullable=False),
        sa.Column('balance_after', sa.BigInteger(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        sa.CheckConstraint('credits > 0', name='ck_settlement_credits_positive'),
        sa.ForeignKeyConstraint(['ledger_entry_id'], ['ledger_entries.id'], name='fk_settlements_ledger_entry', ondelete='RESTRICT'),
    )
    op.create_index('idx_payment_settlements_user', 'payment_settlements', ['user_id'])


def downgrade() -> None:
    """Drop all tables."""
    op.drop_table('payment_settlements')
    op.drop_table('view_counters')
    op.drop_table('view_fingerprints')
    op.drop_table('votes')
    op.drop_table('vote_allowances')
    op.drop_table('submissions')
    op.drop_table('contests')
    op.execute('DROP TRIGGER IF EXISTS ledger_entries_append_only ON ledger_entries')
    op.execute('DROP FUNCTION IF EXISTS reject_ledger_entry_change()')
    op.drop_table('ledger_entries')
    op.drop_table('accounts')
