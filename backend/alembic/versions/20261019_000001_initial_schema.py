"""initial mail archiver schema

Revision ID: mail_archiver_0001
Revises:
Create Date: 2026-10-19

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = 'mail_archiver_0001'
down_revision = None
branch_labels = None
depends_on = None

json_type = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")


def _timestamps(updated=True):
    cols = [sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now())]
    if updated:
        cols.append(sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()))
    return cols


def upgrade():
    op.create_table(
        'email_accounts',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('email', sa.String(320), nullable=False),
        sa.Column('display_name', sa.String(255), nullable=True),
        sa.Column('provider', sa.String(32), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('access_token', sa.Text(), nullable=True),
        sa.Column('refresh_token', sa.Text(), nullable=True),
        sa.Column('token_expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('imap_host', sa.String(255), nullable=True),
        sa.Column('imap_port', sa.Integer(), nullable=True),
        sa.Column('imap_secure', sa.Boolean(), nullable=True),
        sa.Column('imap_user', sa.String(320), nullable=True),
        sa.Column('imap_password', sa.Text(), nullable=True),
        *_timestamps(),
    )
    op.create_index('ix_email_accounts_email', 'email_accounts', ['email'])
    op.create_index('ix_email_accounts_provider', 'email_accounts', ['provider'])

    op.create_table(
        'account_settings',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('account_id', sa.String(36), sa.ForeignKey('email_accounts.id', ondelete='CASCADE'), nullable=False),
        sa.Column('sync_frequency', sa.String(64), nullable=False, server_default='0 * * * *'),
        sa.Column('sync_paused', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('auto_delete_mode', sa.String(16), nullable=False, server_default='off'),
        sa.Column('delete_delay_hours', sa.Integer(), nullable=True),
        sa.Column('delete_age_months', sa.Integer(), nullable=True),
        sa.Column('delete_only_archived', sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
    )
    op.create_index('ix_account_settings_account_id', 'account_settings', ['account_id'], unique=True)

    op.create_table(
        'folders',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('account_id', sa.String(36), sa.ForeignKey('email_accounts.id', ondelete='CASCADE'), nullable=False),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('path', sa.String(512), nullable=False),
        sa.Column('provider_folder_id', sa.String(255), nullable=True),
        sa.Column('last_sync_id', sa.String(255), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint('account_id', 'path', name='uq_folders_account_path'),
    )
    op.create_index('ix_folders_account_id', 'folders', ['account_id'])

    op.create_table(
        'emails',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('account_id', sa.String(36), sa.ForeignKey('email_accounts.id', ondelete='CASCADE'), nullable=False),
        sa.Column('folder_id', sa.String(36), sa.ForeignKey('folders.id', ondelete='SET NULL'), nullable=True),
        sa.Column('message_id', sa.String(998), nullable=False),
        sa.Column('provider_id', sa.String(255), nullable=True),
        sa.Column('thread_id', sa.String(255), nullable=True),
        sa.Column('subject', sa.Text(), nullable=True),
        sa.Column('from_address', sa.Text(), nullable=True),
        sa.Column('to_addresses', sa.Text(), nullable=True),
        sa.Column('cc_addresses', sa.Text(), nullable=True),
        sa.Column('bcc_addresses', sa.Text(), nullable=True),
        sa.Column('reply_to', sa.Text(), nullable=True),
        sa.Column('date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('text_content', sa.Text(), nullable=True),
        sa.Column('html_content', sa.Text(), nullable=True),
        sa.Column('labels', json_type, nullable=True),
        sa.Column('size', sa.BigInteger(), nullable=True),
        sa.Column('has_attachments', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('eml_path', sa.Text(), nullable=True),
        sa.Column('is_read', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('is_important', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('is_spam', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('is_archived', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('is_deleted', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('marked_for_deletion', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('marked_for_deletion_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('synced_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        *_timestamps(),
        sa.UniqueConstraint('account_id', 'message_id', name='uq_emails_account_message'),
    )
    op.create_index('ix_emails_account_id', 'emails', ['account_id'])
    op.create_index('ix_emails_date', 'emails', ['date'])
    op.create_index('ix_emails_account_provider_id', 'emails', ['account_id', 'provider_id'])
    op.create_index('ix_emails_account_marked', 'emails', ['account_id', 'marked_for_deletion'])

    op.create_table(
        'attachments',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('email_id', sa.String(36), sa.ForeignKey('emails.id', ondelete='CASCADE'), nullable=False),
        sa.Column('filename', sa.String(512), nullable=False),
        sa.Column('content_type', sa.String(255), nullable=False),
        sa.Column('size', sa.BigInteger(), nullable=False),
        sa.Column('file_path', sa.Text(), nullable=False),
        sa.Column('scan_status', sa.String(16), nullable=False, server_default='unscanned'),
        *_timestamps(updated=False),
    )
    op.create_index('ix_attachments_email_id', 'attachments', ['email_id'])

    op.create_table(
        'failed_sync_messages',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('account_id', sa.String(36), sa.ForeignKey('email_accounts.id', ondelete='CASCADE'), nullable=False),
        sa.Column('message_id', sa.String(998), nullable=False),
        sa.Column('failure_reason', sa.Text(), nullable=False),
        *_timestamps(updated=False),
    )
    op.create_index('ix_failed_sync_messages_account_id', 'failed_sync_messages', ['account_id'])

    op.create_table(
        'jobs',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('task_type', sa.String(32), nullable=False),
        sa.Column('payload', json_type, nullable=False),
        sa.Column('account_id', sa.String(36), nullable=True),
        sa.Column('run_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('priority', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('max_attempts', sa.Integer(), nullable=False, server_default='3'),
        sa.Column('key', sa.String(255), nullable=True, unique=True),
        sa.Column('locked_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('locked_by', sa.String(128), nullable=True),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('failed_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index('ix_jobs_task_type', 'jobs', ['task_type'])
    op.create_index('ix_jobs_eligible', 'jobs', ['locked_at', 'priority', 'run_at'])
    op.create_index('ix_jobs_account_task', 'jobs', ['account_id', 'task_type'])

    op.create_table(
        'job_status',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('account_id', sa.String(36), nullable=False),
        sa.Column('job_type', sa.String(32), nullable=False),
        sa.Column('last_run_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('success', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('error', sa.Text(), nullable=True),
        sa.Column('metadata', json_type, nullable=True),
        *_timestamps(),
        sa.UniqueConstraint('account_id', 'job_type', name='uq_job_status_account_type'),
    )
    op.create_index('ix_job_status_account_id', 'job_status', ['account_id'])

    op.create_table(
        'background_workers',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('worker_name', sa.String(128), nullable=False),
        sa.Column('interval_seconds', sa.Integer(), nullable=True),
        sa.Column('last_started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_finished_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_status', sa.String(32), nullable=True),
        sa.Column('last_error_message', sa.Text(), nullable=True),
        sa.Column('runs_ok_in_row', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('runs_error_in_row', sa.Integer(), nullable=False, server_default='0'),
        *_timestamps(),
    )
    op.create_index('ix_background_workers_worker_name', 'background_workers', ['worker_name'], unique=True)


def downgrade():
    op.drop_table('background_workers')
    op.drop_table('job_status')
    op.drop_table('jobs')
    op.drop_table('failed_sync_messages')
    op.drop_table('attachments')
    op.drop_table('emails')
    op.drop_table('folders')
    op.drop_table('account_settings')
    op.drop_table('email_accounts')
