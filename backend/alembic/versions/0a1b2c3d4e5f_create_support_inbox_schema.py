"""create support inbox schema

Revision ID: 0a1b2c3d4e5f
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '0a1b2c3d4e5f'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'user_profiles',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('email', sa.String(length=255), nullable=False),
        sa.Column('display_name', sa.String(length=255), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_user_profiles_email', 'user_profiles', ['email'], unique=True)

    op.create_table(
        'gmail_support_emails',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('email', sa.String(length=255), nullable=False),
        sa.Column('encrypted_access_token', sa.Text(), nullable=True),
        sa.Column('encrypted_refresh_token', sa.Text(), nullable=True),
        sa.Column('history_id', sa.BigInteger(), nullable=True),
        sa.Column('watch_expiry', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_gmail_support_emails_email', 'gmail_support_emails', ['email'], unique=True)

    op.create_table(
        'mailboxes',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('slug', sa.String(length=255), nullable=False),
        sa.Column('preferences', sa.JSON(), nullable=True),
        sa.Column('gmail_support_email_id', sa.String(length=36), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(
            ['gmail_support_email_id'], ['gmail_support_emails.id'], ondelete='SET NULL'
        ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('slug'),
    )

    op.create_table(
        'conversations',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('slug', sa.String(length=64), nullable=False),
        sa.Column('subject', sa.Text(), nullable=True),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('conversation_provider', sa.String(length=20), nullable=True),
        sa.Column('source', sa.String(length=20), nullable=True),
        sa.Column('assigned_to_id', sa.String(length=36), nullable=True),
        sa.Column('assigned_to_ai', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('email_from', sa.String(length=255), nullable=True),
        sa.Column('email_from_name', sa.String(length=255), nullable=True),
        sa.Column('anonymous_session_id', sa.String(length=36), nullable=True),
        sa.Column('is_visible', sa.Boolean(), nullable=False, server_default='true'),
        sa.Column('merged_into_id', sa.String(length=36), nullable=True),
        sa.Column('last_message_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_user_email_created_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_read_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('closed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['assigned_to_id'], ['user_profiles.id'], ondelete='SET NULL'),
        sa.ForeignKeyConstraint(['merged_into_id'], ['conversations.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_conversations_slug', 'conversations', ['slug'], unique=True)
    op.create_index('ix_conversations_assigned_to_id', 'conversations', ['assigned_to_id'])
    op.create_index('ix_conversations_email_from', 'conversations', ['email_from'])

    op.create_table(
        'conversation_messages',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('conversation_id', sa.String(length=36), nullable=False),
        sa.Column('role', sa.String(length=20), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=True),
        sa.Column('user_id', sa.String(length=36), nullable=True),
        sa.Column('gmail_message_id', sa.String(length=255), nullable=True),
        sa.Column('gmail_thread_id', sa.String(length=255), nullable=True),
        sa.Column('message_id', sa.Text(), nullable=True),
        sa.Column('references', sa.Text(), nullable=True),
        sa.Column('email_from', sa.String(length=255), nullable=True),
        sa.Column('email_to', sa.Text(), nullable=True),
        sa.Column('email_cc', sa.JSON(), nullable=True),
        sa.Column('email_bcc', sa.JSON(), nullable=True),
        sa.Column('body', sa.Text(), nullable=True),
        sa.Column('cleaned_up_text', sa.Text(), nullable=True),
        sa.Column('is_pinned', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('is_perfect', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('is_flagged_as_bad', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('response_to_id', sa.String(length=36), nullable=True),
        sa.Column('metadata', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['conversation_id'], ['conversations.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['user_id'], ['user_profiles.id'], ondelete='SET NULL'),
        sa.ForeignKeyConstraint(
            ['response_to_id'], ['conversation_messages.id'], ondelete='SET NULL'
        ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('gmail_message_id'),
    )
    op.create_index(
        'ix_conversation_messages_conversation_id', 'conversation_messages', ['conversation_id']
    )
    op.create_index(
        'ix_conversation_messages_gmail_thread_id', 'conversation_messages', ['gmail_thread_id']
    )

    op.create_table(
        'conversation_events',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('conversation_id', sa.String(length=36), nullable=False),
        sa.Column('type', sa.String(length=50), nullable=False),
        sa.Column('changes', sa.JSON(), nullable=False),
        sa.Column('by_user_id', sa.String(length=36), nullable=True),
        sa.Column('reason', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['conversation_id'], ['conversations.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(
        'ix_conversation_events_conversation_id', 'conversation_events', ['conversation_id']
    )
    op.create_index('ix_conversation_events_by_user_id', 'conversation_events', ['by_user_id'])
    op.create_index(
        'ix_conversation_events_type_created_at', 'conversation_events', ['type', 'created_at']
    )

    op.create_table(
        'files',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('slug', sa.String(length=64), nullable=False),
        sa.Column('message_id', sa.String(length=36), nullable=True),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('key', sa.Text(), nullable=False),
        sa.Column('mimetype', sa.String(length=255), nullable=False),
        sa.Column('size', sa.BigInteger(), nullable=False),
        sa.Column('is_inline', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('is_public', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('preview_key', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(
            ['message_id'], ['conversation_messages.id'], ondelete='CASCADE'
        ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('slug'),
    )
    op.create_index('ix_files_message_id', 'files', ['message_id'])

    op.create_table(
        'jobs',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('event', sa.String(length=100), nullable=False),
        sa.Column('job', sa.String(length=100), nullable=False),
        sa.Column('payload', sa.JSON(), nullable=False),
        sa.Column('run_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('dispatched_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_jobs_status_run_at', 'jobs', ['status', 'run_at'])


def downgrade() -> None:
    op.drop_index('ix_jobs_status_run_at', table_name='jobs')
    op.drop_table('jobs')
    op.drop_index('ix_files_message_id', table_name='files')
    op.drop_table('files')
    op.drop_index('ix_conversation_events_type_created_at', table_name='conversation_events')
    op.drop_index('ix_conversation_events_by_user_id', table_name='conversation_events')
    op.drop_index('ix_conversation_events_conversation_id', table_name='conversation_events')
    op.drop_table('conversation_events')
    op.drop_index('ix_conversation_messages_gmail_thread_id', table_name='conversation_messages')
    op.drop_index('ix_conversation_messages_conversation_id', table_name='conversation_messages')
    op.drop_table('conversation_messages')
    op.drop_index('ix_conversations_email_from', table_name='conversations')
    op.drop_index('ix_conversations_assigned_to_id', table_name='conversations')
    op.drop_index('ix_conversations_slug', table_name='conversations')
    op.drop_table('conversations')
    op.drop_table('mailboxes')
    op.drop_index('ix_gmail_support_emails_email', table_name='gmail_support_emails')
    op.drop_table('gmail_support_emails')
    op.drop_index('ix_user_profiles_email', table_name='user_profiles')
    op.drop_table('user_profiles')
