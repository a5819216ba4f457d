"""Create image_tasks table

Revision ID: 001_image_tasks
Revises:
Create Date: 2026-10-17

One row per background-removal request accepted by the processor.
"""
from alembic import op
import sqlalchemy as sa

# revision identifiers
revision = '001_image_tasks'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        'image_tasks',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column('owner_id', sa.String(), nullable=True),
        sa.Column('process_id', sa.String(), nullable=False),
        sa.Column('original_filename', sa.String(), nullable=False, server_default=''),
        sa.Column('source_url_hq', sa.String(), nullable=True),
        sa.Column('source_url_lq', sa.String(), nullable=True),
        sa.Column('result_filename_hq', sa.String(), nullable=True),
        sa.Column('result_filename_lq', sa.String(), nullable=True),
        sa.Column('result_url_hq', sa.String(), nullable=True),
        sa.Column('result_url_lq', sa.String(), nullable=True),
        sa.Column('status', sa.String(), nullable=False, server_default='queued'),
        sa.Column('failure_kind', sa.String(), nullable=True),
        sa.Column('last_error', sa.String(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
    )
    op.create_index('ix_image_tasks_owner_id', 'image_tasks', ['owner_id'])
    op.create_index('ix_image_tasks_process_id', 'image_tasks', ['process_id'], unique=True)
    op.create_index('ix_image_tasks_status', 'image_tasks', ['status'])
    op.create_index('ix_image_tasks_created_at', 'image_tasks', ['created_at'])


def downgrade() -> None:
    op.drop_index('ix_image_tasks_created_at', table_name='image_tasks')
    op.drop_index('ix_image_tasks_status', table_name='image_tasks')
    op.drop_index('ix_image_tasks_process_id', table_name='image_tasks')
    op.drop_index('ix_image_tasks_owner_id', table_name='image_tasks')
    op.drop_table('image_tasks')
