"""Create processed_images table

Revision ID: 001_processed_images
Revises:
Create Date: 2026-10-18

One row per uploaded image: blob keys and URLs for the original and the
processed output, pipeline status, upload metadata, session grouping key
and retention timestamp.
"""
from alembic import op
import sqlalchemy as sa

# revision identifiers
revision = '001_processed_images'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        'processed_images',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column('original_filename', sa.String(), nullable=False),
        sa.Column('content_type', sa.String(), nullable=False, server_default='application/octet-stream'),
        sa.Column('file_size', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('original_width', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('original_height', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('dimensions', sa.JSON(), nullable=True),
        sa.Column('original_storage_key', sa.String(), nullable=False),
        sa.Column('original_url', sa.String(), nullable=False),
        sa.Column('processed_storage_key', sa.String(), nullable=True),
        sa.Column('processed_url', sa.String(), nullable=True),
        sa.Column('status', sa.String(), nullable=False, server_default='pending'),
        sa.Column('error_message', sa.String(), nullable=True),
        sa.Column('processing_time_ms', sa.Integer(), nullable=True),
        sa.Column('user_session_id', sa.String(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('expires_at', sa.DateTime(), nullable=True),
    )

    op.create_index('ix_processed_images_status', 'processed_images', ['status'])
    op.create_index('ix_processed_images_user_session_id', 'processed_images', ['user_session_id'])
    op.create_index('ix_processed_images_created_at', 'processed_images', ['created_at'])
    op.create_index('ix_processed_images_expires_at', 'processed_images', ['expires_at'])


def downgrade() -> None:
    op.drop_index('ix_processed_images_expires_at', table_name='processed_images')
    op.drop_index('ix_processed_images_created_at', table_name='processed_images')
    op.drop_index('ix_processed_images_user_session_id', table_name='processed_images')
    op.drop_index('ix_processed_images_status', table_name='processed_images')
    op.drop_table('processed_images')
