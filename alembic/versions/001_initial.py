"""Initial migration

Captures, analysis queue, device uploads, analysis history and tags.
This numeric-prefixed lineage is the canonical schema history.

Revision ID: 001_initial
Revises:
Create Date: 2026-10-19

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '001_initial'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Create captures table
    op.create_table(
        'captures',
        sa.Column('id', postgresql.UUID(as_uuid=False), primary_key=True),
        sa.Column('user_id', postgresql.UUID(as_uuid=False), nullable=True, index=True),
        sa.Column('author_name', sa.String(255), nullable=True),
        sa.Column('device_local_id', sa.String(255), nullable=True, index=True),
        sa.Column('image_url', sa.Text(), nullable=False),
        sa.Column('thumbnail_url', sa.Text(), nullable=True),
        sa.Column('image_size', sa.BigInteger(), nullable=True),
        sa.Column('storage_type', sa.String(50), nullable=False, server_default='s3'),
        sa.Column('vision_result', postgresql.JSON(), nullable=True),
        sa.Column('category', sa.String(100), nullable=True, index=True),
        sa.Column('confidence', sa.Float(), nullable=True),
        sa.Column('tags', postgresql.JSON(), nullable=True),
        sa.Column('difficulty', sa.String(50), nullable=False, server_default='MEDIUM', index=True),
        sa.Column('verified', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('location', postgresql.JSON(), nullable=True),
        sa.Column('location_info', postgresql.JSON(), nullable=True),
        sa.Column('orientation', postgresql.JSON(), nullable=True),
        sa.Column('captured_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('is_public', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('is_deleted', sa.Boolean(), nullable=False, server_default=sa.false(), index=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), index=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    # Create analysis_queue table
    op.create_table(
        'analysis_queue',
        sa.Column('id', postgresql.UUID(as_uuid=False), primary_key=True),
        sa.Column('capture_id', postgresql.UUID(as_uuid=False), sa.ForeignKey('captures.id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('status', sa.String(50), nullable=False, server_default='pending', index=True),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('max_attempts', sa.Integer(), nullable=False, server_default='5'),
        sa.Column('retryable', sa.Boolean(), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('reanalyze', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('claim_token', sa.String(36), nullable=True),
        sa.Column('claimed_by', sa.String(255), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('queued_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('available_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('last_attempt', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
    )
    # At most one pending/in_progress entry per capture
    op.create_index(
        'uq_analysis_queue_active_capture',
        'analysis_queue',
        ['capture_id'],
        unique=True,
        postgresql_where=sa.text("status IN ('pending', 'in_progress')"),
    )
    op.create_index(
        'ix_analysis_queue_claimable',
        'analysis_queue',
        ['status', 'available_at', 'queued_at'],
    )

    # Create device_uploads table
    op.create_table(
        'device_uploads',
        sa.Column('id', postgresql.UUID(as_uuid=False), primary_key=True),
        sa.Column('device_id', sa.String(255), nullable=False, index=True),
        sa.Column('device_local_id', sa.String(255), nullable=False),
        sa.Column('server_capture_id', postgresql.UUID(as_uuid=False), sa.ForeignKey('captures.id', ondelete='SET NULL'), nullable=True, index=True),
        sa.Column('status', sa.String(50), nullable=False, server_default='pending', index=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('last_attempt', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint('device_id', 'device_local_id', name='uq_device_uploads_device_local'),
    )

    # Create analysis_results table
    op.create_table(
        'analysis_results',
        sa.Column('id', postgresql.UUID(as_uuid=False), primary_key=True),
        sa.Column('capture_id', postgresql.UUID(as_uuid=False), sa.ForeignKey('captures.id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('model_name', sa.String(100), nullable=False),
        sa.Column('model_version', sa.String(50), nullable=False),
        sa.Column('result', postgresql.JSON(), nullable=False),
        sa.Column('confidence', sa.Float(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), index=True),
    )

    # Create tags tables
    op.create_table(
        'tags',
        sa.Column('id', postgresql.UUID(as_uuid=False), primary_key=True),
        sa.Column('name', sa.String(100), nullable=False, unique=True, index=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_table(
        'capture_tags',
        sa.Column('capture_id', postgresql.UUID(as_uuid=False), sa.ForeignKey('captures.id', ondelete='CASCADE'), primary_key=True),
        sa.Column('tag_id', postgresql.UUID(as_uuid=False), sa.ForeignKey('tags.id', ondelete='CASCADE'), primary_key=True, index=True),
    )


def downgrade() -> None:
    op.drop_table('capture_tags')
    op.drop_table('tags')
    op.drop_table('analysis_results')
    op.drop_table('device_uploads')
    op.drop_index('ix_analysis_queue_claimable', table_name='analysis_queue')
    op.drop_index('uq_analysis_queue_active_capture', table_name='analysis_queue')
    op.drop_table('analysis_queue')
    op.drop_table('captures')
