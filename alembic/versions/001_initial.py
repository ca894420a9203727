"""Initial migration

Revision ID: 001_initial
Revises: 
Create Date: 2026-10-17

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
    # Create jobs table
    op.create_table(
        'jobs',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('fingerprint', sa.String(64), nullable=False, index=True),
        sa.Column('active_fingerprint', sa.String(64), nullable=True, unique=True),
        sa.Column('identity', sa.String(128), nullable=False, index=True),
        sa.Column('source_reference', sa.Text(), nullable=False),
        sa.Column('normalized_source', sa.Text(), nullable=False),
        sa.Column('idea', sa.Text(), nullable=False),
        sa.Column('hints', sa.JSON(), nullable=True),
        sa.Column('status', sa.Enum('queued', 'processing', 'completed', 'failed', name='jobstatus'), nullable=False, index=True),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('is_fallback', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('processing_time_ms', sa.Integer(), nullable=True),
    )

    # Create scripts table
    op.create_table(
        'scripts',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('fingerprint', sa.String(64), nullable=False, unique=True),
        sa.Column('public_id', sa.String(16), nullable=False, unique=True),
        sa.Column('identity', sa.String(128), nullable=False, index=True),
        sa.Column('source_reference', sa.Text(), nullable=False),
        sa.Column('source_key', sa.String(64), nullable=False, index=True),
        sa.Column('idea', sa.Text(), nullable=False),
        sa.Column('result_text', sa.Text(), nullable=False),
        sa.Column('result_image_ref', sa.Text(), nullable=True),
        sa.Column('is_fallback', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('generation_timings', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    # Create reel_analyses table (analysis cache)
    op.create_table(
        'reel_analyses',
        sa.Column('cache_key', sa.String(64), primary_key=True),
        sa.Column('normalized_source', sa.Text(), nullable=False),
        sa.Column('analysis_payload', sa.JSON(), nullable=False),
        sa.Column('backend', sa.String(64), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    # Create rate_limit_counters table
    op.create_table(
        'rate_limit_counters',
        sa.Column('identity', sa.String(128), primary_key=True),
        sa.Column('window_start', sa.DateTime(timezone=True), nullable=False),
        sa.Column('count', sa.Integer(), nullable=False, server_default='0'),
    )


def downgrade() -> None:
    op.drop_table('rate_limit_counters')
    op.drop_table('reel_analyses')
    op.drop_table('scripts')
    op.drop_table('jobs')

    op.execute('DROP TYPE IF EXISTS jobstatus')
