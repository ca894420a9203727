"""Add dataset_entries

Revision ID: 002_dataset_entries
Revises: 001_initial
Create Date: 2026-10-17

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '002_dataset_entries'
down_revision: Union[str, None] = '001_initial'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Create dataset_entries table (one training record per completed job)
    op.create_table(
        'dataset_entries',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('job_id', sa.String(36), nullable=False, unique=True),
        sa.Column('fingerprint', sa.String(64), nullable=False, index=True),
        sa.Column('source_key', sa.String(64), nullable=False, index=True),
        sa.Column('input_features', sa.JSON(), nullable=False),
        sa.Column('output_features', sa.JSON(), nullable=False),
        sa.Column('generation', sa.JSON(), nullable=False),
        sa.Column('dataset_version', sa.String(16), nullable=False, server_default='2.0.0'),
        sa.Column('is_validated', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('included_in_training', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index(
        'ix_dataset_entries_training',
        'dataset_entries',
        ['is_validated', 'included_in_training'],
    )


def downgrade() -> None:
    op.drop_index('ix_dataset_entries_training', table_name='dataset_entries')
    op.drop_table('dataset_entries')
