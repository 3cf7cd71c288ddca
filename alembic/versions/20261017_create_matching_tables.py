"""create matching_queue and match_analytics tables

Revision ID: 3f1c9a7d2b10
Revises: 
Create Date: 2026-10-17 09:12:44.518203

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = '3f1c9a7d2b10'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'matching_queue',
        sa.Column('id', sa.String(64), primary_key=True),
        sa.Column('user_id', sa.String(255), nullable=False),
        sa.Column('available_from', sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column('available_to', sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column('constraints', postgresql.JSONB, nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('matched_with', sa.String(255), nullable=True),
        sa.Column('match_id', sa.String(255), nullable=True),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column('updated_at', sa.TIMESTAMP(timezone=True), nullable=False),
        sa.CheckConstraint(
            "status IN ('waiting', 'matched', 'expired', 'cancelled')",
            name='ck_matching_queue_status'
        ),
        sa.CheckConstraint('available_to > available_from', name='ck_matching_queue_window'),
    )

    op.create_index('matching_queue_user_id_idx', 'matching_queue', ['user_id'])
    op.create_index('matching_queue_status_created_idx', 'matching_queue', ['status', 'created_at'])

    # At most one waiting entry per user
    op.execute(
        "CREATE UNIQUE INDEX uq_matching_queue_waiting_user "
        "ON matching_queue (user_id) WHERE status = 'waiting'"
    )

    op.create_table(
        'match_analytics',
        sa.Column('id', sa.String(64), primary_key=True),
        sa.Column('match_id', sa.String(255), nullable=False),
        sa.Column('user_id', sa.String(255), nullable=False),
        sa.Column('outcome', sa.String(20), nullable=False),
        sa.Column('score', sa.Float, nullable=False),
        sa.Column('features', postgresql.JSONB, nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column('weights', postgresql.JSONB, nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column('feedback_rating', sa.SmallInteger, nullable=True),
        sa.Column('feedback_comments', sa.Text, nullable=True),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column('updated_at', sa.TIMESTAMP(timezone=True), nullable=False),
        sa.CheckConstraint(
            "outcome IN ('accepted', 'declined', 'completed')",
            name='ck_match_analytics_outcome'
        ),
        sa.CheckConstraint(
            'feedback_rating IS NULL OR feedback_rating BETWEEN 1 AND 5',
            name='ck_match_analytics_rating'
        ),
    )

    op.create_index(
        'match_analytics_match_user_idx', 'match_analytics', ['match_id', 'user_id'], unique=True
    )
    op.create_index('match_analytics_user_id_idx', 'match_analytics', ['user_id'])
    op.create_index('match_analytics_created_at_idx', 'match_analytics', ['created_at'])


def downgrade() -> None:
    op.drop_index('match_analytics_created_at_idx')
    op.drop_index('match_analytics_user_id_idx')
    op.drop_index('match_analytics_match_user_idx')
    op.drop_table('match_analytics')

    op.execute("DROP INDEX IF EXISTS uq_matching_queue_waiting_user")
    op.drop_index('matching_queue_status_created_idx')
    op.drop_index('matching_queue_user_id_idx')
    op.drop_table('matching_queue')
