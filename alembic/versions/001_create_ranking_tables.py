"""Create ranking and aggregate tables.

Revision ID: 001_create_ranking_tables
Revises:
Create Date: 2026-10-18

This migration adds:
- ranked_entries: every user's ordered ranking, one row per (user, title)
- ranking_lists: optimistic-concurrency version per (user, media type, tier)
- aggregate_ratings: community sum/count/average per title
- aggregate_delta_outbox: score deltas committed with their ranking change
  and not yet applied to aggregate_ratings
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '001_create_ranking_tables'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'ranked_entries',
        sa.Column('user_id', sa.String(128), primary_key=True),
        sa.Column('title_id', sa.String(64), primary_key=True),
        sa.Column('media_type', sa.String(10), nullable=False),  # movie, tv
        sa.Column('tier', sa.String(10), nullable=False),  # liked, neutral, disliked
        sa.Column('rank_index', sa.Integer, nullable=False),
        sa.Column('score', sa.Float, nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index(
        'idx_ranked_entries_list', 'ranked_entries',
        ['user_id', 'media_type', 'tier', 'rank_index'],
    )
    op.create_index('idx_ranked_entries_title', 'ranked_entries', ['title_id'])

    op.create_table(
        'ranking_lists',
        sa.Column('user_id', sa.String(128), primary_key=True),
        sa.Column('media_type', sa.String(10), primary_key=True),
        sa.Column('tier', sa.String(10), primary_key=True),
        sa.Column('version', sa.Integer, nullable=False, server_default='0'),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
    )

    op.create_table(
        'aggregate_ratings',
        sa.Column('title_id', sa.String(64), primary_key=True),
        sa.Column('media_type', sa.String(10), nullable=False),
        sa.Column('sum_of_scores', sa.Float, nullable=False, server_default='0'),
        sa.Column('rating_count', sa.Integer, nullable=False, server_default='0'),
        sa.Column('average_rating', sa.Float, nullable=False, server_default='0'),
        sa.Column('last_updated', sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index('idx_aggregate_ratings_media', 'aggregate_ratings', ['media_type'])

    op.create_table(
        'aggregate_delta_outbox',
        sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('user_id', sa.String(128), nullable=False),
        sa.Column('title_id', sa.String(64), nullable=False),
        sa.Column('media_type', sa.String(10), nullable=False),
        sa.Column('old_score', sa.Float, nullable=True),  # NULL = new contributor
        sa.Column('new_score', sa.Float, nullable=True),  # NULL = contributor removed
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index('idx_delta_outbox_user', 'aggregate_delta_outbox', ['user_id'])


def downgrade() -> None:
    op.drop_table('aggregate_delta_outbox')
    op.drop_table('aggregate_ratings')
    op.drop_table('ranking_lists')
    op.drop_table('ranked_entries')
