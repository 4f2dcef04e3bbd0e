"""create recommendation tables

Revision ID: 7c3e91a0d2b4
Revises:
Create Date: 2026-10-18 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '7c3e91a0d2b4'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _tuning_columns():
    return [
        sa.Column('max_candidates', sa.Integer(), nullable=False),
        sa.Column('selected_count', sa.Integer(), nullable=False),
        sa.Column('recent_watch_limit', sa.Integer(), nullable=False),
        sa.Column('similarity_weight', sa.Float(), nullable=False),
        sa.Column('novelty_weight', sa.Float(), nullable=False),
        sa.Column('rating_weight', sa.Float(), nullable=False),
        sa.Column('diversity_weight', sa.Float(), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        'users',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('username', sa.String(), nullable=False),
        sa.Column('provider_user_id', sa.String(), nullable=True),
        sa.Column('is_enabled', sa.Boolean(), server_default='true', nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_users')),
    )
    op.create_table(
        'user_preferences',
        sa.Column('user_id', sa.Uuid(), nullable=False),
        sa.Column('include_watched', sa.Boolean(), server_default='false', nullable=False),
        sa.Column('weight_overrides', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], name=op.f('fk_user_preferences_user_id_users'), ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('user_id', name=op.f('pk_user_preferences')),
    )
    op.create_table(
        'libraries',
        sa.Column('provider_library_id', sa.String(), nullable=False),
        sa.Column('name', sa.String(), server_default='', nullable=False),
        sa.Column('media_type', sa.String(), server_default='movie', nullable=False),
        sa.Column('is_enabled', sa.Boolean(), server_default='true', nullable=False),
        sa.PrimaryKeyConstraint('provider_library_id', name=op.f('pk_libraries')),
    )
    op.create_table(
        'media_items',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('media_type', sa.String(), nullable=False),
        sa.Column('title', sa.String(), nullable=False),
        sa.Column('year', sa.Integer(), nullable=True),
        sa.Column('genres', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column('community_rating', sa.Float(), nullable=True),
        sa.Column('overview', sa.Text(), nullable=True),
        sa.Column('provider_library_id', sa.String(), nullable=True),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_media_items')),
    )
    op.create_index('ix_media_items_media_type', 'media_items', ['media_type'])
    op.create_table(
        'watch_history',
        sa.Column('user_id', sa.Uuid(), nullable=False),
        sa.Column('item_id', sa.Uuid(), nullable=False),
        sa.Column('last_played_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('play_count', sa.Integer(), server_default='0', nullable=False),
        sa.Column('is_favorite', sa.Boolean(), server_default='false', nullable=False),
        sa.ForeignKeyConstraint(['item_id'], ['media_items.id'], name=op.f('fk_watch_history_item_id_media_items'), ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], name=op.f('fk_watch_history_user_id_users'), ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('user_id', 'item_id', name=op.f('pk_watch_history')),
    )
    op.create_index('ix_watch_history_user_lastplayed', 'watch_history', ['user_id', 'last_played_at'])
    op.create_table(
        'taste_profiles',
        sa.Column('user_id', sa.Uuid(), nullable=False),
        sa.Column('media_type', sa.String(), nullable=False),
        sa.Column('embedding', postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column('item_count', sa.Integer(), server_default='0', nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], name=op.f('fk_taste_profiles_user_id_users'), ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('user_id', 'media_type', name=op.f('pk_taste_profiles')),
    )
    op.create_table(
        'recommendation_config',
        sa.Column('media_type', sa.String(), nullable=False),
        *_tuning_columns(),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('media_type', name=op.f('pk_recommendation_config')),
    )
    op.create_table(
        'recommendation_runs',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('user_id', sa.Uuid(), nullable=False),
        sa.Column('media_type', sa.String(), server_default='movie', nullable=False),
        sa.Column('run_type', sa.String(), server_default='scheduled', nullable=False),
        sa.Column('status', sa.String(), server_default='running', nullable=False),
        sa.Column('candidate_count', sa.Integer(), server_default='0', nullable=False),
        sa.Column('selected_count', sa.Integer(), server_default='0', nullable=False),
        sa.Column('duration_ms', sa.Integer(), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], name=op.f('fk_recommendation_runs_user_id_users'), ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_recommendation_runs')),
    )
    op.create_index('ix_recommendation_runs_user_created', 'recommendation_runs', ['user_id', 'created_at'])
    op.create_table(
        'recommendation_candidates',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('run_id', sa.Uuid(), nullable=False),
        sa.Column('item_id', sa.Uuid(), nullable=False),
        sa.Column('rank', sa.Integer(), nullable=False),
        sa.Column('is_selected', sa.Boolean(), server_default='false', nullable=False),
        sa.Column('selected_rank', sa.Integer(), nullable=True),
        sa.Column('final_score', sa.Float(), nullable=False),
        sa.Column('similarity_score', sa.Float(), nullable=False),
        sa.Column('novelty_score', sa.Float(), nullable=False),
        sa.Column('rating_score', sa.Float(), nullable=False),
        sa.Column('diversity_score', sa.Float(), nullable=False),
        sa.Column('score_breakdown', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column('ai_explanation', sa.Text(), nullable=True),
        sa.ForeignKeyConstraint(['item_id'], ['media_items.id'], name=op.f('fk_recommendation_candidates_item_id_media_items'), ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['run_id'], ['recommendation_runs.id'], name=op.f('fk_recommendation_candidates_run_id_recommendation_runs'), ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_recommendation_candidates')),
        sa.UniqueConstraint('run_id', 'item_id', name=op.f('uq_recommendation_candidates_run_id')),
    )
    op.create_index('ix_recommendation_candidates_run_selected', 'recommendation_candidates', ['run_id', 'is_selected'])
    op.create_table(
        'recommendation_evidence',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('candidate_id', sa.Uuid(), nullable=False),
        sa.Column('similar_item_id', sa.Uuid(), nullable=False),
        sa.Column('similarity', sa.Float(), nullable=False),
        sa.Column('evidence_type', sa.String(), nullable=False),
        sa.ForeignKeyConstraint(['candidate_id'], ['recommendation_candidates.id'], name=op.f('fk_recommendation_evidence_candidate_id_recommendation_candidates'), ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['similar_item_id'], ['media_items.id'], name=op.f('fk_recommendation_evidence_similar_item_id_media_items'), ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_recommendation_evidence')),
    )
    op.create_index('ix_recommendation_evidence_candidate', 'recommendation_evidence', ['candidate_id'])


def downgrade() -> None:
    op.drop_index('ix_recommendation_evidence_candidate', table_name='recommendation_evidence')
    op.drop_table('recommendation_evidence')
    op.drop_index('ix_recommendation_candidates_run_selected', table_name='recommendation_candidates')
    op.drop_table('recommendation_candidates')
    op.drop_index('ix_recommendation_runs_user_created', table_name='recommendation_runs')
    op.drop_table('recommendation_runs')
    op.drop_table('recommendation_config')
    op.drop_table('taste_profiles')
    op.drop_index('ix_watch_history_user_lastplayed', table_name='watch_history')
    op.drop_table('watch_history')
    op.drop_index('ix_media_items_media_type', table_name='media_items')
    op.drop_table('media_items')
    op.drop_table('libraries')
    op.drop_table('user_preferences')
    op.drop_table('users')
