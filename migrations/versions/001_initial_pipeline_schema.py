"""Initial pipeline schema.

Creates the raw intake store, the extracted entities with their unique keys,
the derived statistics and ranking tables, and the pipeline tracking tables.

Revision ID: 001
Revises:
Create Date: 2026-10-19

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

JSONType = sa.JSON().with_variant(postgresql.JSONB(), 'postgresql')


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        'raw_records',
        sa.Column('id', sa.BigInteger().with_variant(sa.Integer(), 'sqlite'), autoincrement=True, nullable=False),
        sa.Column('entity_type', sa.String(50), nullable=False),
        sa.Column('external_id', sa.String(255), nullable=False),
        sa.Column('payload', JSONType, nullable=False),
        sa.Column('fetched_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('api_endpoint', sa.Text(), nullable=False),
        sa.Column('etag', sa.String(255), nullable=True),
        sa.Column('is_processed', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('idx_raw_records_entity', 'raw_records', ['entity_type', 'external_id', 'fetched_at'])
    op.create_index('idx_raw_records_endpoint', 'raw_records', ['api_endpoint', 'fetched_at'])
    op.create_index('idx_raw_records_unprocessed', 'raw_records', ['is_processed', 'entity_type'])

    op.create_table(
        'contributors',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('external_id', sa.String(255), nullable=False),
        sa.Column('username', sa.String(255), nullable=True),
        sa.Column('name', sa.String(255), nullable=True),
        sa.Column('avatar', sa.Text(), nullable=True),
        sa.Column('bio', sa.Text(), nullable=True),
        sa.Column('company', sa.String(255), nullable=True),
        sa.Column('location', sa.String(255), nullable=True),
        sa.Column('blog', sa.Text(), nullable=True),
        sa.Column('twitter_username', sa.String(255), nullable=True),
        sa.Column('followers', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('repositories', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('impact_score', sa.Integer(), nullable=True),
        sa.Column('role_classification', sa.String(100), nullable=True),
        sa.Column('top_languages', JSONType, nullable=True),
        sa.Column('organizations', JSONType, nullable=True),
        sa.Column('first_contribution', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_contribution', sa.DateTime(timezone=True), nullable=True),
        sa.Column('direct_commits', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('pull_requests_merged', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('pull_requests_rejected', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('code_reviews', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('is_placeholder', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('is_bot', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('is_enriched', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('enrichment_attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_error', sa.Text(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('external_id'),
    )
    op.create_index('idx_contributors_username', 'contributors', ['username'])
    op.create_index('idx_contributors_enrichment', 'contributors', ['is_enriched', 'enrichment_attempts'])

    op.create_table(
        'repositories',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('external_id', sa.BigInteger(), nullable=False),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('full_name', sa.String(512), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('url', sa.Text(), nullable=True),
        sa.Column('stars', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('forks', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('watchers', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('open_issues', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('size_kb', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('primary_language', sa.String(100), nullable=True),
        sa.Column('languages', JSONType, nullable=True),
        sa.Column('license', sa.String(100), nullable=True),
        sa.Column('default_branch', sa.String(255), nullable=True),
        sa.Column('is_fork', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('is_archived', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('repo_created_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('pushed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('owner_id', sa.Integer(), nullable=True),
        sa.Column('is_tracked', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('is_enriched', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('enrichment_attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('health_percentage', sa.Numeric(5, 2), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(['owner_id'], ['contributors.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('external_id'),
        sa.UniqueConstraint('full_name'),
    )
    op.create_index('idx_repositories_enrichment', 'repositories', ['is_enriched', 'enrichment_attempts'])

    op.create_table(
        'merge_requests',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('external_id', sa.BigInteger(), nullable=False),
        sa.Column('repository_id', sa.Integer(), nullable=False),
        sa.Column('author_id', sa.Integer(), nullable=True),
        sa.Column('title', sa.Text(), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('state', sa.String(20), nullable=False),
        sa.Column('is_draft', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('closed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('merged_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('merged_by_id', sa.Integer(), nullable=True),
        sa.Column('commits_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('additions', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('deletions', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('changed_files', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('labels', JSONType, nullable=True),
        sa.Column('source_branch', sa.String(255), nullable=True),
        sa.Column('target_branch', sa.String(255), nullable=True),
        sa.Column('review_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('comment_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('reviewer_ids', JSONType, nullable=True),
        sa.Column('is_enriched', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('enrichment_attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('row_created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('row_updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(['repository_id'], ['repositories.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['author_id'], ['contributors.id'], ondelete='SET NULL'),
        sa.ForeignKeyConstraint(['merged_by_id'], ['contributors.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('repository_id', 'external_id', name='uq_merge_requests_repo_number'),
    )
    op.create_index('idx_merge_requests_author', 'merge_requests', ['author_id'])
    op.create_index('idx_merge_requests_enrichment', 'merge_requests', ['is_enriched', 'enrichment_attempts'])

    op.create_table(
        'commits',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('sha', sa.String(40), nullable=False),
        sa.Column('repository_id', sa.Integer(), nullable=False),
        sa.Column('contributor_id', sa.Integer(), nullable=True),
        sa.Column('pull_request_id', sa.Integer(), nullable=True),
        sa.Column('author_name', sa.String(255), nullable=True),
        sa.Column('message', sa.Text(), nullable=True),
        sa.Column('committed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('filename', sa.Text(), nullable=False, server_default=''),
        sa.Column('status', sa.String(20), nullable=True),
        sa.Column('additions', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('deletions', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('patch', sa.Text(), nullable=True),
        sa.Column('is_merge_commit', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('is_enriched', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('enrichment_attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_error', sa.Text(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(['repository_id'], ['repositories.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['contributor_id'], ['contributors.id'], ondelete='SET NULL'),
        sa.ForeignKeyConstraint(['pull_request_id'], ['merge_requests.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('sha', 'repository_id', 'filename', name='uq_commits_sha_repo_file'),
    )
    op.create_index('idx_commits_contributor', 'commits', ['contributor_id'])
    op.create_index('idx_commits_repository', 'commits', ['repository_id', 'committed_at'])
    op.create_index('idx_commits_pull_request', 'commits', ['pull_request_id'])

    op.create_table(
        'contributor_repository',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('contributor_id', sa.Integer(), nullable=False),
        sa.Column('repository_id', sa.Integer(), nullable=False),
        sa.Column('commit_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('pull_requests', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('reviews', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('issues_opened', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('lines_added', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('lines_removed', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('first_contribution_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_contribution_date', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(['contributor_id'], ['contributors.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['repository_id'], ['repositories.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('contributor_id', 'repository_id', name='uq_contributor_repository'),
    )
    op.create_index('idx_contributor_repository_repo', 'contributor_repository', ['repository_id'])

    op.create_table(
        'contributor_rankings',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('contributor_id', sa.Integer(), nullable=False),
        sa.Column('rank_position', sa.Integer(), nullable=False),
        sa.Column('total_score', sa.Float(), nullable=False),
        sa.Column('percentile', sa.Float(), nullable=False),
        sa.Column('component_scores', JSONType, nullable=False),
        sa.Column('raw_metrics', JSONType, nullable=False),
        sa.Column('calculation_timestamp', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['contributor_id'], ['contributors.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(
        'idx_contributor_rankings_snapshot', 'contributor_rankings', ['calculation_timestamp', 'rank_position']
    )
    op.create_index(
        'idx_contributor_rankings_contributor', 'contributor_rankings', ['contributor_id', 'calculation_timestamp']
    )

    op.create_table(
        'repository_statistics',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('repository_id', sa.Integer(), nullable=False),
        sa.Column('commit_frequency', JSONType, nullable=True),
        sa.Column('growth', JSONType, nullable=True),
        sa.Column('contributor_counts', JSONType, nullable=True),
        sa.Column('language_breakdown', JSONType, nullable=True),
        sa.Column('health_components', JSONType, nullable=True),
        sa.Column('health_score', sa.Float(), nullable=True),
        sa.Column('computed_at', sa.DateTime(timezone=True), nullable=False),
        *_timestamps(),
        sa.ForeignKeyConstraint(['repository_id'], ['repositories.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('repository_id'),
    )

    op.create_table(
        'scoring_weights',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('dimension', sa.String(50), nullable=False),
        sa.Column('weight', sa.Numeric(6, 4), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('dimension'),
    )

    op.create_table(
        'pipeline_state',
        sa.Column('pipeline_type', sa.String(50), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='idle'),
        sa.Column('is_running', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('stop_requested', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('last_run', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint('pipeline_type'),
    )

    op.create_table(
        'pipeline_runs',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('pipeline_type', sa.String(50), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='running'),
        sa.Column('started_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('items_processed', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('idx_pipeline_runs_type_started', 'pipeline_runs', ['pipeline_type', 'started_at'])
    op.create_index('idx_pipeline_runs_status', 'pipeline_runs', ['status'])

    op.create_table(
        'pipeline_schedules',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('pipeline_type', sa.String(50), nullable=False),
        sa.Column('cron_expression', sa.String(100), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('parameters', JSONType, nullable=True),
        sa.Column('description', sa.Text(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('pipeline_type'),
    )


def downgrade() -> None:
    op.drop_table('pipeline_schedules')
    op.drop_index('idx_pipeline_runs_status', table_name='pipeline_runs')
    op.drop_index('idx_pipeline_runs_type_started', table_name='pipeline_runs')
    op.drop_table('pipeline_runs')
    op.drop_table('pipeline_state')
    op.drop_table('scoring_weights')
    op.drop_table('repository_statistics')
    op.drop_index('idx_contributor_rankings_contributor', table_name='contributor_rankings')
    op.drop_index('idx_contributor_rankings_snapshot', table_name='contributor_rankings')
    op.drop_table('contributor_rankings')
    op.drop_index('idx_contributor_repository_repo', table_name='contributor_repository')
    op.drop_table('contributor_repository')
    op.drop_index('idx_commits_pull_request', table_name='commits')
    op.drop_index('idx_commits_repository', table_name='commits')
    op.drop_index('idx_commits_contributor', table_name='commits')
    op.drop_table('commits')
    op.drop_index('idx_merge_requests_enrichment', table_name='merge_requests')
    op.drop_index('idx_merge_requests_author', table_name='merge_requests')
    op.drop_table('merge_requests')
    op.drop_index('idx_repositories_enrichment', table_name='repositories')
    op.drop_table('repositories')
    op.drop_index('idx_contributors_enrichment', table_name='contributors')
    op.drop_index('idx_contributors_username', table_name='contributors')
    op.drop_table('contributors')
    op.drop_index('idx_raw_records_unprocessed', table_name='raw_records')
    op.drop_index('idx_raw_records_endpoint', table_name='raw_records')
    op.drop_index('idx_raw_records_entity', table_name='raw_records')
    op.drop_table('raw_records')
