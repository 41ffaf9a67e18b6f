"""Initial schema

Revision ID: 0001
Revises:
Create Date: 2026-10-19 00:00:00.000000

Tables:
  - users: account owning projects, keys and a quota record
  - projects: source trees on the host filesystem
  - api_keys: prefix + bcrypt hash authentication
  - builds: builder-sandbox runs
  - instances: hardened runner sandboxes and their leased ports
  - user_quotas: per-user limits and windowed counters
  - events: persisted lifecycle events
  - usage_ledger: metered token usage
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = '0001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

ANONYMOUS_USER_ID = '00000000-0000-0000-0000-000000000000'


def upgrade() -> None:
    schema = 'atlas'

    # =========================================================================
    # 1. users
    # =========================================================================
    op.create_table(
        'users',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('email', sa.String(320), nullable=False),
        sa.Column('name', sa.String(255), nullable=True),
        sa.Column('plan', sa.String(20), nullable=False, server_default='free'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default='true'),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        schema=schema,
    )
    op.create_index('ix_users_email', 'users', ['email'], unique=True, schema=schema)
    op.create_index('ix_users_plan', 'users', ['plan'], schema=schema)
    op.create_check_constraint(
        'ck_users_plan',
        'users',
        "plan IN ('free', 'pro', 'enterprise')",
        schema=schema,
    )

    # =========================================================================
    # 2. projects
    # =========================================================================
    op.create_table(
        'projects',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('user_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('path', sa.String(1000), nullable=False),
        sa.Column('framework', sa.String(50), nullable=True),
        sa.Column('status', sa.String(20), nullable=False, server_default='active'),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(
            ['user_id'], [f'{schema}.users.id'],
            name='projects_user_id_fkey', ondelete='CASCADE',
        ),
        schema=schema,
    )
    op.create_index('ix_projects_user_id', 'projects', ['user_id'], schema=schema)
    op.create_index('ix_projects_status', 'projects', ['status'], schema=schema)

    # =========================================================================
    # 3. api_keys
    # =========================================================================
    op.create_table(
        'api_keys',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('user_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('prefix', sa.String(10), nullable=False),
        sa.Column('key_hash', sa.String(255), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default='true'),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('last_used_at', sa.DateTime(), nullable=True),
        sa.Column('expires_at', sa.DateTime(), nullable=True),
        sa.UniqueConstraint('key_hash', name='api_keys_key_hash_key'),
        sa.ForeignKeyConstraint(
            ['user_id'], [f'{schema}.users.id'],
            name='api_keys_user_id_fkey', ondelete='CASCADE',
        ),
        schema=schema,
    )
    op.create_index('ix_api_keys_prefix', 'api_keys', ['prefix'], unique=True, schema=schema)
    op.create_index('ix_api_keys_user_id', 'api_keys', ['user_id'], schema=schema)

    # =========================================================================
    # 4. builds
    # =========================================================================
    op.create_table(
        'builds',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('project_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('user_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='queued'),
        sa.Column('builder_sandbox_id', sa.String(128), nullable=True),
        sa.Column('artifact_ref', sa.String(1000), nullable=True),
        sa.Column('build_logs', sa.Text(), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('failure_reason', sa.String(50), nullable=True),
        sa.Column('exit_code', sa.Integer(), nullable=True),
        sa.Column('queued_at', sa.DateTime(), nullable=False),
        sa.Column('started_at', sa.DateTime(), nullable=True),
        sa.Column('finished_at', sa.DateTime(), nullable=True),
        sa.Column('duration_seconds', sa.Integer(), nullable=True),
        sa.Column('memory_used_mb', sa.Integer(), nullable=True),
        sa.Column('cpu_time_seconds', sa.Float(), nullable=True),
        sa.ForeignKeyConstraint(
            ['project_id'], [f'{schema}.projects.id'],
            name='builds_project_id_fkey', ondelete='CASCADE',
        ),
        sa.ForeignKeyConstraint(
            ['user_id'], [f'{schema}.users.id'],
            name='builds_user_id_fkey', ondelete='CASCADE',
        ),
        schema=schema,
    )
    op.create_index('ix_builds_project_id', 'builds', ['project_id'], schema=schema)
    op.create_index('ix_builds_user_id', 'builds', ['user_id'], schema=schema)
    op.create_index('ix_builds_status', 'builds', ['status'], schema=schema)
    op.create_index('ix_builds_queued_at', 'builds', ['queued_at'], schema=schema)
    op.create_check_constraint(
        'ck_builds_status',
        'builds',
        "status IN ('queued', 'running', 'succeeded', 'failed', 'cancelled')",
        schema=schema,
    )

    # =========================================================================
    # 5. instances
    # =========================================================================
    op.create_table(
        'instances',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('project_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('build_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('user_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('sandbox_id', sa.String(128), nullable=True),
        sa.Column('sandbox_name', sa.String(255), nullable=True),
        sa.Column('image', sa.String(500), nullable=True),
        sa.Column('host', sa.String(255), nullable=False),
        sa.Column('port', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='starting'),
        sa.Column('health_check_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_health_check', sa.DateTime(), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('failure_reason', sa.String(50), nullable=True),
        sa.Column('memory_limit_mb', sa.Integer(), nullable=False, server_default='256'),
        sa.Column('cpu_limit', sa.Float(), nullable=False, server_default='0.25'),
        sa.Column('request_count', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('last_accessed', sa.DateTime(), nullable=False),
        sa.Column('auto_sleep_enabled', sa.Boolean(), nullable=False, server_default='true'),
        sa.Column('sleep_after_minutes', sa.Integer(), nullable=False, server_default='30'),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.Column('stopped_at', sa.DateTime(), nullable=True),
        sa.UniqueConstraint('sandbox_id', name='instances_sandbox_id_key'),
        sa.UniqueConstraint('sandbox_name', name='instances_sandbox_name_key'),
        sa.ForeignKeyConstraint(
            ['project_id'], [f'{schema}.projects.id'],
            name='instances_project_id_fkey', ondelete='CASCADE',
        ),
        sa.ForeignKeyConstraint(
            ['build_id'], [f'{schema}.builds.id'],
            name='instances_build_id_fkey', ondelete='SET NULL',
        ),
        sa.ForeignKeyConstraint(
            ['user_id'], [f'{schema}.users.id'],
            name='instances_user_id_fkey', ondelete='CASCADE',
        ),
        schema=schema,
    )
    op.create_index('ix_instances_project_id', 'instances', ['project_id'], schema=schema)
    op.create_index('ix_instances_build_id', 'instances', ['build_id'], schema=schema)
    op.create_index('ix_instances_user_id', 'instances', ['user_id'], schema=schema)
    op.create_index('ix_instances_sandbox_id', 'instances', ['sandbox_id'], schema=schema)
    op.create_index('ix_instances_host', 'instances', ['host'], schema=schema)
    op.create_index('ix_instances_port', 'instances', ['port'], schema=schema)
    op.create_index('ix_instances_status', 'instances', ['status'], schema=schema)
    op.create_index('ix_instances_last_accessed', 'instances', ['last_accessed'], schema=schema)
    # At most one live instance per port
    op.create_index(
        'uq_instances_live_port',
        'instances',
        ['port'],
        unique=True,
        schema=schema,
        postgresql_where=sa.text("status IN ('starting', 'healthy', 'unhealthy')"),
    )
    op.create_check_constraint(
        'ck_instances_status',
        'instances',
        "status IN ('starting', 'healthy', 'unhealthy', 'stopped', 'failed')",
        schema=schema,
    )

    # =========================================================================
    # 6. user_quotas
    # =========================================================================
    op.create_table(
        'user_quotas',
        sa.Column('user_id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('monthly_token_limit', sa.BigInteger(), nullable=False, server_default='1000000'),
        sa.Column('tokens_used_this_month', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('monthly_cost_limit', sa.Numeric(10, 2), nullable=False, server_default='50.00'),
        sa.Column('cost_this_month', sa.Numeric(10, 4), nullable=False, server_default='0'),
        sa.Column('max_concurrent_containers', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('max_container_memory_mb', sa.Integer(), nullable=False, server_default='512'),
        sa.Column('max_container_vcpu', sa.Numeric(4, 2), nullable=False, server_default='0.50'),
        sa.Column('requests_per_hour', sa.Integer(), nullable=False, server_default='50'),
        sa.Column('requests_this_hour', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('hour_window_start', sa.DateTime(), nullable=False),
        sa.Column('max_builds_per_day', sa.Integer(), nullable=False, server_default='10'),
        sa.Column('builds_today', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('day_window_start', sa.DateTime(), nullable=False),
        sa.Column('quota_exceeded', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('quota_exceeded_reason', sa.Text(), nullable=True),
        sa.Column('quota_exceeded_limit', sa.String(30), nullable=True),
        sa.Column('last_reset', sa.DateTime(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(
            ['user_id'], [f'{schema}.users.id'],
            name='user_quotas_user_id_fkey', ondelete='CASCADE',
        ),
        schema=schema,
    )
    op.create_index('ix_user_quotas_quota_exceeded', 'user_quotas', ['quota_exceeded'], schema=schema)

    # =========================================================================
    # 7. events
    # =========================================================================
    op.create_table(
        'events',
        sa.Column('id', sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column('user_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('project_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('kind', sa.String(50), nullable=False),
        sa.Column('status', sa.String(20), nullable=True),
        sa.Column('message', sa.Text(), nullable=True),
        sa.Column('meta', postgresql.JSONB(astext_type=sa.Text()), server_default='{}', nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        schema=schema,
    )
    op.create_index('ix_events_user_id', 'events', ['user_id'], schema=schema)
    op.create_index('ix_events_project_id', 'events', ['project_id'], schema=schema)
    op.create_index('ix_events_kind', 'events', ['kind'], schema=schema)
    op.create_index('ix_events_status', 'events', ['status'], schema=schema)
    op.create_index('ix_events_created_at', 'events', ['created_at'], schema=schema)

    # =========================================================================
    # 8. usage_ledger
    # =========================================================================
    op.create_table(
        'usage_ledger',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('user_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('project_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('kind', sa.String(20), nullable=False),
        sa.Column('amount', sa.BigInteger(), nullable=False),
        sa.Column('cost', sa.Numeric(10, 4), nullable=False, server_default='0'),
        sa.Column('meta', postgresql.JSONB(astext_type=sa.Text()), server_default='{}', nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        schema=schema,
    )
    op.create_index('ix_usage_ledger_user_id', 'usage_ledger', ['user_id'], schema=schema)
    op.create_index('ix_usage_ledger_project_id', 'usage_ledger', ['project_id'], schema=schema)
    op.create_index('ix_usage_ledger_kind', 'usage_ledger', ['kind'], schema=schema)
    op.create_index('ix_usage_ledger_created_at', 'usage_ledger', ['created_at'], schema=schema)

    # Anonymous caller used when ALLOW_ANONYMOUS is set
    op.execute(
        f"INSERT INTO {schema}.users (id, email, name, plan) "
        f"VALUES ('{ANONYMOUS_USER_ID}', 'anonymous@localhost', 'Anonymous', 'free') "
        f"ON CONFLICT DO NOTHING"
    )


def downgrade() -> None:
    schema = 'atlas'

    # Drop in reverse dependency order
    op.drop_table('usage_ledger', schema=schema)
    op.drop_table('events', schema=schema)
    op.drop_table('user_quotas', schema=schema)
    op.drop_table('instances', schema=schema)
    op.drop_table('builds', schema=schema)
    op.drop_table('api_keys', schema=schema)
    op.drop_table('projects', schema=schema)
    op.drop_table('users', schema=schema)
