"""create control plane tables

Revision ID: 001
Revises:
Create Date: 2026-01-07

"""
from datetime import datetime
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

SYSTEM_USER_ID = '00000000-0000-0000-0000-000000000001'

SUBSCRIPTION_STATUSES = ('active', 'suspended', 'cancelled', 'expired', 'inactive', 'pending', 'denied')


def upgrade() -> None:
    op.create_table(
        'users',
        sa.Column('id', sa.String(36), nullable=False),
        sa.Column('username', sa.String(255), nullable=False),
        sa.Column('email', sa.String(255), nullable=False),
        sa.Column('full_name', sa.String(255), nullable=True),
        sa.Column('roles', sa.JSON(), nullable=False),
        sa.Column('max_budget', sa.Numeric(12, 4), nullable=True),
        sa.Column('tpm_limit', sa.Integer(), nullable=True),
        sa.Column('rpm_limit', sa.Integer(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('username'),
        sa.UniqueConstraint('email'),
    )

    op.create_table(
        'models',
        sa.Column('id', sa.String(255), nullable=False),
        sa.Column('name', sa.String(255), nullable=True),
        sa.Column('provider', sa.String(100), nullable=True),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('category', sa.String(100), nullable=True),
        sa.Column('context_length', sa.Integer(), nullable=True),
        sa.Column('input_cost_per_token', sa.Numeric(20, 12), nullable=True),
        sa.Column('output_cost_per_token', sa.Numeric(20, 12), nullable=True),
        sa.Column('supports_vision', sa.Boolean(), nullable=False),
        sa.Column('supports_function_calling', sa.Boolean(), nullable=False),
        sa.Column('supports_parallel_function_calling', sa.Boolean(), nullable=False),
        sa.Column('supports_tool_choice', sa.Boolean(), nullable=False),
        sa.Column('features', sa.JSON(), nullable=False),
        sa.Column('availability', sa.Enum('available', 'unavailable', name='modelavailability'), nullable=False),
        sa.Column('version', sa.String(50), nullable=True),
        sa.Column('metadata', sa.JSON(), nullable=False),
        sa.Column('api_base', sa.String(500), nullable=True),
        sa.Column('tpm', sa.Integer(), nullable=True),
        sa.Column('rpm', sa.Integer(), nullable=True),
        sa.Column('max_tokens', sa.Integer(), nullable=True),
        sa.Column('litellm_model_id', sa.String(255), nullable=True),
        sa.Column('backend_model_name', sa.String(255), nullable=True),
        sa.Column('restricted_access', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_models_availability', 'models', ['availability'])
    op.create_index('ix_models_provider', 'models', ['provider'])
    op.create_index('ix_models_litellm_model_id', 'models', ['litellm_model_id'])

    op.create_table(
        'subscriptions',
        sa.Column('id', sa.String(36), nullable=False),
        sa.Column('user_id', sa.String(36), nullable=False),
        sa.Column('model_id', sa.String(255), nullable=False),
        sa.Column('status', sa.Enum(*SUBSCRIPTION_STATUSES, name='subscriptionstatus'), nullable=False),
        sa.Column('quota_requests', sa.Integer(), nullable=False),
        sa.Column('quota_tokens', sa.Integer(), nullable=False),
        sa.Column('used_requests', sa.Integer(), nullable=False),
        sa.Column('used_tokens', sa.Integer(), nullable=False),
        sa.Column('max_budget', sa.Numeric(12, 4), nullable=True),
        sa.Column('current_spend', sa.Numeric(12, 4), nullable=False),
        sa.Column('status_reason', sa.Text(), nullable=True),
        sa.Column('status_changed_at', sa.DateTime(), nullable=True),
        sa.Column('status_changed_by', sa.String(36), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['model_id'], ['models.id'], ondelete='CASCADE'),
        sa.UniqueConstraint('user_id', 'model_id', name='uq_subscriptions_user_model'),
    )
    op.create_index('ix_subscriptions_user_id', 'subscriptions', ['user_id'])
    op.create_index('ix_subscriptions_model_id', 'subscriptions', ['model_id'])
    op.create_index('ix_subscriptions_model_status', 'subscriptions', ['model_id', 'status'])
    op.create_index('ix_subscriptions_user_status', 'subscriptions', ['user_id', 'status'])

    op.create_table(
        'subscription_status_history',
        sa.Column('id', sa.String(36), nullable=False),
        sa.Column('subscription_id', sa.String(36), nullable=False),
        sa.Column('old_status', sa.Enum(*SUBSCRIPTION_STATUSES, name='subscriptionstatus', create_type=False), nullable=True),
        sa.Column('new_status', sa.Enum(*SUBSCRIPTION_STATUSES, name='subscriptionstatus', create_type=False), nullable=False),
        sa.Column('reason', sa.Text(), nullable=True),
        sa.Column('changed_by', sa.String(36), nullable=True),
        sa.Column('changed_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['subscription_id'], ['subscriptions.id'], ondelete='CASCADE'),
    )
    op.create_index(
        'ix_subscription_status_history_subscription_id', 'subscription_status_history', ['subscription_id']
    )

    op.create_table(
        'api_keys',
        sa.Column('id', sa.String(36), nullable=False),
        sa.Column('user_id', sa.String(36), nullable=False),
        sa.Column('name', sa.String(255), nullable=True),
        sa.Column('key_hash', sa.String(255), nullable=False),
        sa.Column('key_prefix', sa.String(20), nullable=False),
        sa.Column('litellm_key_value', sa.Text(), nullable=True),
        sa.Column('litellm_key_alias', sa.String(255), nullable=True),
        sa.Column('max_budget', sa.Numeric(12, 4), nullable=True),
        sa.Column('current_spend', sa.Numeric(12, 4), nullable=False),
        sa.Column('tpm_limit', sa.Integer(), nullable=True),
        sa.Column('rpm_limit', sa.Integer(), nullable=True),
        sa.Column('budget_duration', sa.String(50), nullable=True),
        sa.Column('soft_budget', sa.Numeric(12, 4), nullable=True),
        sa.Column('max_parallel_requests', sa.Integer(), nullable=True),
        sa.Column('model_max_budget', sa.JSON(), nullable=True),
        sa.Column('model_rpm_limit', sa.JSON(), nullable=True),
        sa.Column('model_tpm_limit', sa.JSON(), nullable=True),
        sa.Column('metadata', sa.JSON(), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('expires_at', sa.DateTime(), nullable=True),
        sa.Column('revoked_at', sa.DateTime(), nullable=True),
        sa.Column('last_used_at', sa.DateTime(), nullable=True),
        sa.Column('last_sync_at', sa.DateTime(), nullable=True),
        sa.Column('sync_status', sa.Enum('pending', 'synced', 'error', name='keysyncstatus'), nullable=False),
        sa.Column('sync_error', sa.Text(), nullable=True),
        sa.Column('subscription_id', sa.String(36), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['subscription_id'], ['subscriptions.id'], ondelete='SET NULL'),
        sa.UniqueConstraint('key_hash'),
    )
    op.create_index('ix_api_keys_user_id', 'api_keys', ['user_id'])
    op.create_index('ix_api_keys_litellm_key_alias', 'api_keys', ['litellm_key_alias'])
    op.create_index('ix_api_keys_subscription_id', 'api_keys', ['subscription_id'])
    op.create_index('ix_api_keys_user_active', 'api_keys', ['user_id', 'is_active'])

    op.create_table(
        'api_key_models',
        sa.Column('api_key_id', sa.String(36), nullable=False),
        sa.Column('model_id', sa.String(255), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('api_key_id', 'model_id'),
        sa.ForeignKeyConstraint(['api_key_id'], ['api_keys.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['model_id'], ['models.id'], ondelete='CASCADE'),
    )
    op.create_index('ix_api_key_models_model_id', 'api_key_models', ['model_id'])

    op.create_table(
        'audit_logs',
        sa.Column('id', sa.String(36), nullable=False),
        sa.Column('user_id', sa.String(36), nullable=True),
        sa.Column('action', sa.String(100), nullable=False),
        sa.Column('resource_type', sa.String(50), nullable=False),
        sa.Column('resource_id', sa.String(255), nullable=True),
        sa.Column('metadata', sa.JSON(), nullable=False),
        sa.Column('success', sa.Boolean(), nullable=False),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_audit_logs_user_id', 'audit_logs', ['user_id'])
    op.create_index('ix_audit_logs_action', 'audit_logs', ['action'])
    op.create_index('ix_audit_logs_resource', 'audit_logs', ['resource_type', 'resource_id'])

    # Actor for automated transitions
    users = sa.table(
        'users',
        sa.column('id', sa.String),
        sa.column('username', sa.String),
        sa.column('email', sa.String),
        sa.column('full_name', sa.String),
        sa.column('roles', sa.JSON),
        sa.column('is_active', sa.Boolean),
        sa.column('created_at', sa.DateTime),
        sa.column('updated_at', sa.DateTime),
    )
    now = datetime.utcnow()
    op.bulk_insert(users, [{
        'id': SYSTEM_USER_ID,
        'username': 'system',
        'email': 'system@llmcp.internal',
        'full_name': 'System',
        'roles': ['system'],
        'is_active': False,
        'created_at': now,
        'updated_at': now,
    }])


def downgrade() -> None:
    op.drop_index('ix_audit_logs_resource', 'audit_logs')
    op.drop_index('ix_audit_logs_action', 'audit_logs')
    op.drop_index('ix_audit_logs_user_id', 'audit_logs')
    op.drop_table('audit_logs')
    op.drop_index('ix_api_key_models_model_id', 'api_key_models')
    op.drop_table('api_key_models')
    op.drop_index('ix_api_keys_user_active', 'api_keys')
    op.drop_index('ix_api_keys_subscription_id', 'api_keys')
    op.drop_index('ix_api_keys_litellm_key_alias', 'api_keys')
    op.drop_index('ix_api_keys_user_id', 'api_keys')
    op.drop_table('api_keys')
    op.drop_index('ix_subscription_status_history_subscription_id', 'subscription_status_history')
    op.drop_table('subscription_status_history')
    op.drop_index('ix_subscriptions_user_status', 'subscriptions')
    op.drop_index('ix_subscriptions_model_status', 'subscriptions')
    op.drop_index('ix_subscriptions_model_id', 'subscriptions')
    op.drop_index('ix_subscriptions_user_id', 'subscriptions')
    op.drop_table('subscriptions')
    op.drop_index('ix_models_litellm_model_id', 'models')
    op.drop_index('ix_models_provider', 'models')
    op.drop_index('ix_models_availability', 'models')
    op.drop_table('models')
    op.drop_table('users')
    op.execute('DROP TYPE IF EXISTS keysyncstatus')
    op.execute('DROP TYPE IF EXISTS subscriptionstatus')
    op.execute('DROP TYPE IF EXISTS modelavailability')
