"""Create workspace, document and hash-chained audit log tables.

Installs the append-only triggers on every audit table and, on PostgreSQL,
the audit id sequence.

Revision ID: 001
Revises:
Create Date: 2026-10-18
"""
from alembic import op
import sqlalchemy as sa

from app.core.immutability import (
    APPEND_ONLY_TABLES,
    GUARDED_OPERATIONS,
    POSTGRES_GUARD_FUNCTION,
    guard_statements,
    trigger_name,
)


# revision identifiers, used by Alembic.
revision = '001'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    dialect = op.get_bind().dialect.name

    op.create_table(
        'users',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('email', sa.String(), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('is_super_admin', sa.Boolean(), nullable=False),
        sa.Column('hashed_password', sa.String(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_users_email', 'users', ['email'], unique=True)

    op.create_table(
        'workspaces',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )

    op.create_table(
        'workspace_memberships',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('workspace_id', sa.Integer(), sa.ForeignKey('workspaces.id'), nullable=False),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('role', sa.Enum('ADMIN', 'MEMBER', name='workspacerole'), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.UniqueConstraint('workspace_id', 'user_id'),
    )
    op.create_index('ix_workspace_memberships_workspace_id', 'workspace_memberships', ['workspace_id'])
    op.create_index('ix_workspace_memberships_user_id', 'workspace_memberships', ['user_id'])

    op.create_table(
        'documents',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('title', sa.String(), nullable=False),
        sa.Column('visibility', sa.Enum('WORKSPACE', 'PRIVATE', name='documentvisibility'), nullable=False),
        sa.Column('workspace_id', sa.Integer(), sa.ForeignKey('workspaces.id'), nullable=False),
        sa.Column('created_by', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_documents_workspace_id', 'documents', ['workspace_id'])

    # Audit ids are allocated before hashing, so PostgreSQL needs a sequence
    if dialect == 'postgresql':
        op.execute(sa.schema.CreateSequence(sa.Sequence('audit_logs_id_seq')))

    op.create_table(
        'audit_logs',
        sa.Column(
            'id',
            sa.BigInteger().with_variant(sa.Integer(), 'sqlite'),
            primary_key=True,
            autoincrement=False,
        ),
        sa.Column('workspace_id', sa.Integer(), sa.ForeignKey('workspaces.id'), nullable=False),
        sa.Column('actor_user_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('action', sa.String(), nullable=False),
        sa.Column('resource_type', sa.String(), nullable=False),
        sa.Column('resource_id', sa.String(), nullable=False),
        sa.Column('metadata', sa.JSON(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('previous_record_hash', sa.String(64), nullable=False),
        sa.Column('record_hash', sa.String(64), nullable=False),
    )
    op.create_index('ix_audit_logs_workspace_chain', 'audit_logs', ['workspace_id', 'id'])
    op.create_index('ix_audit_logs_resource', 'audit_logs', ['resource_id', 'resource_type'])
    op.create_index('ix_audit_logs_actor_created', 'audit_logs', ['actor_user_id', 'created_at'])
    op.create_index('ix_audit_logs_action', 'audit_logs', ['action'])
    op.create_index('ix_audit_logs_created_at', 'audit_logs', ['created_at'])
    op.create_index('ix_audit_logs_record_hash', 'audit_logs', ['record_hash'])

    op.create_table(
        'audit_chain_locks',
        sa.Column('workspace_id', sa.Integer(), sa.ForeignKey('workspaces.id'), primary_key=True),
        sa.Column('locked_at', sa.DateTime(), nullable=False),
        sa.Column('appends', sa.Integer(), nullable=False),
    )

    op.create_table(
        'audit_archive_checkpoints',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('workspace_id', sa.Integer(), sa.ForeignKey('workspaces.id'), nullable=False),
        sa.Column('last_record_id', sa.Integer(), nullable=False),
        sa.Column('last_record_hash', sa.String(64), nullable=False),
        sa.Column('last_record_created_at', sa.DateTime(), nullable=False),
        sa.Column('records_archived', sa.Integer(), nullable=False),
        sa.Column('archive_location', sa.String(), nullable=False),
        sa.Column('archive_checksum', sa.String(64), nullable=False),
        sa.Column('operator', sa.String(), nullable=False),
        sa.Column('created_by', sa.Integer(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('archived_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_audit_archive_checkpoints_workspace_id', 'audit_archive_checkpoints', ['workspace_id'])

    op.create_table(
        'audit_verification_checkpoints',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('workspace_id', sa.Integer(), sa.ForeignKey('workspaces.id'), nullable=False),
        sa.Column('last_record_id', sa.Integer(), nullable=False),
        sa.Column('last_record_hash', sa.String(64), nullable=False),
        sa.Column('records_verified', sa.Integer(), nullable=False),
        sa.Column('verified_by', sa.Integer(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('verified_at', sa.DateTime(), nullable=False),
    )
    op.create_index(
        'ix_audit_verification_checkpoints_workspace_id',
        'audit_verification_checkpoints',
        ['workspace_id'],
    )

    op.create_table(
        'audit_overrides',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('table_name', sa.String(), nullable=False),
        sa.Column('operation', sa.String(), nullable=False),
        sa.Column('reason', sa.String(), nullable=False),
        sa.Column('operator', sa.String(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )

    # Append-only guards
    if dialect == 'postgresql':
        op.execute(POSTGRES_GUARD_FUNCTION)
    for table in APPEND_ONLY_TABLES:
        for statement in guard_statements(dialect, table):
            op.execute(statement)


def downgrade() -> None:
    dialect = op.get_bind().dialect.name

    if dialect == 'sqlite':
        for table in APPEND_ONLY_TABLES:
            for operation in GUARDED_OPERATIONS:
                op.execute(f'DROP TRIGGER IF EXISTS {trigger_name(table, operation)}')

    op.drop_table('audit_overrides')
    op.drop_table('audit_verification_checkpoints')
    op.drop_table('audit_archive_checkpoints')
    op.drop_table('audit_chain_locks')
    op.drop_table('audit_logs')
    op.drop_table('documents')
    op.drop_table('workspace_memberships')
    op.drop_table('workspaces')
    op.drop_table('users')

    if dialect == 'postgresql':
        op.execute(sa.schema.DropSequence(sa.Sequence('audit_logs_id_seq')))
        op.execute('DROP FUNCTION IF EXISTS audit_reject_mutation()')
        op.execute('DROP TYPE IF EXISTS workspacerole')
        op.execute('DROP TYPE IF EXISTS documentvisibility')
