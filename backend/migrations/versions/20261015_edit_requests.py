"""Edit requests for locked documents; trim unused capabilities

Revision ID: 20261015_edit_requests
Revises: 20261001_core
Create Date: 2026-10-15

This migration adds:
1. edit_requests with a partial unique index (one PENDING per document and requester)
2. Removes the VIEW_AUDIT_LOG, MANAGE_SEQUENCES and SYSTEM_ADMIN capabilities,
   which nothing checks. EDIT_LOCKED_ORDERS is added by `flask system init`.
"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '20261015_edit_requests'
down_revision = '20261001_core'
branch_labels = None
depends_on = None


REMOVED_CODES = ('VIEW_AUDIT_LOG', 'MANAGE_SEQUENCES', 'SYSTEM_ADMIN')


def upgrade():
    op.create_table('edit_requests',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('document_type', sa.String(length=32), nullable=False),
        sa.Column('document_id', sa.Integer(), nullable=False),
        sa.Column('observations', sa.Text(), nullable=True),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='PENDING'),
        sa.Column('requested_by_user_id', sa.Integer(), nullable=False),
        sa.Column('reviewed_by_user_id', sa.Integer(), nullable=True),
        sa.Column('review_notes', sa.Text(), nullable=True),
        sa.Column('reviewed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.ForeignKeyConstraint(['requested_by_user_id'], ['users.id'], ),
        sa.ForeignKeyConstraint(['reviewed_by_user_id'], ['users.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('edit_requests', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_edit_requests_document_id'), ['document_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_edit_requests_requested_by_user_id'), ['requested_by_user_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_edit_requests_status'), ['status'], unique=False)
        batch_op.create_index('ix_edit_requests_status_expires', ['status', 'expires_at'], unique=False)
        batch_op.create_index(
            'uq_edit_requests_one_pending',
            ['document_type', 'document_id', 'requested_by_user_id'],
            unique=True,
            sqlite_where=sa.text("status = 'PENDING'"),
            postgresql_where=sa.text("status = 'PENDING'"),
        )

    permissions = sa.table('permissions', sa.column('id', sa.Integer), sa.column('code', sa.String))
    role_permissions = sa.table('role_permissions', sa.column('permission_id', sa.Integer))
    removed_ids = sa.select(permissions.c.id).where(permissions.c.code.in_(REMOVED_CODES))
    op.execute(role_permissions.delete().where(role_permissions.c.permission_id.in_(removed_ids)))
    op.execute(permissions.delete().where(permissions.c.code.in_(REMOVED_CODES)))


def downgrade():
    with op.batch_alter_table('edit_requests', schema=None) as batch_op:
        batch_op.drop_index('uq_edit_requests_one_pending')
        batch_op.drop_index('ix_edit_requests_status_expires')
        batch_op.drop_index(batch_op.f('ix_edit_requests_status'))
        batch_op.drop_index(batch_op.f('ix_edit_requests_requested_by_user_id'))
        batch_op.drop_index(batch_op.f('ix_edit_requests_document_id'))

    op.drop_table('edit_requests')
