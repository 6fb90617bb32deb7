"""create role grant tables

Revision ID: 7c1e5a9d2b40
Revises:
Create Date: 2026-10-19 00:00:00.000000
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = '7c1e5a9d2b40'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

RENEWAL_STATES = "'pending','awaiting_response','confirmed','rejected','superseded'"


def upgrade() -> None:
    op.create_table(
        'role_grant',
        sa.Column('id', sa.BigInteger().with_variant(sa.Integer(), 'sqlite'), primary_key=True, autoincrement=True),
        sa.Column('subject_id', sa.BigInteger, nullable=False),
        sa.Column('subject_display_name', sa.Text, nullable=False),
        sa.Column('role_id', sa.BigInteger, nullable=False),
        sa.Column('role_name', sa.Text, nullable=False),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('active', sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column('renewal_state', sa.String(24), nullable=False, server_default='pending'),
        sa.Column('renewal_prompt_id', sa.BigInteger),
        sa.Column('renewal_due_at', sa.DateTime(timezone=True)),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint(f"renewal_state IN ({RENEWAL_STATES})", name='role_grant_state_chk'),
    )
    op.create_index(
        'role_grant_one_active_per_subject',
        'role_grant',
        ['subject_id'],
        unique=True,
        postgresql_where=sa.text('active'),
        sqlite_where=sa.text('active = 1'),
    )
    op.create_index('role_grant_expiry_idx', 'role_grant', ['active', 'renewal_state', 'expires_at'])
    op.create_table(
        'role_grant_event',
        sa.Column('id', sa.BigInteger().with_variant(sa.Integer(), 'sqlite'), primary_key=True, autoincrement=True),
        sa.Column('grant_id', sa.BigInteger, sa.ForeignKey('role_grant.id', ondelete='CASCADE'), nullable=False),
        sa.Column('subject_id', sa.BigInteger, nullable=False),
        sa.Column('action', sa.String(24), nullable=False),
        sa.Column('detail', sa.Text),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('role_grant_event_grant_idx', 'role_grant_event', ['grant_id', 'created_at'])


def downgrade() -> None:
    op.drop_index('role_grant_event_grant_idx', table_name='role_grant_event')
    op.drop_table('role_grant_event')
    op.drop_index('role_grant_expiry_idx', table_name='role_grant')
    op.drop_index('role_grant_one_active_per_subject', table_name='role_grant')
    op.drop_table('role_grant')
