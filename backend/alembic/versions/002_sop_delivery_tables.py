"""SOP and delivery tables

Revision ID: 002_sop_delivery
Revises: 001_initial_ops_desk
Create Date: 2026-10-18

Creates:
- sop_definitions: per-tier delivery steps
- sop_progress: a project's state on each step
- client_requests: requests sent to the client, for responsiveness
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = '002_sop_delivery'
down_revision = '001_initial_ops_desk'
branch_labels = None
depends_on = None


SOP_STEP_STATUS = ('PENDING', 'IN_PROGRESS', 'BLOCKED', 'COMPLETED', 'SKIPPED')


def upgrade() -> None:
    postgresql.ENUM(*SOP_STEP_STATUS, name='sopstepstatus', create_type=False).create(
        op.get_bind(), checkfirst=True,
    )
    tier = postgresql.ENUM('TIER_1', 'TIER_2', 'TIER_3', name='projecttier', create_type=False)
    step_status = postgresql.ENUM(*SOP_STEP_STATUS, name='sopstepstatus', create_type=False)

    op.create_table(
        'sop_definitions',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('tier', tier, nullable=False),
        sa.Column('step_order', sa.Integer(), nullable=False),
        sa.Column('step_key', sa.String(100), nullable=False),
        sa.Column('step_name', sa.String(255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('expected_duration_hours', sa.Integer(), nullable=False),
        sa.Column('required_inputs', sa.JSON(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
    )
    op.create_index('ix_sop_definitions_tier', 'sop_definitions', ['tier'])
    op.create_index('ix_sop_definitions_step_key', 'sop_definitions', ['step_key'], unique=True)

    op.create_table(
        'sop_progress',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('project_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('projects.id'), nullable=False),
        sa.Column('step_key', sa.String(100), sa.ForeignKey('sop_definitions.step_key'), nullable=False),
        sa.Column('status', step_status, nullable=False),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('expected_completion_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('blockers', sa.JSON(), nullable=False),
        sa.Column('missing_inputs', sa.JSON(), nullable=False),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.UniqueConstraint('project_id', 'step_key'),
    )
    op.create_index('ix_sop_progress_project_id', 'sop_progress', ['project_id'])

    op.create_table(
        'client_requests',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('project_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('projects.id'), nullable=False),
        sa.Column('request_type', sa.String(100), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('requested_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('responded_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
    )
    op.create_index('ix_client_requests_project_id', 'client_requests', ['project_id'])


def downgrade() -> None:
    op.drop_table('client_requests')
    op.drop_table('sop_progress')
    op.drop_table('sop_definitions')
    op.execute('DROP TYPE IF EXISTS sopstepstatus')
