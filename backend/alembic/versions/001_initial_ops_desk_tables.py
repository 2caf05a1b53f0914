"""Initial Ops Desk tables

Revision ID: 001_initial_ops_desk
Revises:
Create Date: 2026-10-18

Creates all tables for:
- Accounts (users)
- Pipeline (projects, project_notes)
- Human review (approvals, approval_policy_audit)
- Escalations (escalations)
- Agents (agents, agent_triggers, webhook_events)

Enum columns store member names, matching SQLAlchemy's Enum(...) default.
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = '001_initial_ops_desk'
down_revision = None
branch_labels = None
depends_on = None


ENUMS = {
    'userrole': ('FOUNDER', 'SALES_LEAD', 'DELIVERY_LEAD', 'CREATIVE_SPECIALIST', 'AI_OPERATOR'),
    'projecttier': ('TIER_1', 'TIER_2', 'TIER_3'),
    'projectstage': (
        'LEAD', 'QUALIFIED', 'DISCOVERY', 'FIT_DECISION', 'PROPOSAL',
        'CLOSED', 'ONBOARDING', 'DELIVERY', 'COMPLETE',
    ),
    'projectstatus': ('ACTIVE', 'PAUSED', 'BLOCKED', 'COMPLETE'),
    'icplevel': ('A', 'B', 'C'),
    'checkpointtype': ('PROPOSAL_REVIEW', 'DISCOVERY_SUMMARY', 'TIER_EXECUTION', 'QUALITY_CHECK'),
    'approvalstatus': ('PENDING', 'APPROVED', 'REJECTED', 'EDITED'),
    'escalationlevel': ('L1', 'L2', 'L3'),
    'escalationcategory': (
        'FINANCIAL', 'SCOPE', 'LEGAL_BRAND', 'RELATIONSHIP', 'SYSTEM_CONFLICT', 'OTHER',
    ),
    'escalationstatus': ('OPEN', 'RESOLVED', 'HALTED'),
    'policyaction': ('BLOCKED', 'AUTO_ESCALATED'),
    'notetype': ('NOTE', 'INSTRUCTION', 'STAGE_CHANGE', 'STATUS_CHANGE', 'AGENT_TRIGGER', 'SYSTEM'),
    'triggerstatus': ('PENDING', 'SENT', 'FAILED'),
}


def enum_type(name: str) -> postgresql.ENUM:
    return postgresql.ENUM(*ENUMS[name], name=name, create_type=False)


def timestamps() -> list[sa.Column]:
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
    ]


def upgrade() -> None:
    # ==========================================================================
    # Create Enums
    # ==========================================================================

    for name, values in ENUMS.items():
        postgresql.ENUM(*values, name=name, create_type=False).create(op.get_bind(), checkfirst=True)

    # ==========================================================================
    # Users
    # ==========================================================================

    op.create_table(
        'users',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('username', sa.String(100), nullable=False),
        sa.Column('display_name', sa.String(255), nullable=False),
        sa.Column('role', enum_type('userrole'), nullable=False),
        sa.Column('password_hash', sa.String(255), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default='true'),
        sa.Column('last_login', sa.DateTime(timezone=True), nullable=True),
        *timestamps(),
    )
    op.create_index('ix_users_username', 'users', ['username'], unique=True)

    # ==========================================================================
    # Projects
    # ==========================================================================

    op.create_table(
        'projects',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('client_email', sa.String(255), nullable=False),
        sa.Column('client_name', sa.String(255), nullable=True),
        sa.Column('tier', enum_type('projecttier'), nullable=False),
        sa.Column('stage', enum_type('projectstage'), nullable=False),
        sa.Column('status', enum_type('projectstatus'), nullable=False),
        sa.Column('icp_level', enum_type('icplevel'), nullable=True),
        sa.Column('sop_step_key', sa.String(100), nullable=True),
        sa.Column('blockers', sa.JSON(), nullable=False),
        sa.Column('decision_maker', sa.String(255), nullable=True),
        sa.Column('trust_score', sa.Integer(), nullable=True),
        sa.Column('assigned_sales_lead', sa.String(100), nullable=True),
        sa.Column('assigned_delivery_lead', sa.String(100), nullable=True),
        *timestamps(),
    )
    op.create_index('ix_projects_client_email', 'projects', ['client_email'])
    op.create_index('ix_projects_stage', 'projects', ['stage'])
    op.create_index('ix_projects_status', 'projects', ['status'])

    op.create_table(
        'project_notes',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('project_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('projects.id'), nullable=False),
        sa.Column('author', sa.String(100), nullable=False),
        sa.Column('content', sa.Text(), nullable=False),
        sa.Column('note_type', enum_type('notetype'), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
    )
    op.create_index('ix_project_notes_project_id', 'project_notes', ['project_id'])

    # ==========================================================================
    # Approvals
    # ==========================================================================

    op.create_table(
        'approvals',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('client_email', sa.String(255), nullable=False),
        sa.Column('agent_key', sa.String(100), nullable=False),
        sa.Column('stage_name', sa.String(255), nullable=False),
        sa.Column('checkpoint_type', enum_type('checkpointtype'), nullable=False),
        sa.Column('agent_payload', sa.JSON(), nullable=False),
        sa.Column('agent_response', sa.JSON(), nullable=False),
        sa.Column('status', enum_type('approvalstatus'), nullable=False),
        sa.Column('recommended_stage', enum_type('projectstage'), nullable=True),
        sa.Column('reviewed_by', sa.String(100), nullable=True),
        sa.Column('reviewed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('admin_comments', sa.Text(), nullable=True),
        sa.Column('edited_response', sa.JSON(), nullable=True),
        sa.Column('sent_at', sa.DateTime(timezone=True), nullable=True),
        *timestamps(),
    )
    op.create_index('ix_approvals_client_email', 'approvals', ['client_email'])
    op.create_index('ix_approvals_status', 'approvals', ['status'])

    # ==========================================================================
    # Escalations
    # ==========================================================================

    op.create_table(
        'escalations',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('project_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('projects.id'), nullable=False),
        sa.Column('level', enum_type('escalationlevel'), nullable=False),
        sa.Column('category', enum_type('escalationcategory'), nullable=False),
        sa.Column('status', enum_type('escalationstatus'), nullable=False),
        sa.Column('title', sa.String(500), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('decision_notes', sa.Text(), nullable=True),
        sa.Column('resolved_by', sa.String(100), nullable=True),
        sa.Column('resolved_at', sa.DateTime(timezone=True), nullable=True),
        *timestamps(),
    )
    op.create_index('ix_escalations_project_id', 'escalations', ['project_id'])
    op.create_index('ix_escalations_level', 'escalations', ['level'])
    op.create_index('ix_escalations_status', 'escalations', ['status'])

    op.create_table(
        'approval_policy_audit',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('approval_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('approvals.id'), nullable=True),
        sa.Column('escalation_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('escalations.id'), nullable=True),
        sa.Column('policy_action', enum_type('policyaction'), nullable=False),
        sa.Column('reason', sa.Text(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
    )
    op.create_index('ix_approval_policy_audit_approval_id', 'approval_policy_audit', ['approval_id'])

    # ==========================================================================
    # Agents
    # ==========================================================================

    op.create_table(
        'agents',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('agent_key', sa.String(100), nullable=False),
        sa.Column('display_name', sa.String(255), nullable=False),
        sa.Column('category', sa.String(100), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default='true'),
        sa.Column('webhook_url', sa.String(2000), nullable=True),
        sa.Column('last_event_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('total_events', sa.Integer(), nullable=False, server_default='0'),
        *timestamps(),
    )
    op.create_index('ix_agents_agent_key', 'agents', ['agent_key'], unique=True)

    op.create_table(
        'agent_triggers',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('project_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('projects.id'), nullable=False),
        sa.Column('agent_key', sa.String(100), nullable=False),
        sa.Column('trigger_payload', sa.JSON(), nullable=False),
        sa.Column('status', enum_type('triggerstatus'), nullable=False),
        sa.Column('response_status', sa.Integer(), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('triggered_by', sa.String(100), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
    )
    op.create_index('ix_agent_triggers_project_id', 'agent_triggers', ['project_id'])

    op.create_table(
        'webhook_events',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('agent_key', sa.String(100), nullable=False),
        sa.Column('client_email', sa.String(255), nullable=True),
        sa.Column('payload', sa.JSON(), nullable=False),
        sa.Column('response_status', sa.Integer(), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
    )
    op.create_index('ix_webhook_events_agent_key', 'webhook_events', ['agent_key'])


def downgrade() -> None:
    # Drop tables in reverse dependency order
    op.drop_table('webhook_events')
    op.drop_table('agent_triggers')
    op.drop_table('agents')
    op.drop_table('approval_policy_audit')
    op.drop_table('escalations')
    op.drop_table('approvals')
    op.drop_table('project_notes')
    op.drop_table('projects')
    op.drop_table('users')

    for name in reversed(list(ENUMS)):
        op.execute(f'DROP TYPE IF EXISTS {name}')
