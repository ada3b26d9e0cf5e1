"""Initial DriftScore schema - baselines, drift findings, assessments

Revision ID: 001_driftscore_schema
Revises: None
Create Date: 2026-10-18
"""
from alembic import op
import sqlalchemy as sa

revision = '001_driftscore_schema'
down_revision = None
branch_labels = None
depends_on = None

OPEN_FINDING_PREDICATE = "status IN ('detected', 'acknowledged')"


def upgrade() -> None:
    # --- Baselines ---
    op.create_table('baselines',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('user_id', sa.String(100), nullable=False),
        sa.Column('resource_id', sa.String(500), nullable=False),
        sa.Column('provider', sa.String(50), server_default=''),
        sa.Column('resource_type', sa.String(100), server_default=''),
        sa.Column('configuration', sa.JSON(), nullable=False),
        sa.Column('baseline_type', sa.String(20), nullable=False),
        sa.Column('description', sa.Text(), server_default=''),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.UniqueConstraint('user_id', 'resource_id', 'baseline_type', name='uq_baseline_resource_type'),
    )
    op.create_index('ix_baseline_user', 'baselines', ['user_id'])

    # --- Drift Findings ---
    op.create_table('drift_findings',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('user_id', sa.String(100), nullable=False),
        sa.Column('resource_id', sa.String(500), nullable=False),
        sa.Column('resource_type', sa.String(100), server_default=''),
        sa.Column('provider', sa.String(50), server_default=''),
        sa.Column('drift_type', sa.String(50), nullable=False),
        sa.Column('severity', sa.String(20), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='detected'),
        sa.Column('changes', sa.JSON(), nullable=False),
        sa.Column('matched_rules', sa.JSON(), nullable=False),
        sa.Column('primary_rule', sa.String(100), server_default=''),
        sa.Column('details', sa.Text(), server_default=''),
        sa.Column('fingerprint', sa.String(64), nullable=False),
        sa.Column('detected_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.Column('resolved_at', sa.DateTime()),
    )
    # At most one open finding per (user, resource, drift type)
    op.create_index(
        'uq_drift_open_finding', 'drift_findings', ['user_id', 'resource_id', 'drift_type'],
        unique=True,
        postgresql_where=sa.text(OPEN_FINDING_PREDICATE),
        sqlite_where=sa.text(OPEN_FINDING_PREDICATE),
    )
    op.create_index('ix_drift_user_status', 'drift_findings', ['user_id', 'status'])
    op.create_index('ix_drift_user_severity', 'drift_findings', ['user_id', 'severity'])

    # --- Compliance Assessments ---
    op.create_table('compliance_assessments',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('user_id', sa.String(100), nullable=False),
        sa.Column('framework_id', sa.String(50), nullable=False),
        sa.Column('framework_name', sa.String(200), server_default=''),
        sa.Column('status', sa.String(20), nullable=False, server_default='running'),
        sa.Column('total_controls', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('passed_controls', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('failed_controls', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('not_applicable_controls', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('compliance_percent', sa.Float()),
        sa.Column('findings', sa.JSON(), nullable=False),
        sa.Column('error', sa.Text(), server_default=''),
        sa.Column('started_at', sa.DateTime(), nullable=False),
        sa.Column('completed_at', sa.DateTime()),
        sa.Column('sequence', sa.Integer(), nullable=False, server_default='0'),
    )
    op.create_index('ix_assessment_user_framework', 'compliance_assessments',
                    ['user_id', 'framework_id', 'started_at'])
    op.create_index('ix_assessment_status', 'compliance_assessments', ['status'])


def downgrade() -> None:
    op.drop_table('compliance_assessments')
    op.drop_table('drift_findings')
    op.drop_table('baselines')
