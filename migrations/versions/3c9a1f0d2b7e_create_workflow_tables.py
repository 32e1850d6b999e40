"""create applications, workflow_logs, dossier_counters, notifications"""

from alembic import op
import sqlalchemy as sa

revision = '3c9a1f0d2b7e'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        'applications',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('candidate_id', sa.String(64), nullable=False),
        sa.Column('active_candidate_id', sa.String(64), nullable=True),
        sa.Column('dossier_number', sa.String(32), nullable=True),
        sa.Column('status', sa.String(16), nullable=False, server_default='draft'),
        sa.Column('current_stage', sa.String(32), nullable=False, server_default='draft'),
        sa.Column('version', sa.Integer(), nullable=False, server_default=sa.text('0')),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.Column('submitted_at', sa.DateTime(), nullable=True),
        sa.Column('decided_at', sa.DateTime(), nullable=True),
        sa.Column('decided_by', sa.String(64), nullable=True),
        sa.Column('rejection_reason', sa.Text(), nullable=True),
        sa.Column('documents_complete', sa.Boolean(), nullable=False, server_default=sa.text('0')),
        sa.Column('payment_confirmed', sa.Boolean(), nullable=False, server_default=sa.text('0')),
        sa.Column('escalation_flag', sa.Boolean(), nullable=False, server_default=sa.text('0')),
        sa.Column('agent_validated_by', sa.String(64), nullable=True),
        sa.Column('agent_validated_at', sa.DateTime(), nullable=True),
        sa.Column('commission_validated_by', sa.String(64), nullable=True),
        sa.Column('commission_validated_at', sa.DateTime(), nullable=True),
        sa.Column('commission_decision', sa.String(16), nullable=True),
        sa.Column('president_validated_by', sa.String(64), nullable=True),
        sa.Column('president_validated_at', sa.DateTime(), nullable=True),
        sa.Column('order_number', sa.String(32), nullable=True),
        sa.UniqueConstraint('order_number', name='uq_applications_order_number'),
        sa.UniqueConstraint('active_candidate_id', name='uq_applications_active_candidate_id'),
    )
    # 档案编号、注册号全局唯一
    op.create_index('ix_applications_dossier_number', 'applications', ['dossier_number'], unique=True)
    op.create_index('ix_applications_candidate_id', 'applications', ['candidate_id'], unique=False)
    op.create_index('ix_applications_status', 'applications', ['status'], unique=False)
    op.create_index('ix_applications_current_stage', 'applications', ['current_stage'], unique=False)

    op.create_table(
        'workflow_logs',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('transition_id', sa.String(36), nullable=False),
        sa.Column('application_id', sa.String(36), sa.ForeignKey('applications.id'), nullable=False),
        sa.Column('action', sa.String(32), nullable=False),
        sa.Column('from_status', sa.String(16), nullable=False),
        sa.Column('to_status', sa.String(16), nullable=False),
        sa.Column('from_stage', sa.String(32), nullable=True),
        sa.Column('to_stage', sa.String(32), nullable=True),
        sa.Column('version', sa.Integer(), nullable=False),
        sa.Column('performed_by', sa.String(64), nullable=False),
        sa.Column('performed_at', sa.DateTime(), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('metadata', sa.JSON(), nullable=True),
        sa.UniqueConstraint('application_id', 'version', name='uq_workflow_logs_app_version'),
    )
    op.create_index('ix_workflow_logs_transition_id', 'workflow_logs', ['transition_id'], unique=True)
    op.create_index('ix_workflow_logs_application_id', 'workflow_logs', ['application_id'], unique=False)

    op.create_table(
        'dossier_counters',
        sa.Column('year', sa.Integer(), primary_key=True, autoincrement=False),
        sa.Column('last_seq', sa.Integer(), nullable=False, server_default=sa.text('0')),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
    )

    op.create_table(
        'notifications',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('transition_id', sa.String(36), nullable=False),
        sa.Column('application_id', sa.String(36), sa.ForeignKey('applications.id'), nullable=False),
        sa.Column('recipient', sa.String(96), nullable=False),
        sa.Column('template', sa.String(64), nullable=False),
        sa.Column('title', sa.String(200), nullable=False),
        sa.Column('body', sa.Text(), nullable=False),
        sa.Column('context', sa.JSON(), nullable=True),
        sa.Column('is_read', sa.Boolean(), nullable=False, server_default=sa.text('0')),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('delivered_at', sa.DateTime(), nullable=True),
        sa.Column('delivery_attempts', sa.Integer(), nullable=False, server_default=sa.text('0')),
        sa.Column('last_error', sa.String(500), nullable=True),
        sa.UniqueConstraint('transition_id', 'recipient', name='uq_notifications_transition_recipient'),
    )
    op.create_index('ix_notifications_transition_id', 'notifications', ['transition_id'], unique=False)
    op.create_index('ix_notifications_application_id', 'notifications', ['application_id'], unique=False)
    op.create_index('ix_notifications_recipient', 'notifications', ['recipient'], unique=False)


def downgrade():
    op.drop_index('ix_notifications_recipient', table_name='notifications')
    op.drop_index('ix_notifications_application_id', table_name='notifications')
    op.drop_index('ix_notifications_transition_id', table_name='notifications')
    op.drop_table('notifications')
    op.drop_table('dossier_counters')
    op.drop_index('ix_workflow_logs_application_id', table_name='workflow_logs')
    op.drop_index('ix_workflow_logs_transition_id', table_name='workflow_logs')
    op.drop_table('workflow_logs')
    op.drop_index('ix_applications_current_stage', table_name='applications')
    op.drop_index('ix_applications_status', table_name='applications')
    op.drop_index('ix_applications_candidate_id', table_name='applications')
    op.drop_index('ix_applications_dossier_number', table_name='applications')
    op.drop_table('applications')
