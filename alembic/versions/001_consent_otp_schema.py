"""consent_otp_schema

Revision ID: 001_consent_otp_schema
Revises:
Create Date: 2026-10-19 10:00:00.000000

Tags: consent, otp, secondary_assignment, audit
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '001_consent_otp_schema'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """
    Create secondary_assignments, patient_consent_otps and consent_otp_audit_logs tables
    """
    connection = op.get_bind()
    inspector = sa.inspect(connection)
    existing_tables = inspector.get_table_names()

    # Step 1: secondary_assignments
    if 'secondary_assignments' not in existing_tables:
        op.create_table(
            'secondary_assignments',
            sa.Column('id', sa.String(length=36), nullable=False),
            sa.Column('patient_id', sa.String(length=36), nullable=False),
            sa.Column('primary_doctor_id', sa.String(length=36), nullable=False),
            sa.Column('secondary_doctor_id', sa.String(length=36), nullable=True),
            sa.Column('secondary_hsp_id', sa.String(length=36), nullable=True),
            sa.Column('consent_status', sa.String(length=20), nullable=False, server_default='PENDING'),
            sa.Column('access_granted', sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column('access_granted_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('consent_granted_by_user_id', sa.String(length=36), nullable=True),
            sa.Column('patient_phone', sa.String(length=20), nullable=True),
            sa.Column('patient_email', sa.String(length=255), nullable=True),
            sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
            sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
            sa.CheckConstraint(
                '(secondary_doctor_id IS NOT NULL) OR (secondary_hsp_id IS NOT NULL)',
                name='assignment_has_secondary_doctor_or_hsp'
            ),
            sa.PrimaryKeyConstraint('id')
        )
        op.create_index('ix_secondary_assignments_patient_id', 'secondary_assignments', ['patient_id'])
        op.create_index('ix_secondary_assignments_primary_doctor_id', 'secondary_assignments', ['primary_doctor_id'])
        op.create_index('ix_secondary_assignments_secondary_doctor_id', 'secondary_assignments', ['secondary_doctor_id'])
        op.create_index('ix_secondary_assignments_secondary_hsp_id', 'secondary_assignments', ['secondary_hsp_id'])
        op.create_index('ix_secondary_assignments_consent_status', 'secondary_assignments', ['consent_status'])
        op.create_index('idx_assignment_patient_status', 'secondary_assignments', ['patient_id', 'consent_status'])

    # Step 2: patient_consent_otps
    if 'patient_consent_otps' not in existing_tables:
        op.create_table(
            'patient_consent_otps',
            sa.Column('id', sa.String(length=36), nullable=False),
            sa.Column('assignment_id', sa.String(length=36), nullable=False),
            sa.Column('patient_id', sa.String(length=36), nullable=False),
            sa.Column('primary_doctor_id', sa.String(length=36), nullable=False),
            sa.Column('secondary_doctor_id', sa.String(length=36), nullable=True),
            sa.Column('secondary_hsp_id', sa.String(length=36), nullable=True),
            sa.Column('code', sa.String(length=6), nullable=False),
            sa.Column('method', sa.String(length=10), nullable=False, server_default='SMS'),
            sa.Column('generated_at', sa.DateTime(timezone=True), nullable=False),
            sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
            sa.Column('attempts_count', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('max_attempts', sa.Integer(), nullable=False, server_default='3'),
            sa.Column('is_verified', sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column('verified_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('verified_by_user_id', sa.String(length=36), nullable=True),
            sa.Column('is_expired', sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column('is_blocked', sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column('blocked_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('sms_sent', sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column('sms_sent_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('sms_error', sa.Text(), nullable=True),
            sa.Column('email_sent', sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column('email_sent_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('email_error', sa.Text(), nullable=True),
            sa.Column('patient_phone', sa.String(length=20), nullable=True),
            sa.Column('patient_email', sa.String(length=255), nullable=True),
            sa.Column('resend_count', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('requested_by_user_id', sa.String(length=36), nullable=True),
            sa.Column('request_ip', sa.String(length=50), nullable=True),
            sa.Column('request_user_agent', sa.String(length=500), nullable=True),
            sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
            sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(['assignment_id'], ['secondary_assignments.id'], ondelete='CASCADE'),
            sa.PrimaryKeyConstraint('id')
        )
        op.create_index('ix_patient_consent_otps_assignment_id', 'patient_consent_otps', ['assignment_id'])
        op.create_index('ix_patient_consent_otps_patient_id', 'patient_consent_otps', ['patient_id'])
        op.create_index('ix_patient_consent_otps_primary_doctor_id', 'patient_consent_otps', ['primary_doctor_id'])
        op.create_index('ix_patient_consent_otps_expires_at', 'patient_consent_otps', ['expires_at'])
        op.create_index('ix_patient_consent_otps_is_verified', 'patient_consent_otps', ['is_verified'])
        op.create_index('idx_consent_otp_patient_created', 'patient_consent_otps', ['patient_id', 'created_at'])
        # At most one unverified OTP per assignment
        op.create_index(
            'uq_active_consent_otp_per_assignment',
            'patient_consent_otps',
            ['assignment_id'],
            unique=True,
            sqlite_where=sa.text('is_verified = 0'),
            postgresql_where=sa.text('is_verified = false')
        )

    # Step 3: consent_otp_audit_logs
    if 'consent_otp_audit_logs' not in existing_tables:
        op.create_table(
            'consent_otp_audit_logs',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('otp_id', sa.String(length=36), nullable=True),
            sa.Column('assignment_id', sa.String(length=36), nullable=True),
            sa.Column('patient_id', sa.String(length=36), nullable=True),
            sa.Column('event_type', sa.String(length=20), nullable=False),
            sa.Column('actor_user_id', sa.String(length=36), nullable=True),
            sa.Column('reason', sa.Text(), nullable=True),
            sa.Column('ip_address', sa.String(length=50), nullable=True),
            sa.Column('user_agent', sa.String(length=500), nullable=True),
            sa.Column('timestamp', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
            sa.ForeignKeyConstraint(['otp_id'], ['patient_consent_otps.id'], ondelete='SET NULL'),
            sa.PrimaryKeyConstraint('id')
        )
        op.create_index('ix_consent_otp_audit_logs_id', 'consent_otp_audit_logs', ['id'])
        op.create_index('ix_consent_otp_audit_logs_otp_id', 'consent_otp_audit_logs', ['otp_id'])
        op.create_index('ix_consent_otp_audit_logs_assignment_id', 'consent_otp_audit_logs', ['assignment_id'])
        op.create_index('ix_consent_otp_audit_logs_patient_id', 'consent_otp_audit_logs', ['patient_id'])
        op.create_index('ix_consent_otp_audit_logs_event_type', 'consent_otp_audit_logs', ['event_type'])
        op.create_index('ix_consent_otp_audit_logs_actor_user_id', 'consent_otp_audit_logs', ['actor_user_id'])
        op.create_index('ix_consent_otp_audit_logs_timestamp', 'consent_otp_audit_logs', ['timestamp'])


def downgrade() -> None:
    """
    Drop consent OTP tables
    """
    connection = op.get_bind()
    inspector = sa.inspect(connection)
    existing_tables = inspector.get_table_names()

    if 'consent_otp_audit_logs' in existing_tables:
        op.drop_table('consent_otp_audit_logs')
    if 'patient_consent_otps' in existing_tables:
        op.drop_index('uq_active_consent_otp_per_assignment', table_name='patient_consent_otps')
        op.drop_table('patient_consent_otps')
    if 'secondary_assignments' in existing_tables:
        op.drop_table('secondary_assignments')
