"""Initial reservation lifecycle schema.

Revision ID: 001
Revises:
Create Date: 2026-10-19
"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '001'
down_revision = None
branch_labels = None
depends_on = None

RESERVATION_STATUS = (
    'CONFIRMATION_PENDING', 'CONFIRMED', 'CHECKIN_DUE', 'IN_HOUSE',
    'CHECKOUT_DUE', 'CHECKED_OUT', 'NO_SHOW', 'CANCELLED',
)
AUDIT_ACTIONS = (
    'CREATED', 'FIELD_UPDATED', 'NOTE_ADDED', 'NOTE_EDITED', 'NOTE_DELETED',
    'PAYMENT_MADE', 'ADDON_ADDED', 'ADDON_REMOVED', 'LATE_FEE_ASSESSED',
    'CONFIRMATION_EXPIRED', 'APPROVAL_REQUESTED', 'APPROVAL_DECIDED',
)


def upgrade() -> None:
    op.create_table(
        'reservations',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('property_id', sa.String(), nullable=False),
        sa.Column('room_id', sa.String(), nullable=False),
        sa.Column('guest_name', sa.String(), nullable=True),
        sa.Column('check_in', sa.DateTime(), nullable=False),
        sa.Column('check_out', sa.DateTime(), nullable=False),
        sa.Column('status', sa.Enum(*RESERVATION_STATUS, name='reservationstatus'), nullable=False),
        sa.Column(
            'payment_status',
            sa.Enum('UNPAID', 'PARTIALLY_PAID', 'PAID', 'REFUNDED', 'FAILED', name='paymentstatus'),
            nullable=False
        ),
        sa.Column('room_rate_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_amount_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('status_updated_by', sa.String(), nullable=True),
        sa.Column('status_updated_at', sa.DateTime(), nullable=False),
        sa.Column('status_change_reason', sa.String(), nullable=True),
        sa.Column('checked_in_at', sa.DateTime(), nullable=True),
        sa.Column('checked_out_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('version', sa.Integer(), nullable=False, server_default='1'),
        sa.CheckConstraint('check_out > check_in', name='ck_reservations_stay_window'),
    )
    op.create_index('ix_reservations_id', 'reservations', ['id'])
    op.create_index('ix_reservations_property_id', 'reservations', ['property_id'])
    op.create_index('ix_reservations_property_status', 'reservations', ['property_id', 'status'])

    op.create_table(
        'approval_requests',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('reservation_id', sa.Integer(), sa.ForeignKey('reservations.id'), nullable=False),
        sa.Column('property_id', sa.String(), nullable=False),
        sa.Column(
            'request_type',
            sa.Enum('EARLY_CHECKIN', 'LATE_CHECKOUT', 'STATUS_OVERRIDE', name='approvalrequesttype'),
            nullable=False
        ),
        sa.Column('request_reason', sa.String(), nullable=False),
        sa.Column('requested_by', sa.String(), nullable=False),
        sa.Column('requested_at', sa.DateTime(), nullable=False),
        sa.Column('status', sa.Enum('PENDING', 'APPROVED', 'REJECTED', name='approvalstatus'), nullable=False),
        sa.Column('approved_by', sa.String(), nullable=True),
        sa.Column('approved_at', sa.DateTime(), nullable=True),
        sa.Column('approval_notes', sa.String(), nullable=True),
        sa.Column('metadata', sa.JSON(), nullable=True),
    )
    op.create_index('ix_approval_requests_id', 'approval_requests', ['id'])
    op.create_index('ix_approval_requests_reservation_id', 'approval_requests', ['reservation_id'])
    op.create_index('ix_approval_requests_property_id', 'approval_requests', ['property_id'])

    op.create_table(
        'reservation_status_history',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('reservation_id', sa.Integer(), sa.ForeignKey('reservations.id'), nullable=False),
        sa.Column('property_id', sa.String(), nullable=False),
        sa.Column('previous_status', sa.Enum(*RESERVATION_STATUS, name='reservationstatus'), nullable=True),
        sa.Column('new_status', sa.Enum(*RESERVATION_STATUS, name='reservationstatus'), nullable=False),
        sa.Column('changed_by', sa.String(), nullable=True),
        sa.Column('change_reason', sa.String(), nullable=True),
        sa.Column('changed_at', sa.DateTime(), nullable=False),
        sa.Column('is_automatic', sa.Boolean(), nullable=False),
        sa.Column(
            'origin',
            sa.Enum('MANUAL', 'AUTOMATIC', 'APPROVAL_GRANTED', name='transitionoriginkind'),
            nullable=False
        ),
        sa.Column('approval_request_id', sa.Integer(), sa.ForeignKey('approval_requests.id'), nullable=True),
    )
    op.create_index('ix_reservation_status_history_id', 'reservation_status_history', ['id'])
    op.create_index(
        'ix_status_history_reservation_changed',
        'reservation_status_history',
        ['reservation_id', 'changed_at']
    )

    op.create_table(
        'reservation_audit_log',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('reservation_id', sa.Integer(), sa.ForeignKey('reservations.id'), nullable=False),
        sa.Column('property_id', sa.String(), nullable=False),
        sa.Column('action', sa.Enum(*AUDIT_ACTIONS, name='auditaction'), nullable=False),
        sa.Column('field_name', sa.String(), nullable=True),
        sa.Column('old_value', sa.String(), nullable=True),
        sa.Column('new_value', sa.String(), nullable=True),
        sa.Column('description', sa.String(), nullable=True),
        sa.Column('changed_by', sa.String(), nullable=True),
        sa.Column('metadata', sa.JSON(), nullable=True),
        sa.Column('changed_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_reservation_audit_log_id', 'reservation_audit_log', ['id'])
    op.create_index('ix_reservation_audit_log_property_id', 'reservation_audit_log', ['property_id'])
    op.create_index('ix_reservation_audit_log_action', 'reservation_audit_log', ['action'])
    op.create_index('ix_reservation_audit_log_changed_at', 'reservation_audit_log', ['changed_at'])
    op.create_index('ix_audit_log_reservation_changed', 'reservation_audit_log', ['reservation_id', 'changed_at'])

    op.create_table(
        'property_automation_settings',
        sa.Column('property_id', sa.String(), primary_key=True),
        sa.Column('timezone', sa.String(), nullable=False, server_default='UTC'),
        sa.Column('check_in_time', sa.String(), nullable=False, server_default='15:00'),
        sa.Column('check_out_time', sa.String(), nullable=False, server_default='11:00'),
        sa.Column('no_show_grace_hours', sa.Integer(), nullable=False, server_default='6'),
        sa.Column('no_show_lookback_days', sa.Integer(), nullable=False, server_default='3'),
        sa.Column('enable_no_show_detection', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('late_checkout_grace_hours', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('late_checkout_lookback_days', sa.Integer(), nullable=False, server_default='2'),
        sa.Column('late_checkout_fee', sa.Float(), nullable=False, server_default='0'),
        sa.Column(
            'late_checkout_fee_type',
            sa.Enum(
                'FLAT_RATE', 'HOURLY', 'PERCENTAGE_OF_ROOM_RATE', 'PERCENTAGE_OF_TOTAL_BILL',
                name='latecheckoutfeetype'
            ),
            nullable=False,
            server_default='FLAT_RATE'
        ),
        sa.Column('enable_late_checkout_detection', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('confirmation_pending_timeout_hours', sa.Integer(), nullable=False, server_default='6'),
        sa.Column(
            'confirmation_pending_action',
            sa.Enum('CANCEL', 'FLAG', name='confirmationpendingaction'),
            nullable=False,
            server_default='CANCEL'
        ),
        sa.Column('enable_confirmation_expiry', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('audit_log_retention_days', sa.Integer(), nullable=False, server_default='90'),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
    )


def downgrade() -> None:
    op.drop_table('property_automation_settings')
    op.drop_index('ix_audit_log_reservation_changed', table_name='reservation_audit_log')
    op.drop_index('ix_reservation_audit_log_changed_at', table_name='reservation_audit_log')
    op.drop_index('ix_reservation_audit_log_action', table_name='reservation_audit_log')
    op.drop_index('ix_reservation_audit_log_property_id', table_name='reservation_audit_log')
    op.drop_index('ix_reservation_audit_log_id', table_name='reservation_audit_log')
    op.drop_table('reservation_audit_log')
    op.drop_index('ix_status_history_reservation_changed', table_name='reservation_status_history')
    op.drop_index('ix_reservation_status_history_id', table_name='reservation_status_history')
    op.drop_table('reservation_status_history')
    op.drop_index('ix_approval_requests_property_id', table_name='approval_requests')
    op.drop_index('ix_approval_requests_reservation_id', table_name='approval_requests')
    op.drop_index('ix_approval_requests_id', table_name='approval_requests')
    op.drop_table('approval_requests')
    op.drop_index('ix_reservations_property_status', table_name='reservations')
    op.drop_index('ix_reservations_property_id', table_name='reservations')
    op.drop_index('ix_reservations_id', table_name='reservations')
    op.drop_table('reservations')
