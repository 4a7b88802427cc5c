"""rebooked order workflow schema

Revision ID: 3c1d0e7a9b21
Revises:
Create Date: 2026-10-19 09:12:41.118204

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '3c1d0e7a9b21'
down_revision = None
branch_labels = None
depends_on = None


def _create_index(insp, table, name, columns, unique=False):
    try:
        idx = {i['name'] for i in insp.get_indexes(table)}
    except Exception:
        idx = set()
    if name not in idx:
        op.create_index(name, table, columns, unique=unique)


def upgrade():
    bind = op.get_bind()
    insp = sa.inspect(bind)
    tables = set(insp.get_table_names())

    if 'profiles' not in tables:
        op.create_table(
            'profiles',
            sa.Column('id', sa.String(length=36), primary_key=True),
            sa.Column('name', sa.String(length=120), nullable=False, server_default=''),
            sa.Column('email', sa.String(length=255), nullable=False),
            sa.Column('phone', sa.String(length=32), nullable=True),
            sa.Column('role', sa.String(length=32), nullable=False, server_default='buyer'),
            sa.Column('suspension_review', sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column('created_at', sa.DateTime(), nullable=False),
        )
    _create_index(insp, 'profiles', 'ix_profiles_email', ['email'], unique=True)

    if 'books' not in tables:
        op.create_table(
            'books',
            sa.Column('id', sa.String(length=36), primary_key=True),
            sa.Column('seller_id', sa.String(length=36), sa.ForeignKey('profiles.id'), nullable=False),
            sa.Column('title', sa.String(length=255), nullable=False, server_default=''),
            sa.Column('author', sa.String(length=255), nullable=True),
            sa.Column('price', sa.Float(), nullable=False, server_default='0'),
            sa.Column('sold', sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column('created_at', sa.DateTime(), nullable=False),
        )
    _create_index(insp, 'books', 'ix_books_seller_id', ['seller_id'])

    if 'orders' not in tables:
        op.create_table(
            'orders',
            sa.Column('id', sa.String(length=36), primary_key=True),
            sa.Column('buyer_id', sa.String(length=36), sa.ForeignKey('profiles.id'), nullable=False),
            sa.Column('seller_id', sa.String(length=36), sa.ForeignKey('profiles.id'), nullable=False),
            sa.Column('book_id', sa.String(length=36), sa.ForeignKey('books.id'), nullable=True),
            sa.Column('status', sa.String(length=32), nullable=False, server_default='pending_commit'),
            sa.Column('delivery_method', sa.String(length=16), nullable=False, server_default='home'),
            sa.Column('amount', sa.Float(), nullable=False, server_default='0'),
            sa.Column('delivery_fee', sa.Float(), nullable=False, server_default='0'),
            sa.Column('total_amount', sa.Float(), nullable=False, server_default='0'),
            sa.Column('payment_reference', sa.String(length=128), nullable=True),
            sa.Column('committed_at', sa.DateTime(), nullable=True),
            sa.Column('cancelled_at', sa.DateTime(), nullable=True),
            sa.Column('declined_at', sa.DateTime(), nullable=True),
            sa.Column('decline_reason', sa.String(length=500), nullable=True),
            sa.Column('cancellation_reason', sa.String(length=500), nullable=True),
            sa.Column('locker_id', sa.String(length=64), nullable=True),
            sa.Column('tracking_number', sa.String(length=128), nullable=True),
            sa.Column('shipment_id', sa.String(length=128), nullable=True),
            sa.Column('waybill_url', sa.String(length=1024), nullable=True),
            sa.Column('qr_code_url', sa.String(length=1024), nullable=True),
            sa.Column('delivery_status', sa.String(length=64), nullable=True),
            sa.Column('tracking_data_json', sa.Text(), nullable=True),
            sa.Column('estimated_payment_date', sa.DateTime(), nullable=True),
            sa.Column('collected_at', sa.DateTime(), nullable=True),
            sa.Column('delivered_at', sa.DateTime(), nullable=True),
            sa.Column('refund_status', sa.String(length=24), nullable=True),
            sa.Column('refund_reference', sa.String(length=128), nullable=True),
            sa.Column('refunded_at', sa.DateTime(), nullable=True),
            sa.Column('escrow_status', sa.String(length=16), nullable=False, server_default='NONE'),
            sa.Column('escrow_held_at', sa.DateTime(), nullable=True),
            sa.Column('escrow_released_at', sa.DateTime(), nullable=True),
            sa.Column('seller_amount_minor', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('platform_fee_minor', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('payout_reference', sa.String(length=128), nullable=True),
            sa.Column('dispute_status', sa.String(length=16), nullable=True),
            sa.Column('dispute_reason', sa.String(length=500), nullable=True),
            sa.Column('version', sa.Integer(), nullable=False, server_default='1'),
            sa.Column('created_at', sa.DateTime(), nullable=False),
            sa.Column('updated_at', sa.DateTime(), nullable=False),
        )
    for name, cols in (
        ('ix_orders_buyer_id', ['buyer_id']),
        ('ix_orders_seller_id', ['seller_id']),
        ('ix_orders_book_id', ['book_id']),
        ('ix_orders_status', ['status']),
        ('ix_orders_payment_reference', ['payment_reference']),
        ('ix_orders_tracking_number', ['tracking_number']),
        ('ix_orders_shipment_id', ['shipment_id']),
        ('ix_orders_created_at', ['created_at']),
    ):
        _create_index(insp, 'orders', name, cols)

    if 'order_events' not in tables:
        op.create_table(
            'order_events',
            sa.Column('id', sa.Integer(), primary_key=True),
            sa.Column('order_id', sa.String(length=36), sa.ForeignKey('orders.id'), nullable=False),
            sa.Column('actor_user_id', sa.String(length=36), nullable=True),
            sa.Column('event', sa.String(length=64), nullable=False),
            sa.Column('note', sa.String(length=240), nullable=True),
            sa.Column('idempotency_key', sa.String(length=160), nullable=True),
            sa.Column('created_at', sa.DateTime(), nullable=False),
        )
    _create_index(insp, 'order_events', 'ix_order_events_order_id', ['order_id'])
    _create_index(insp, 'order_events', 'ix_order_events_idempotency_key', ['idempotency_key'], unique=True)

    if 'refund_transactions' not in tables:
        op.create_table(
            'refund_transactions',
            sa.Column('id', sa.Integer(), primary_key=True),
            sa.Column('order_id', sa.String(length=36), sa.ForeignKey('orders.id'), nullable=False),
            sa.Column('transaction_reference', sa.String(length=128), nullable=True),
            sa.Column('refund_reference', sa.String(length=128), nullable=True),
            sa.Column('amount', sa.Float(), nullable=False, server_default='0'),
            sa.Column('reason', sa.String(length=500), nullable=True),
            sa.Column('status', sa.String(length=16), nullable=False, server_default='pending'),
            sa.Column('error_message', sa.Text(), nullable=True),
            sa.Column('gateway_response', sa.Text(), nullable=True),
            sa.Column('created_at', sa.DateTime(), nullable=False),
            sa.Column('completed_at', sa.DateTime(), nullable=True),
        )
    _create_index(insp, 'refund_transactions', 'ix_refund_transactions_order_id', ['order_id'])
    _create_index(insp, 'refund_transactions', 'ix_refund_transactions_refund_reference', ['refund_reference'])

    if 'banking_subaccounts' not in tables:
        op.create_table(
            'banking_subaccounts',
            sa.Column('id', sa.Integer(), primary_key=True),
            sa.Column('user_id', sa.String(length=36), sa.ForeignKey('profiles.id'), nullable=False),
            sa.Column('business_name', sa.String(length=160), nullable=False, server_default=''),
            sa.Column('email', sa.String(length=255), nullable=True),
            sa.Column('encrypted_account_number', sa.Text(), nullable=True),
            sa.Column('encrypted_bank_code', sa.Text(), nullable=True),
            sa.Column('encrypted_bank_name', sa.Text(), nullable=True),
            sa.Column('encrypted_subaccount_code', sa.Text(), nullable=True),
            sa.Column('encryption_salt', sa.String(length=64), nullable=True),
            sa.Column('encryption_key_hash', sa.String(length=64), nullable=True),
            sa.Column('subaccount_code', sa.String(length=64), nullable=True),
            sa.Column('recipient_code', sa.String(length=64), nullable=True),
            sa.Column('status', sa.String(length=16), nullable=False, server_default='active'),
            sa.Column('created_at', sa.DateTime(), nullable=False),
            sa.Column('updated_at', sa.DateTime(), nullable=False),
            sa.Column('deactivated_at', sa.DateTime(), nullable=True),
        )
    _create_index(insp, 'banking_subaccounts', 'ix_banking_subaccounts_user_id', ['user_id'])
    _create_index(insp, 'banking_subaccounts', 'ix_banking_subaccounts_subaccount_code', ['subaccount_code'])

    if 'notifications' not in tables:
        op.create_table(
            'notifications',
            sa.Column('id', sa.Integer(), primary_key=True),
            sa.Column('user_id', sa.String(length=36), sa.ForeignKey('profiles.id'), nullable=False),
            sa.Column('order_id', sa.String(length=36), nullable=True),
            sa.Column('type', sa.String(length=48), nullable=False, server_default='info'),
            sa.Column('title', sa.String(length=160), nullable=True),
            sa.Column('message', sa.Text(), nullable=False),
            sa.Column('read', sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column('read_at', sa.DateTime(), nullable=True),
            sa.Column('meta', sa.Text(), nullable=True),
            sa.Column('created_at', sa.DateTime(), nullable=False),
        )
    _create_index(insp, 'notifications', 'ix_notifications_user_id', ['user_id'])
    _create_index(insp, 'notifications', 'ix_notifications_order_id', ['order_id'])

    if 'escrow_transitions' not in tables:
        op.create_table(
            'escrow_transitions',
            sa.Column('id', sa.Integer(), primary_key=True),
            sa.Column('order_id', sa.String(length=36), nullable=False),
            sa.Column('from_status', sa.String(length=16), nullable=False, server_default=''),
            sa.Column('to_status', sa.String(length=16), nullable=False),
            sa.Column('actor_type', sa.String(length=32), nullable=False, server_default='system'),
            sa.Column('actor_id', sa.String(length=36), nullable=True),
            sa.Column('idempotency_key', sa.String(length=160), nullable=False),
            sa.Column('reason', sa.String(length=240), nullable=True),
            sa.Column('metadata_json', sa.Text(), nullable=True),
            sa.Column('created_at', sa.DateTime(), nullable=False),
            sa.UniqueConstraint('order_id', 'idempotency_key', name='uq_escrow_transition_order_key'),
        )
    _create_index(insp, 'escrow_transitions', 'ix_escrow_transitions_order_id', ['order_id'])

    if 'seller_fines' not in tables:
        op.create_table(
            'seller_fines',
            sa.Column('id', sa.Integer(), primary_key=True),
            sa.Column('seller_id', sa.String(length=36), sa.ForeignKey('profiles.id'), nullable=False),
            sa.Column('order_id', sa.String(length=36), sa.ForeignKey('orders.id'), nullable=False, unique=True),
            sa.Column('offense_number', sa.Integer(), nullable=False, server_default='1'),
            sa.Column('amount', sa.Float(), nullable=False, server_default='0'),
            sa.Column('reason', sa.String(length=240), nullable=True),
            sa.Column('status', sa.String(length=16), nullable=False, server_default='pending'),
            sa.Column('created_at', sa.DateTime(), nullable=False),
        )
    _create_index(insp, 'seller_fines', 'ix_seller_fines_seller_id', ['seller_id'])

    if 'platform_events' not in tables:
        op.create_table(
            'platform_events',
            sa.Column('id', sa.Integer(), primary_key=True),
            sa.Column('created_at', sa.DateTime(), nullable=False),
            sa.Column('event_type', sa.String(length=80), nullable=False),
            sa.Column('actor_user_id', sa.String(length=36), nullable=True),
            sa.Column('subject_type', sa.String(length=80), nullable=True),
            sa.Column('subject_id', sa.String(length=120), nullable=True),
            sa.Column('request_id', sa.String(length=80), nullable=True),
            sa.Column('idempotency_key', sa.String(length=180), nullable=True),
            sa.Column('severity', sa.String(length=16), nullable=False, server_default='INFO'),
            sa.Column('metadata_json', sa.Text(), nullable=True),
        )
    for name, cols, unique in (
        ('ix_platform_events_created_at', ['created_at'], False),
        ('ix_platform_events_event_type', ['event_type'], False),
        ('ix_platform_events_actor_user_id', ['actor_user_id'], False),
        ('ix_platform_events_subject_id', ['subject_id'], False),
        ('ix_platform_events_idempotency_key', ['idempotency_key'], True),
    ):
        _create_index(insp, 'platform_events', name, cols, unique=unique)

    if 'job_runs' not in tables:
        op.create_table(
            'job_runs',
            sa.Column('id', sa.Integer(), primary_key=True),
            sa.Column('job_name', sa.String(length=64), nullable=False),
            sa.Column('ran_at', sa.DateTime(), nullable=False),
            sa.Column('ok', sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column('processed', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('duration_ms', sa.Integer(), nullable=True),
            sa.Column('error', sa.Text(), nullable=True),
        )
    _create_index(insp, 'job_runs', 'ix_job_runs_job_name', ['job_name'])
    _create_index(insp, 'job_runs', 'ix_job_runs_ran_at', ['ran_at'])

    if 'webhook_events' not in tables:
        op.create_table(
            'webhook_events',
            sa.Column('id', sa.Integer(), primary_key=True),
            sa.Column('provider', sa.String(length=32), nullable=False, server_default='paystack'),
            sa.Column('event_id', sa.String(length=128), nullable=False),
            sa.Column('event_type', sa.String(length=64), nullable=True),
            sa.Column('reference', sa.String(length=128), nullable=True),
            sa.Column('status', sa.String(length=32), nullable=False, server_default='received'),
            sa.Column('payload_hash', sa.String(length=64), nullable=True),
            sa.Column('error', sa.Text(), nullable=True),
            sa.Column('created_at', sa.DateTime(), nullable=False),
            sa.Column('processed_at', sa.DateTime(), nullable=True),
            sa.UniqueConstraint('provider', 'event_id', name='uq_webhook_provider_event'),
        )


def downgrade():
    for table in (
        'webhook_events',
        'job_runs',
        'platform_events',
        'seller_fines',
        'escrow_transitions',
        'notifications',
        'banking_subaccounts',
        'refund_transactions',
        'order_events',
        'orders',
        'books',
        'profiles',
    ):
        op.drop_table(table)
