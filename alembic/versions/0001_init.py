from alembic import op
import sqlalchemy as sa

revision = '0001_init'
down_revision = None
branch_labels = None
depends_on = None

def upgrade():
    op.create_table(
        'wc_customers',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('wc_customer_id', sa.String(100), nullable=True, index=True),
        sa.Column('first_name', sa.String(100), nullable=True),
        sa.Column('last_name', sa.String(100), nullable=True),
        sa.Column('email', sa.String(255), nullable=True, index=True),
        sa.Column('phone', sa.String(50), nullable=True, index=True),
        sa.Column('created_at', sa.DateTime, nullable=True)
    )
    op.create_table(
        'orders',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('order_number', sa.String(50), nullable=False, unique=True, index=True),
        sa.Column('source', sa.String(20), nullable=False),
        sa.Column('woo_order_id', sa.Integer, nullable=True, unique=True),
        sa.Column('customer_id', sa.Integer, sa.ForeignKey('wc_customers.id'), nullable=True),
        sa.Column('customer_name', sa.String(200), nullable=False),
        sa.Column('customer_email', sa.String(255), nullable=True),
        sa.Column('customer_phone', sa.String(50), nullable=True),
        sa.Column('customer_address', sa.Text, nullable=True),
        sa.Column('billing_city', sa.String(100), nullable=True),
        sa.Column('billing_state', sa.String(100), nullable=True),
        sa.Column('billing_pincode', sa.String(20), nullable=True),
        sa.Column('global_notes', sa.Text, nullable=True),
        sa.Column('delivery_date', sa.Date, nullable=True),
        sa.Column('priority', sa.String(10), nullable=False),
        sa.Column('order_status', sa.String(40), nullable=False),
        sa.Column('current_department', sa.String(30), nullable=True),
        sa.Column('order_total', sa.Numeric(12, 2), nullable=False),
        sa.Column('tax_amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('currency', sa.String(10), nullable=True),
        sa.Column('payment_status', sa.String(30), nullable=True),
        sa.Column('is_completed', sa.Boolean, nullable=False),
        sa.Column('is_archived', sa.Boolean, nullable=False),
        sa.Column('created_by', sa.String(64), nullable=True),
        sa.Column('created_at', sa.DateTime, nullable=False),
        sa.Column('updated_at', sa.DateTime, nullable=False)
    )
    op.create_table(
        'order_items',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('order_id', sa.Integer, sa.ForeignKey('orders.id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('product_name', sa.String(200), nullable=False),
        sa.Column('quantity', sa.Integer, nullable=False),
        sa.Column('price', sa.Numeric(12, 2), nullable=False),
        sa.Column('line_total', sa.Numeric(12, 2), nullable=False),
        sa.Column('specifications', sa.JSON, nullable=True),
        sa.Column('current_stage', sa.String(30), nullable=False),
        sa.Column('current_substage', sa.String(30), nullable=True),
        sa.Column('production_stage_sequence', sa.JSON, nullable=True),
        sa.Column('assigned_department', sa.String(30), nullable=True, index=True),
        sa.Column('assigned_to', sa.String(64), nullable=True),
        sa.Column('assigned_to_name', sa.String(200), nullable=True),
        sa.Column('delivery_date', sa.Date, nullable=True),
        sa.Column('priority', sa.String(10), nullable=False),
        sa.Column('is_ready_for_production', sa.Boolean, nullable=False),
        sa.Column('is_dispatched', sa.Boolean, nullable=False),
        sa.Column('dispatch_info', sa.JSON, nullable=True),
        sa.Column('outsource_info', sa.JSON, nullable=True),
        sa.Column('created_at', sa.DateTime, nullable=False),
        sa.Column('updated_at', sa.DateTime, nullable=False)
    )
    op.create_table(
        'timeline',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('order_id', sa.Integer, sa.ForeignKey('orders.id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('item_id', sa.Integer, nullable=True),
        sa.Column('product_name', sa.String(200), nullable=True),
        sa.Column('stage', sa.String(30), nullable=False),
        sa.Column('substage', sa.String(30), nullable=True),
        sa.Column('action', sa.String(40), nullable=False),
        sa.Column('performed_by', sa.String(64), nullable=True),
        sa.Column('performed_by_name', sa.String(200), nullable=True),
        sa.Column('notes', sa.Text, nullable=True),
        sa.Column('attachments', sa.JSON, nullable=True),
        sa.Column('is_public', sa.Boolean, nullable=False),
        sa.Column('created_at', sa.DateTime, nullable=False)
    )
    op.create_table(
        'order_files',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('order_id', sa.Integer, sa.ForeignKey('orders.id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('item_id', sa.Integer, nullable=True),
        sa.Column('file_url', sa.String(500), nullable=False),
        sa.Column('file_path', sa.String(500), nullable=False),
        sa.Column('file_name', sa.String(255), nullable=False),
        sa.Column('file_type', sa.String(20), nullable=False),
        sa.Column('uploaded_by', sa.String(64), nullable=True),
        sa.Column('is_public', sa.Boolean, nullable=False),
        sa.Column('created_at', sa.DateTime, nullable=False)
    )
    op.create_table(
        'notifications',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('user_id', sa.String(64), nullable=False, index=True),
        sa.Column('title', sa.String(200), nullable=False),
        sa.Column('message', sa.Text, nullable=False),
        sa.Column('type', sa.String(20), nullable=False),
        sa.Column('order_id', sa.Integer, nullable=True),
        sa.Column('item_id', sa.Integer, nullable=True),
        sa.Column('is_read', sa.Boolean, nullable=False),
        sa.Column('created_at', sa.DateTime, nullable=False)
    )
    op.create_table(
        'profiles',
        sa.Column('user_id', sa.String(64), primary_key=True),
        sa.Column('full_name', sa.String(200), nullable=False),
        sa.Column('email', sa.String(255), nullable=True),
        sa.Column('department', sa.String(30), nullable=True),
        sa.Column('production_stage', sa.String(30), nullable=True)
    )
    op.create_table(
        'user_roles',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('user_id', sa.String(64), nullable=False, index=True),
        sa.Column('role', sa.String(20), nullable=False)
    )

def downgrade():
    op.drop_table('user_roles')
    op.drop_table('profiles')
    op.drop_table('notifications')
    op.drop_table('order_files')
    op.drop_table('timeline')
    op.drop_table('order_items')
    op.drop_table('orders')
    op.drop_table('wc_customers')
