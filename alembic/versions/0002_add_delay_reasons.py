from alembic import op
import sqlalchemy as sa

revision = '0002_add_delay_reasons'
down_revision = '0001_init'
branch_labels = None
depends_on = None

def upgrade():
    op.create_table(
        'delay_reasons',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('order_id', sa.Integer, sa.ForeignKey('orders.id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('item_id', sa.Integer, nullable=True),
        sa.Column('category', sa.String(30), nullable=False, index=True),
        sa.Column('reason', sa.String(200), nullable=False),
        sa.Column('description', sa.Text, nullable=True),
        sa.Column('stage', sa.String(30), nullable=False),
        sa.Column('reported_by', sa.String(64), nullable=True),
        sa.Column('reported_by_name', sa.String(200), nullable=True),
        sa.Column('reported_at', sa.DateTime, nullable=False),
        sa.Column('is_resolved', sa.Boolean, nullable=False),
        sa.Column('resolved_at', sa.DateTime, nullable=True)
    )

def downgrade():
    op.drop_table('delay_reasons')
