"""Create shared reference tables (statuses, service types, trouble codes,
meter types, users, user groups) and seed the default statuses.

Revision ID: 001_create_reference_tables
Revises:
Create Date: 2025-01-06

Note: project work_orders tables reference these by code / product id / name,
so the referenced columns must stay UNIQUE.
"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '001_create_reference_tables'
down_revision = None
branch_labels = None
depends_on = None

DEFAULT_STATUSES = [
    # code, color
    ("Open", "blue"),
    ("Completed", "green"),
    ("Scheduled", "orange"),
    ("Skipped", "gray"),
    ("Trouble", "red"),
]

DEFAULT_SERVICE_TYPES = ["Water", "Electric", "Gas"]


def _table_exists(name: str) -> bool:
    return sa.inspect(op.get_bind()).has_table(name)


def upgrade():
    """Create reference tables."""
    if not _table_exists('work_order_statuses'):
        statuses = op.create_table(
            'work_order_statuses',
            sa.Column('id', sa.Integer(), primary_key=True, index=True),
            sa.Column('code', sa.String(50), nullable=False, unique=True),
            sa.Column('label', sa.String(100), nullable=False),
            sa.Column('color', sa.String(20)),
            sa.Column('is_default', sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column('sort_order', sa.Integer(), server_default='0'),
        )
        op.bulk_insert(statuses, [
            {
                'code': code,
                'label': code,
                'color': color,
                'is_default': code == 'Open',
                'sort_order': i,
            }
            for i, (code, color) in enumerate(DEFAULT_STATUSES)
        ])

    if not _table_exists('service_types'):
        service_types = op.create_table(
            'service_types',
            sa.Column('id', sa.Integer(), primary_key=True, index=True),
            sa.Column('code', sa.String(50), nullable=False, unique=True),
            sa.Column('label', sa.String(100), nullable=False),
            sa.Column('sort_order', sa.Integer(), server_default='0'),
        )
        op.bulk_insert(service_types, [
            {'code': code, 'label': code, 'sort_order': i}
            for i, code in enumerate(DEFAULT_SERVICE_TYPES)
        ])

    if not _table_exists('trouble_codes'):
        op.create_table(
            'trouble_codes',
            sa.Column('id', sa.Integer(), primary_key=True, index=True),
            sa.Column('code', sa.String(100), nullable=False, unique=True),
            sa.Column('label', sa.String(255), nullable=False),
            sa.Column('sort_order', sa.Integer(), server_default='0'),
        )

    if not _table_exists('meter_types'):
        op.create_table(
            'meter_types',
            sa.Column('id', sa.Integer(), primary_key=True, index=True),
            sa.Column('product_id', sa.String(255), nullable=False, unique=True),
            sa.Column('product_label', sa.String(255), nullable=False),
            sa.Column('sort_order', sa.Integer(), server_default='0'),
        )

    if not _table_exists('users'):
        op.create_table(
            'users',
            sa.Column('id', sa.String(255), primary_key=True),
            sa.Column('username', sa.String(255), nullable=False, unique=True),
            sa.Column('first_name', sa.String(100)),
            sa.Column('last_name', sa.String(100)),
            sa.Column('email', sa.String(255)),
        )

    if not _table_exists('user_groups'):
        op.create_table(
            'user_groups',
            sa.Column('id', sa.Integer(), primary_key=True, index=True),
            sa.Column('name', sa.String(255), nullable=False, unique=True),
            sa.Column('description', sa.Text()),
        )


def downgrade():
    """Drop reference tables. Fails while any project still references them."""
    for table in ('user_groups', 'users', 'meter_types', 'trouble_codes',
                  'service_types', 'work_order_statuses'):
        op.drop_table(table)
