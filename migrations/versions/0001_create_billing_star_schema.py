"""
create billing star schema

Revision ID: 0001_billing_star_schema
Revises:
Create Date: 2026-03-01

Seven append-only dimension tables, the billing fact table with its
(upload_id, source_row_id) dedup constraint, and the upload tracking table.
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers
revision = '0001_billing_star_schema'
down_revision = None
branch_labels = None
depends_on = None

SurrogateKey = sa.BigInteger().with_variant(sa.Integer(), 'sqlite')
JSONType = sa.JSON().with_variant(postgresql.JSONB(), 'postgresql')


def _dimension(name: str, *columns, unique=None) -> None:
    args = [
        sa.Column('id', SurrogateKey, primary_key=True, autoincrement=True),
        *columns,
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    ]
    if unique is not None:
        args.append(sa.UniqueConstraint(*unique[1], name=unique[0]))
    op.create_table(name, *args)


def upgrade() -> None:
    _dimension(
        'dim_cloud_accounts',
        sa.Column('provider', sa.String(32), nullable=False),
        sa.Column('billing_account_id', sa.String(128), nullable=False),
        sa.Column('billing_account_name', sa.String(255), nullable=True),
        sa.Column('billing_currency', sa.String(8), nullable=True),
        unique=('uix_dim_cloud_account_natural', ('provider', 'billing_account_id')),
    )
    op.create_index('ix_dim_cloud_accounts_provider', 'dim_cloud_accounts', ['provider'])

    _dimension(
        'dim_services',
        sa.Column('provider', sa.String(32), nullable=False),
        sa.Column('service_name', sa.String(255), nullable=False),
        sa.Column('service_category', sa.String(128), nullable=True),
        unique=('uix_dim_service_natural', ('provider', 'service_name')),
    )
    op.create_index('ix_dim_services_service_name', 'dim_services', ['service_name'])

    _dimension(
        'dim_regions',
        sa.Column('provider', sa.String(32), nullable=False),
        sa.Column('region_code', sa.String(64), nullable=False),
        sa.Column('region_name', sa.String(128), nullable=True),
        sa.Column('availability_zone', sa.String(64), nullable=True),
        unique=('uix_dim_region_natural', ('provider', 'region_code')),
    )

    _dimension(
        'dim_skus',
        sa.Column('sku_id', sa.String(128), nullable=False, unique=True),
        sa.Column('sku_price_id', sa.String(128), nullable=True),
        sa.Column('pricing_category', sa.String(64), nullable=True),
        sa.Column('pricing_unit', sa.String(128), nullable=True),
    )
    _dimension(
        'dim_resources',
        sa.Column('resource_id', sa.String(512), nullable=False, unique=True),
        sa.Column('resource_name', sa.String(512), nullable=True),
        sa.Column('resource_type', sa.String(128), nullable=True),
    )
    _dimension(
        'dim_sub_accounts',
        sa.Column('sub_account_id', sa.String(255), nullable=False, unique=True),
        sa.Column('sub_account_name', sa.String(255), nullable=True),
    )
    _dimension(
        'dim_commitment_discounts',
        sa.Column('commitment_discount_id', sa.String(128), nullable=False, unique=True),
        sa.Column('commitment_discount_name', sa.String(255), nullable=True),
        sa.Column('commitment_discount_category', sa.String(64), nullable=True),
        sa.Column('commitment_discount_type', sa.String(64), nullable=True),
    )

    op.create_table(
        'billing_uploads',
        sa.Column('upload_id', sa.String(64), primary_key=True),
        sa.Column('status', sa.String(32), nullable=False, server_default='processing'),
        sa.Column('rows_received', sa.Integer, nullable=False, server_default='0'),
        sa.Column('rows_inserted', sa.Integer, nullable=False, server_default='0'),
        sa.Column('rows_skipped_duplicate', sa.Integer, nullable=False, server_default='0'),
        sa.Column('batches_failed', sa.Integer, nullable=False, server_default='0'),
        sa.Column('started_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index('ix_billing_uploads_status', 'billing_uploads', ['status'])

    money = lambda name: sa.Column(name, sa.Numeric(18, 8), nullable=False, server_default='0')  # noqa: E731
    op.create_table(
        'billing_usage_facts',
        sa.Column('id', SurrogateKey, primary_key=True, autoincrement=True),
        sa.Column('upload_id', sa.String(64), nullable=False),
        sa.Column('source_row_id', sa.String(128), nullable=False),
        sa.Column('cloud_account_id', SurrogateKey, sa.ForeignKey('dim_cloud_accounts.id'), nullable=True),
        sa.Column('service_id', SurrogateKey, sa.ForeignKey('dim_services.id'), nullable=True),
        sa.Column('sku_id', SurrogateKey, sa.ForeignKey('dim_skus.id'), nullable=True),
        sa.Column('resource_id', SurrogateKey, sa.ForeignKey('dim_resources.id'), nullable=True),
        sa.Column('region_id', SurrogateKey, sa.ForeignKey('dim_regions.id'), nullable=True),
        sa.Column('sub_account_id', SurrogateKey, sa.ForeignKey('dim_sub_accounts.id'), nullable=True),
        sa.Column('commitment_discount_id', SurrogateKey,
                  sa.ForeignKey('dim_commitment_discounts.id'), nullable=True),
        sa.Column('charge_category', sa.String(50), nullable=True),
        sa.Column('charge_class', sa.String(50), nullable=True),
        sa.Column('charge_description', sa.Text, nullable=True),
        sa.Column('charge_frequency', sa.String(30), nullable=True),
        sa.Column('consumed_quantity', sa.Numeric(24, 8), nullable=False, server_default='0'),
        sa.Column('consumed_unit', sa.String(128), nullable=True),
        sa.Column('pricing_quantity', sa.Numeric(24, 8), nullable=False, server_default='0'),
        sa.Column('pricing_unit', sa.String(128), nullable=True),
        money('list_unit_price'),
        money('contracted_unit_price'),
        money('effective_unit_price'),
        money('billed_unit_price'),
        money('list_cost'),
        money('contracted_cost'),
        money('effective_cost'),
        money('billed_cost'),
        sa.Column('billing_period_start', sa.Date, nullable=True),
        sa.Column('billing_period_end', sa.Date, nullable=True),
        sa.Column('charge_period_start', sa.Date, nullable=True),
        sa.Column('charge_period_end', sa.Date, nullable=True),
        sa.Column('tags', JSONType, nullable=False, server_default=sa.text("'{}'")),
        sa.Column('ingested_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint('upload_id', 'source_row_id', name='uix_billing_fact_upload_row'),
    )
    op.create_index(
        'ix_billing_fact_upload_charge_start',
        'billing_usage_facts',
        ['upload_id', 'charge_period_start'],
    )
    for column in (
        'cloud_account_id', 'service_id', 'sku_id', 'resource_id',
        'region_id', 'sub_account_id', 'commitment_discount_id',
    ):
        op.create_index(f'ix_billing_usage_facts_{column}', 'billing_usage_facts', [column])


def downgrade() -> None:
    op.drop_table('billing_usage_facts')
    op.drop_index('ix_billing_uploads_status', table_name='billing_uploads')
    op.drop_table('billing_uploads')
    for table in (
        'dim_commitment_discounts', 'dim_sub_accounts', 'dim_resources', 'dim_skus',
        'dim_regions', 'dim_services', 'dim_cloud_accounts',
    ):
        op.drop_table(table)
