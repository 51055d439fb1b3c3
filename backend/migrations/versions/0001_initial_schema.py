"""initial schema

Revision ID: 0001_initial_schema
Revises:
Create Date: 2026-10-19 00:00:00.000000

Creates the complete order/ledger schema:
- suppliers, raw_materials, products, product_recipes: catalog master data
- orders, order_items: order documents
- order_undo_entries: bounded per-order undo log
- stock_movements: append-only raw-material ledger
- conflict_records: rejected conflicting writes
- domain_events: event outbox
- document_sequences: atomic order numbering
"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '0001_initial_schema'
down_revision = None
branch_labels = None
depends_on = None


def _timestamps():
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
    ]


def upgrade():
    # ============================================================================
    # Catalog
    # ============================================================================
    op.create_table(
        'suppliers',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('contact', sa.String(length=255), nullable=True),
        sa.Column('url', sa.String(length=512), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('name', name='uq_suppliers_name'),
        sqlite_autoincrement=True
    )

    op.create_table(
        'raw_materials',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('stock_quantity', sa.Numeric(14, 3), nullable=False, server_default='0'),
        sa.Column('stock_unit', sa.String(length=32), nullable=True),
        sa.Column('min_stock_quantity', sa.Numeric(14, 3), nullable=True),
        sa.Column('max_stock_quantity', sa.Numeric(14, 3), nullable=True),
        sa.Column('unit_price_cents', sa.Integer(), nullable=True),
        sa.Column('lead_time_days', sa.Integer(), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('supplier_id', sa.Integer(), nullable=True),
        sa.Column('version_id', sa.Integer(), nullable=False, server_default='1'),
        *_timestamps(),
        sa.ForeignKeyConstraint(['supplier_id'], ['suppliers.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('name', name='uq_raw_materials_name'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_raw_materials_supplier_id', 'raw_materials', ['supplier_id'])

    op.create_table(
        'products',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('sku', sa.String(length=64), nullable=True),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('category', sa.String(length=64), nullable=True),
        sa.Column('price_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('stock_quantity', sa.Integer(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('version_id', sa.Integer(), nullable=False, server_default='1'),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('sku', name='uq_products_sku'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_products_active_name', 'products', ['is_active', 'name'])

    op.create_table(
        'product_recipes',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('product_id', sa.Integer(), nullable=False),
        sa.Column('raw_material_id', sa.Integer(), nullable=True),
        sa.Column('item_type', sa.String(length=16), nullable=False, server_default='MATERIAL'),
        sa.Column('quantity', sa.Numeric(14, 3), nullable=False),
        sa.Column('unit', sa.String(length=32), nullable=True),
        sa.Column('option_key', sa.String(length=64), nullable=True),
        sa.Column('unit_cost_cents', sa.Integer(), nullable=True),
        sa.Column('notes', sa.String(length=255), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.ForeignKeyConstraint(['product_id'], ['products.id']),
        sa.ForeignKeyConstraint(['raw_material_id'], ['raw_materials.id']),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_product_recipes_product_id', 'product_recipes', ['product_id'])
    op.create_index('ix_product_recipes_raw_material_id', 'product_recipes', ['raw_material_id'])
    op.create_index('ix_product_recipes_product_type', 'product_recipes', ['product_id', 'item_type'])

    # ============================================================================
    # Orders
    # ============================================================================
    op.create_table(
        'orders',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('order_number', sa.String(length=64), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='PENDING'),
        sa.Column('stock_committed', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('total_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('received_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('discount_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('labor_cost_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('net_profit_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('customer_name', sa.String(length=255), nullable=False),
        sa.Column('customer_email', sa.String(length=254), nullable=True),
        sa.Column('customer_phone', sa.String(length=32), nullable=True),
        sa.Column('shipping_address', sa.String(length=512), nullable=True),
        sa.Column('shipping_city', sa.String(length=128), nullable=True),
        sa.Column('shipping_method', sa.String(length=64), nullable=True),
        sa.Column('order_source', sa.String(length=64), nullable=True),
        sa.Column('deadline_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('created_by', sa.String(length=128), nullable=True),
        sa.Column('version_id', sa.Integer(), nullable=False, server_default='1'),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('order_number', name='uq_orders_order_number'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_orders_status', 'orders', ['status'])
    op.create_index('ix_orders_status_created', 'orders', ['status', 'created_at'])

    op.create_table(
        'order_items',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('order_id', sa.Integer(), nullable=False),
        sa.Column('product_id', sa.Integer(), nullable=False),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('unit_price_cents', sa.Integer(), nullable=False),
        sa.Column('personalization', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.ForeignKeyConstraint(['order_id'], ['orders.id']),
        sa.ForeignKeyConstraint(['product_id'], ['products.id']),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_order_items_order_id', 'order_items', ['order_id'])
    op.create_index('ix_order_items_product_id', 'order_items', ['product_id'])

    op.create_table(
        'order_undo_entries',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('order_id', sa.Integer(), nullable=False),
        sa.Column('previous_status', sa.String(length=16), nullable=False),
        sa.Column('new_status', sa.String(length=16), nullable=False),
        sa.Column('stock_effect', sa.String(length=16), nullable=False, server_default='NONE'),
        sa.Column('actor', sa.String(length=128), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.ForeignKeyConstraint(['order_id'], ['orders.id']),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_order_undo_entries_order_id_id', 'order_undo_entries', ['order_id', 'id'])

    op.create_table(
        'document_sequences',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('document_type', sa.String(length=32), nullable=False),
        sa.Column('next_number', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('document_type', name='uq_doc_sequences_type'),
        sqlite_autoincrement=True
    )

    # ============================================================================
    # stock_movements: append-only ledger (never updated or deleted)
    # ============================================================================
    op.create_table(
        'stock_movements',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('raw_material_id', sa.Integer(), nullable=False),
        sa.Column('movement_type', sa.String(length=16), nullable=False),
        sa.Column('quantity', sa.Numeric(14, 3), nullable=False),
        sa.Column('balance_after', sa.Numeric(14, 3), nullable=True),
        sa.Column('reason', sa.String(length=255), nullable=False),
        sa.Column('order_id', sa.Integer(), nullable=True),
        sa.Column('actor', sa.String(length=128), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.CheckConstraint(
            "movement_type IN ('IN', 'OUT', 'RETURN', 'ADJUSTMENT')",
            name='ck_stock_movements_type',
        ),
        sa.ForeignKeyConstraint(['raw_material_id'], ['raw_materials.id']),
        sa.ForeignKeyConstraint(['order_id'], ['orders.id']),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_stock_movements_raw_material_id', 'stock_movements', ['raw_material_id'])
    op.create_index('ix_stock_movements_movement_type', 'stock_movements', ['movement_type'])
    op.create_index('ix_stock_movements_order_id', 'stock_movements', ['order_id'])
    op.create_index('ix_stock_movements_created_at', 'stock_movements', ['created_at'])
    op.create_index('ix_stock_movements_material_created', 'stock_movements', ['raw_material_id', 'created_at'])

    # ============================================================================
    # Conflicts and events
    # ============================================================================
    op.create_table(
        'conflict_records',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('entity_table', sa.String(length=64), nullable=False),
        sa.Column('entity_id', sa.Integer(), nullable=False),
        sa.Column('fields_json', sa.Text(), nullable=False),
        sa.Column('priority', sa.String(length=16), nullable=False, server_default='NORMAL'),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='DETECTED'),
        sa.Column('source', sa.String(length=128), nullable=True),
        sa.Column('base_version', sa.Integer(), nullable=True),
        sa.Column('server_version', sa.Integer(), nullable=True),
        sa.Column('attempted_changes_json', sa.Text(), nullable=True),
        sa.Column('resolution', sa.String(length=32), nullable=True),
        sa.Column('resolved_by', sa.String(length=128), nullable=True),
        sa.Column('resolved_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('resolution_note', sa.String(length=255), nullable=True),
        sa.Column('detected_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_conflict_records_priority', 'conflict_records', ['priority'])
    op.create_index('ix_conflict_records_entity', 'conflict_records', ['entity_table', 'entity_id'])
    op.create_index('ix_conflict_records_status_detected', 'conflict_records', ['status', 'detected_at'])

    op.create_table(
        'domain_events',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('event_type', sa.String(length=64), nullable=False),
        sa.Column('entity_type', sa.String(length=64), nullable=False),
        sa.Column('entity_id', sa.Integer(), nullable=False),
        sa.Column('payload', sa.Text(), nullable=True),
        sa.Column('occurred_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_domain_events_entity_id', 'domain_events', ['entity_id'])
    op.create_index('ix_domain_events_occurred_at', 'domain_events', ['occurred_at'])
    op.create_index('ix_domain_events_type_id', 'domain_events', ['event_type', 'id'])


def downgrade():
    op.drop_table('domain_events')
    op.drop_table('conflict_records')
    op.drop_table('stock_movements')
    op.drop_table('document_sequences')
    op.drop_table('order_undo_entries')
    op.drop_table('order_items')
    op.drop_table('orders')
    op.drop_table('product_recipes')
    op.drop_table('products')
    op.drop_table('raw_materials')
    op.drop_table('suppliers')
