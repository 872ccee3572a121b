"""Create market sync tables

Revision ID: 001
Revises:
Create Date: 2025-10-01

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = '001'
down_revision = None
branch_labels = None
depends_on = None


def _timestamps():
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        'conditions',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('oracle', sa.String(), nullable=False),
        sa.Column('question_id', sa.String(), nullable=False),
        sa.Column('resolved', sa.Boolean(), server_default=sa.text('false'), nullable=True),
        sa.Column('arweave_hash', sa.String(), nullable=True),
        sa.Column('creator', sa.String(length=42), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_conditions_id'), 'conditions', ['id'], unique=False)

    op.create_table(
        'events',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('slug', sa.String(), nullable=False),
        sa.Column('title', sa.Text(), nullable=False),
        sa.Column('creator', sa.String(length=42), nullable=True),
        sa.Column('icon_url', sa.Text(), nullable=True),
        sa.Column('show_market_icons', sa.Boolean(), server_default=sa.text('true'), nullable=True),
        sa.Column('status', sa.String(), server_default='active', nullable=False),
        sa.Column('rules', sa.Text(), nullable=True),
        sa.Column('active_markets_count', sa.Integer(), server_default='0', nullable=True),
        sa.Column('total_markets_count', sa.Integer(), server_default='0', nullable=True),
        sa.Column('end_date', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('slug')
    )
    op.create_index(op.f('ix_events_slug'), 'events', ['slug'], unique=False)

    op.create_table(
        'markets',
        sa.Column('condition_id', sa.String(), nullable=False),
        sa.Column('event_id', sa.String(), nullable=False),
        sa.Column('title', sa.Text(), nullable=False),
        sa.Column('slug', sa.String(), nullable=False),
        sa.Column('short_title', sa.Text(), nullable=True),
        sa.Column('icon_url', sa.Text(), nullable=True),
        sa.Column('is_active', sa.Boolean(), server_default=sa.text('true'), nullable=False),
        sa.Column('is_resolved', sa.Boolean(), server_default=sa.text('false'), nullable=False),
        sa.Column('metadata', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column('current_volume_24h', sa.Numeric(20, 6), server_default='0', nullable=False),
        sa.Column('total_volume', sa.Numeric(20, 6), server_default='0', nullable=False),
        *_timestamps(),
        sa.ForeignKeyConstraint(['condition_id'], ['conditions.id'], ondelete='CASCADE', onupdate='CASCADE'),
        sa.ForeignKeyConstraint(['event_id'], ['events.id'], ondelete='CASCADE', onupdate='CASCADE'),
        sa.PrimaryKeyConstraint('condition_id')
    )
    op.create_index(op.f('ix_markets_event_id'), 'markets', ['event_id'], unique=False)
    op.create_index(op.f('ix_markets_created_at'), 'markets', ['created_at'], unique=False)

    op.create_table(
        'outcomes',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('condition_id', sa.String(), nullable=False),
        sa.Column('outcome_text', sa.Text(), nullable=False),
        sa.Column('outcome_index', sa.SmallInteger(), nullable=False),
        sa.Column('token_id', sa.String(), nullable=False),
        sa.Column('is_winning_outcome', sa.Boolean(), server_default=sa.text('false'), nullable=True),
        sa.Column('payout_value', sa.Numeric(20, 6), nullable=True),
        sa.Column('current_price', sa.Numeric(8, 4), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(['condition_id'], ['conditions.id'], ondelete='CASCADE', onupdate='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('token_id')
    )
    op.create_index(op.f('ix_outcomes_condition_id'), 'outcomes', ['condition_id'], unique=False)

    op.create_table(
        'tags',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('slug', sa.String(), nullable=False),
        sa.Column('is_main_category', sa.Boolean(), server_default=sa.text('false'), nullable=True),
        sa.Column('is_hidden', sa.Boolean(), server_default=sa.text('false'), nullable=False),
        sa.Column('display_order', sa.SmallInteger(), server_default='0', nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('name'),
        sa.UniqueConstraint('slug')
    )
    op.create_index(op.f('ix_tags_slug'), 'tags', ['slug'], unique=False)

    op.create_table(
        'event_tags',
        sa.Column('event_id', sa.String(), nullable=False),
        sa.Column('tag_id', sa.Integer(), nullable=False),
        sa.ForeignKeyConstraint(['event_id'], ['events.id'], ondelete='CASCADE', onupdate='CASCADE'),
        sa.ForeignKeyConstraint(['tag_id'], ['tags.id'], ondelete='CASCADE', onupdate='CASCADE'),
        sa.PrimaryKeyConstraint('event_id', 'tag_id')
    )

    op.create_table(
        'sync_status',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('service_name', sa.String(), nullable=False),
        sa.Column('subgraph_name', sa.String(), nullable=False),
        sa.Column('status', sa.String(), server_default='idle', nullable=False),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('total_processed', sa.Integer(), server_default='0', nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('service_name', 'subgraph_name', name='uq_sync_status_service_subgraph')
    )


def downgrade() -> None:
    op.drop_table('sync_status')
    op.drop_table('event_tags')
    op.drop_index(op.f('ix_tags_slug'), table_name='tags')
    op.drop_table('tags')
    op.drop_index(op.f('ix_outcomes_condition_id'), table_name='outcomes')
    op.drop_table('outcomes')
    op.drop_index(op.f('ix_markets_created_at'), table_name='markets')
    op.drop_index(op.f('ix_markets_event_id'), table_name='markets')
    op.drop_table('markets')
    op.drop_index(op.f('ix_events_slug'), table_name='events')
    op.drop_table('events')
    op.drop_index(op.f('ix_conditions_id'), table_name='conditions')
    op.drop_table('conditions')
