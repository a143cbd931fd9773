"""initial provider adapter schema

Revision ID: 0001_provider_adapter
Revises:
Create Date: 2026-10-16
"""

from alembic import op
import sqlalchemy as sa


revision = "0001_provider_adapter"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "provider_mappings",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("entity_id", sa.String(), nullable=False),
        sa.Column("entity_type", sa.String(length=32), nullable=False),
        sa.Column("provider_name", sa.String(length=64), nullable=False),
        sa.Column("provider_entity_id", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("entity_id", "entity_type", name="uq_provider_mapping_entity"),
    )
    op.create_index("ix_provider_mappings_entity_id", "provider_mappings", ["entity_id"])


def downgrade() -> None:
    op.drop_index("ix_provider_mappings_entity_id", table_name="provider_mappings")
    op.drop_table("provider_mappings")
