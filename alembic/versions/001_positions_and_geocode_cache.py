"""Initial migration: positions and geocode_cache tables.

Revision ID: 001
Revises: None
Create Date: 2026-10-19
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects.postgresql import JSONB

revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    # Create positions table
    op.create_table(
        "positions",
        sa.Column("id", sa.BigInteger().with_variant(sa.Integer(), "sqlite"), primary_key=True),
        sa.Column("device_id", sa.BigInteger, nullable=True),
        sa.Column("fix_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("latitude", sa.Double, nullable=False),
        sa.Column("longitude", sa.Double, nullable=False),
        sa.Column("full_address", sa.Text, nullable=True),
        sa.Column("address_status", sa.String(16), nullable=True),
        sa.Column("address_provider", sa.String(50), nullable=True),
        sa.Column("address_updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("address_error", sa.String(200), nullable=True),
    )
    op.create_index("ix_positions_device_id", "positions", ["device_id"])
    op.create_index("ix_positions_address_status_fix_time", "positions", ["address_status", "fix_time"])

    # Create geocode_cache table
    op.create_table(
        "geocode_cache",
        sa.Column("key", sa.String(64), primary_key=True),
        sa.Column("latitude", sa.Double, nullable=False),
        sa.Column("longitude", sa.Double, nullable=False),
        sa.Column("display_name", sa.Text, nullable=True),
        sa.Column("formatted_address", sa.Text, nullable=True),
        sa.Column("street", sa.String(255), nullable=True),
        sa.Column("house_number", sa.String(50), nullable=True),
        sa.Column("neighbourhood", sa.String(255), nullable=True),
        sa.Column("city", sa.String(255), nullable=True),
        sa.Column("state", sa.String(255), nullable=True),
        sa.Column("postal_code", sa.String(32), nullable=True),
        sa.Column("country", sa.String(100), nullable=True),
        sa.Column("provider", sa.String(50), nullable=True),
        sa.Column("raw_response", sa.JSON().with_variant(JSONB(), "postgresql"), nullable=True),
        sa.Column("hits_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )


def downgrade() -> None:
    op.drop_table("geocode_cache")
    op.drop_index("ix_positions_address_status_fix_time", table_name="positions")
    op.drop_index("ix_positions_device_id", table_name="positions")
    op.drop_table("positions")
