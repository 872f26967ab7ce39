"""Create the services and service_availability tables."""

from __future__ import annotations

import sqlalchemy as sa

revision = "0001_catalog_tables"
down_revision = None


def _define_tables(metadata: sa.MetaData) -> None:
    sa.Table(
        "services",
        metadata,
        sa.Column("id", sa.String(120), primary_key=True),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("description", sa.Text, nullable=False, server_default=""),
        sa.Column("category", sa.String(120), nullable=False),
        sa.Column("icon", sa.String(64), nullable=False, server_default=sa.text("'Package'")),
        sa.Column("image_url", sa.String(1024), nullable=True),
        sa.Column("features", sa.JSON, nullable=True),
        sa.Column("benefits", sa.JSON, nullable=True),
        sa.Column("additional_info", sa.JSON, nullable=True),
        sa.Column("related_services", sa.JSON, nullable=True),
        sa.Column("pricing", sa.JSON, nullable=True),
        sa.Column("delivery_time", sa.String(120), nullable=True),
        sa.Column("coverage", sa.String(255), nullable=True),
        sa.Column("tags", sa.JSON, nullable=True),
        sa.Column("service_stats", sa.JSON, nullable=True),
        sa.Column("certifications", sa.JSON, nullable=True),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("popularity", sa.Float, nullable=False, server_default=sa.text("0")),
        sa.Column("version", sa.Integer, nullable=False, server_default=sa.text("1")),
        sa.Column("content_hash", sa.String(32), nullable=True),
        sa.Column("synced_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Index("ix_services_category_active", "category", "is_active"),
        sa.Index("ix_services_updated_at", "updated_at"),
    )

    sa.Table(
        "service_availability",
        metadata,
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("service_id", sa.String(120), nullable=False),
        sa.Column("location", sa.String(120), nullable=False),
        sa.Column("available", sa.Boolean, nullable=True, server_default=sa.true()),
        sa.Column("capacity", sa.Integer, nullable=True),
        sa.Column("next_available", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Index("ix_service_availability_service_location", "service_id", "location"),
    )


def upgrade(conn):
    metadata = sa.MetaData()
    _define_tables(metadata)
    metadata.create_all(conn)


def downgrade(conn):  # pragma: no cover - provided for completeness
    metadata = sa.MetaData()
    _define_tables(metadata)
    metadata.drop_all(conn)
