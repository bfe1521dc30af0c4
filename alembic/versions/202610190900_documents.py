"""document store

Revision ID: 202610190900
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202610190900"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        "documents",
        sa.Column("collection", sa.String(length=64), nullable=False),
        sa.Column("id", sa.String(length=64), nullable=False),
        sa.Column("key", sa.String(length=255)),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("body", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("collection", "id"),
        sa.UniqueConstraint("collection", "key", name="uq_document_collection_key"),
        sa.CheckConstraint("version > 0", name="ck_documents_version_positive"),
    )
    op.create_index("ix_documents_collection", "documents", ["collection"])


def downgrade():
    op.drop_index("ix_documents_collection", table_name="documents")
    op.drop_table("documents")
