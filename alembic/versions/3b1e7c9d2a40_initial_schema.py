"""initial schema

Revision ID: 3b1e7c9d2a40
Revises:
Create Date: 2026-10-19

"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op


# revision identifiers, used by Alembic.
revision: str = "3b1e7c9d2a40"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    ]


def _owner() -> sa.Column:
    return sa.Column(
        "user_id", sa.Uuid(as_uuid=True), sa.ForeignKey("identity_user.id"), nullable=False
    )


def upgrade() -> None:
    op.create_table(
        "identity_user",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True, nullable=False),
        *_timestamps(),
        sa.Column("email", sa.String(length=320), nullable=False),
        sa.Column("full_name", sa.String(length=200), nullable=True),
        sa.Column("password_hash", sa.String(length=200), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
    )
    op.create_index("ix_identity_user_email", "identity_user", ["email"], unique=True)

    op.create_table(
        "categories_category",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True, nullable=False),
        *_timestamps(),
        _owner(),
        sa.Column("name", sa.String(length=50), nullable=False),
        sa.Column("name_normalized", sa.String(length=50), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("is_default", sa.Boolean(), nullable=False),
        sa.UniqueConstraint("user_id", "name_normalized", name="uq_category_user_name"),
    )
    op.create_index("ix_categories_category_user_id", "categories_category", ["user_id"])
    op.create_index(
        "ix_categories_category_name_normalized", "categories_category", ["name_normalized"]
    )

    op.create_table(
        "statements_statement",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True, nullable=False),
        *_timestamps(),
        _owner(),
        sa.Column("file_name", sa.String(length=512), nullable=False),
        sa.Column("checksum", sa.String(length=64), nullable=False),
        sa.Column("content_type", sa.String(length=200), nullable=False),
        sa.Column("byte_size", sa.Integer(), nullable=False),
        sa.Column("storage_key", sa.String(length=1024), nullable=False, unique=True),
        sa.Column("blob_url", sa.String(length=2048), nullable=False),
        sa.Column("status", sa.String(length=10), nullable=False),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("expense_count", sa.Integer(), nullable=False),
        sa.Column("bank_name", sa.String(length=200), nullable=True),
        sa.Column("period_start", sa.Date(), nullable=True),
        sa.Column("period_end", sa.Date(), nullable=True),
        sa.Column("metadata_json", sa.JSON(), nullable=False),
        sa.UniqueConstraint("user_id", "checksum", name="uq_statement_user_checksum"),
    )
    op.create_index("ix_statements_statement_user_id", "statements_statement", ["user_id"])
    op.create_index("ix_statements_statement_status", "statements_statement", ["status"])

    op.create_table(
        "expenses_expense",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True, nullable=False),
        *_timestamps(),
        _owner(),
        sa.Column(
            "statement_id",
            sa.Uuid(as_uuid=True),
            sa.ForeignKey("statements_statement.id"),
            nullable=True,
        ),
        sa.Column("transaction_date", sa.Date(), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("merchant", sa.String(length=200), nullable=True),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("original_amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("original_currency", sa.String(length=3), nullable=False),
        sa.Column("fx_rate", sa.Numeric(18, 8), nullable=True),
        sa.Column(
            "category_id",
            sa.Uuid(as_uuid=True),
            sa.ForeignKey("categories_category.id"),
            nullable=False,
        ),
        sa.Column("category", sa.String(length=50), nullable=False),
        sa.Column("line_hash", sa.String(length=64), nullable=False),
        sa.UniqueConstraint("user_id", "line_hash", name="uq_expense_user_line_hash"),
    )
    for column in ("user_id", "statement_id", "transaction_date", "merchant", "category_id"):
        op.create_index(f"ix_expenses_expense_{column}", "expenses_expense", [column])

    op.create_table(
        "merchants_merchant_mapping",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True, nullable=False),
        *_timestamps(),
        _owner(),
        sa.Column("merchant_name", sa.String(length=200), nullable=False),
        sa.Column("category", sa.String(length=50), nullable=False),
        sa.UniqueConstraint(
            "user_id", "merchant_name", name="uq_merchant_mapping_user_merchant"
        ),
    )
    op.create_index(
        "ix_merchants_merchant_mapping_user_id", "merchants_merchant_mapping", ["user_id"]
    )

    op.create_table(
        "ingestion_settings",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True, nullable=False),
        *_timestamps(),
        _owner(),
        sa.Column("prompt", sa.Text(), nullable=False),
        sa.UniqueConstraint("user_id", name="uq_ingestion_settings_user"),
    )
    op.create_index("ix_ingestion_settings_user_id", "ingestion_settings", ["user_id"])

    op.create_table(
        "fx_rate",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True, nullable=False),
        *_timestamps(),
        sa.Column("from_currency", sa.String(length=3), nullable=False),
        sa.Column("to_currency", sa.String(length=3), nullable=False),
        sa.Column("as_of_date", sa.Date(), nullable=False),
        sa.Column("rate", sa.Numeric(18, 8), nullable=False),
        sa.Column("source", sa.String(length=100), nullable=True),
        sa.UniqueConstraint("from_currency", "to_currency", "as_of_date", name="uq_fx_pair_date"),
    )


def downgrade() -> None:
    op.drop_table("fx_rate")
    op.drop_index("ix_ingestion_settings_user_id", table_name="ingestion_settings")
    op.drop_table("ingestion_settings")
    op.drop_index("ix_merchants_merchant_mapping_user_id", table_name="merchants_merchant_mapping")
    op.drop_table("merchants_merchant_mapping")
    for column in ("user_id", "statement_id", "transaction_date", "merchant", "category_id"):
        op.drop_index(f"ix_expenses_expense_{column}", table_name="expenses_expense")
    op.drop_table("expenses_expense")
    op.drop_index("ix_statements_statement_status", table_name="statements_statement")
    op.drop_index("ix_statements_statement_user_id", table_name="statements_statement")
    op.drop_table("statements_statement")
    op.drop_index("ix_categories_category_name_normalized", table_name="categories_category")
    op.drop_index("ix_categories_category_user_id", table_name="categories_category")
    op.drop_table("categories_category")
    op.drop_index("ix_identity_user_email", table_name="identity_user")
    op.drop_table("identity_user")
