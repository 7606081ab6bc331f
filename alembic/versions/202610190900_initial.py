"""initial schema

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
        "categories",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, default=1),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column(
            "type", sa.Enum("income", "expense", name="transactiontype"), nullable=False
        ),
        sa.Column("color", sa.String(length=7)),
        sa.Column(
            "system_key",
            sa.Enum(
                "limit_adjustment",
                "limit_credit",
                "voucher_reset",
                name="systemcategory",
            ),
        ),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint(
            "user_id", "type", "name", name="uq_category_user_type_name"
        ),
        sa.UniqueConstraint(
            "user_id", "system_key", name="uq_category_user_system_key"
        ),
    )

    op.create_table(
        "cards",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, default=1),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("limit_cents", sa.Integer(), nullable=False),
        sa.Column(
            "card_type",
            sa.Enum("credit", "food_voucher", name="cardtype"),
            nullable=False,
            server_default="credit",
        ),
        sa.Column("closing_day", sa.Integer(), nullable=False),
        sa.Column("due_day", sa.Integer(), nullable=False),
        sa.Column("color", sa.String(length=7)),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint("limit_cents >= 0", name="ck_cards_limit_non_negative"),
        sa.CheckConstraint(
            "closing_day BETWEEN 1 AND 31", name="ck_cards_closing_day_range"
        ),
        sa.CheckConstraint("due_day BETWEEN 1 AND 31", name="ck_cards_due_day_range"),
    )
    op.create_index("ix_cards_user_type", "cards", ["user_id", "card_type"])

    op.create_table(
        "transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, default=1),
        sa.Column("card_id", sa.Integer(), sa.ForeignKey("cards.id")),
        sa.Column("occurred_at", sa.DateTime(), nullable=False),
        sa.Column(
            "type", sa.Enum("income", "expense", name="transactiontype"), nullable=False
        ),
        sa.Column(
            "kind",
            sa.Enum("single", "recurring", name="transactionkind"),
            nullable=False,
            server_default="single",
        ),
        sa.Column(
            "origin",
            sa.Enum("manual", "adjustment", "voucher_reset", name="entryorigin"),
            nullable=False,
            server_default="manual",
        ),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column(
            "category_id", sa.Integer(), sa.ForeignKey("categories.id"), nullable=False
        ),
        sa.Column("note", sa.Text()),
        sa.Column("deleted_at", sa.DateTime()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint("amount_cents >= 0", name="ck_transactions_amount_positive"),
    )
    op.create_index(
        "ix_transactions_user_occurred", "transactions", ["user_id", "occurred_at"]
    )
    op.create_index(
        "ix_transactions_card_type_occurred",
        "transactions",
        ["card_id", "type", "occurred_at"],
    )

    op.create_table(
        "reset_markers",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("month_key", sa.String(length=7), nullable=False),
        sa.Column("started_at", sa.DateTime(), nullable=False),
        sa.Column("finished_at", sa.DateTime()),
        sa.Column("users_total", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("users_failed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("month_key", name="uq_reset_marker_month"),
    )


def downgrade():
    op.drop_table("reset_markers")
    op.drop_index("ix_transactions_card_type_occurred", table_name="transactions")
    op.drop_index("ix_transactions_user_occurred", table_name="transactions")
    op.drop_table("transactions")
    op.drop_index("ix_cards_user_type", table_name="cards")
    op.drop_table("cards")
    op.drop_table("categories")
