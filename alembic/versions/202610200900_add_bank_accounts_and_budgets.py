"""add bank accounts and budgets

Revision ID: 202610200900
Revises: 202610190900
Create Date: 2026-10-20 09:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202610200900"
down_revision = "202610190900"
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        "bank_accounts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, default=1),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column(
            "initial_balance_cents", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_bank_accounts_user", "bank_accounts", ["user_id"])

    op.create_table(
        "budgets",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, default=1),
        sa.Column(
            "category_id",
            sa.Integer(),
            sa.ForeignKey("categories.id"),
            nullable=False,
        ),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column("month", sa.Integer(), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column(
            "alert_threshold", sa.Integer(), nullable=False, server_default="80"
        ),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint("amount_cents >= 0", name="ck_budget_amount_positive"),
        sa.CheckConstraint("month BETWEEN 1 AND 12", name="ck_budget_month_range"),
        sa.CheckConstraint(
            "alert_threshold BETWEEN 1 AND 100", name="ck_budget_alert_threshold"
        ),
        sa.UniqueConstraint(
            "user_id", "category_id", "year", "month", name="uq_budget_category_month"
        ),
    )

    with op.batch_alter_table("transactions") as batch_op:
        batch_op.add_column(sa.Column("bank_account_id", sa.Integer(), nullable=True))
        batch_op.create_foreign_key(
            "fk_transactions_bank_account_id",
            "bank_accounts",
            ["bank_account_id"],
            ["id"],
        )


def downgrade():
    with op.batch_alter_table("transactions") as batch_op:
        batch_op.drop_constraint("fk_transactions_bank_account_id", type_="foreignkey")
        batch_op.drop_column("bank_account_id")

    op.drop_table("budgets")
    op.drop_index("ix_bank_accounts_user", table_name="bank_accounts")
    op.drop_table("bank_accounts")
