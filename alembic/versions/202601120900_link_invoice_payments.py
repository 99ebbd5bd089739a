"""link invoice payments to the invoice they settle

Revision ID: 202601120900
Revises: 202601050900
Create Date: 2026-01-12 09:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202601120900"
down_revision = "202601050900"
branch_labels = None
depends_on = None


def upgrade() -> None:
    with op.batch_alter_table("transactions") as batch_op:
        batch_op.add_column(sa.Column("paid_invoice_id", sa.Integer()))
        batch_op.create_foreign_key(
            "fk_transactions_paid_invoice",
            "credit_card_invoices",
            ["paid_invoice_id"],
            ["id"],
        )
        batch_op.create_index("ix_transactions_paid_invoice", ["paid_invoice_id"])


def downgrade() -> None:
    with op.batch_alter_table("transactions") as batch_op:
        batch_op.drop_index("ix_transactions_paid_invoice")
        batch_op.drop_constraint("fk_transactions_paid_invoice", type_="foreignkey")
        batch_op.drop_column("paid_invoice_id")
