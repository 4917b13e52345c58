"""Add gateway attempt context and credit memo version

Revision ID: 0002_attempt_context_memo_version
Revises: 0001_initial_payrecon
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "0002_attempt_context_memo_version"
down_revision = "0001_initial_payrecon"
branch_labels = None
depends_on = None


def upgrade():
    with op.batch_alter_table("gateway_attempts", schema=None) as batch_op:
        batch_op.add_column(sa.Column("context", sa.JSON(), nullable=True))

    with op.batch_alter_table("credit_memos", schema=None) as batch_op:
        batch_op.add_column(sa.Column("version_id", sa.Integer(), nullable=False, server_default="1"))


def downgrade():
    with op.batch_alter_table("credit_memos", schema=None) as batch_op:
        batch_op.drop_column("version_id")

    with op.batch_alter_table("gateway_attempts", schema=None) as batch_op:
        batch_op.drop_column("context")
