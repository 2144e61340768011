"""Add price policy to pricing rules

Revision ID: 20261017120000
Revises: 20261017000000
Create Date: 2026-10-17 12:00:00.000000

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision = '20261017120000'
down_revision = '20261017000000'
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.add_column('pricing_rules', sa.Column('policy', postgresql.JSONB(), nullable=True,
                                             comment='Guardrails that reject a proposed price'))


def downgrade() -> None:
    op.drop_column('pricing_rules', 'policy')
