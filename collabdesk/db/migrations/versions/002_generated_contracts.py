"""Add generated contract columns to deals

Revision ID: 002_generated_contracts
Revises: 001_initial
Create Date: 2026-10-20

Accepted deals without open clarifications get a contract generated in the
background:
- contract_html: rendered contract snapshot
- contract_generated_at: when it was generated
"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '002_generated_contracts'
down_revision = '001_initial'
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.add_column('deals', sa.Column('contract_html', sa.Text(), nullable=True))
    op.add_column('deals', sa.Column('contract_generated_at', sa.DateTime(timezone=True), nullable=True))


def downgrade() -> None:
    op.drop_column('deals', 'contract_generated_at')
    op.drop_column('deals', 'contract_html')
