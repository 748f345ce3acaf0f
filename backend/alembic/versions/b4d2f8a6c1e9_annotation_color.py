"""Annotation highlight colour

Revision ID: b4d2f8a6c1e9
Revises: a1c9e5d2f7b3
Create Date: 2026-10-18 00:00:00.000000

Adds:
- document_annotations.color ("#RRGGBB", nullable)
"""

from alembic import op
import sqlalchemy as sa

# revision identifiers
revision = 'b4d2f8a6c1e9'
down_revision = 'a1c9e5d2f7b3'
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.add_column('document_annotations', sa.Column('color', sa.String(7), nullable=True))


def downgrade() -> None:
    op.drop_column('document_annotations', 'color')
