"""add rating index for leaderboard ordering

Revision ID: 9e4d3f6a8b21
Revises: 5b7c1e9d2a40
Create Date: 2026-10-19 12:30:00.000000
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '9e4d3f6a8b21'
down_revision = '5b7c1e9d2a40'
branch_labels = None
depends_on = None


def upgrade():
    bind = op.get_bind()
    insp = sa.inspect(bind)
    indexes = {ix['name'] for ix in insp.get_indexes('rating')}
    if 'ix_rating_rating' not in indexes:
        op.create_index('ix_rating_rating', 'rating', ['rating'], unique=False)


def downgrade():
    op.drop_index('ix_rating_rating', table_name='rating')
