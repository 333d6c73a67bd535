"""create user and rating tables

Revision ID: 5b7c1e9d2a40
Revises:
Create Date: 2026-10-19 10:00:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '5b7c1e9d2a40'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    bind = op.get_bind()
    insp = sa.inspect(bind)
    existing_tables = set(insp.get_table_names())

    if 'user' not in existing_tables:
        op.create_table(
            'user',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('username', sa.String(length=64), nullable=False),
            sa.Column('password_hash', sa.String(length=256), nullable=False),
            sa.PrimaryKeyConstraint('id'),
        )
        op.create_index('ix_user_username', 'user', ['username'], unique=True)

    if 'rating' not in existing_tables:
        op.create_table(
            'rating',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('user_id', sa.Integer(), nullable=False),
            sa.Column('rating', sa.Float(), nullable=False, server_default='1500'),
            sa.Column('deviation', sa.Float(), nullable=False, server_default='350'),
            sa.Column('volatility', sa.Float(), nullable=False, server_default='0.06'),
            sa.Column('games_played', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(['user_id'], ['user.id']),
            sa.PrimaryKeyConstraint('id'),
        )
        op.create_index('ix_rating_user_id', 'rating', ['user_id'], unique=True)


def downgrade():
    op.drop_index('ix_rating_user_id', table_name='rating')
    op.drop_table('rating')
    op.drop_index('ix_user_username', table_name='user')
    op.drop_table('user')
