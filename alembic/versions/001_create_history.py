"""create history table

Revision ID: 001
Create Date: 2026-10-19 00:00:00.000000

"""
from alembic import op
import sqlalchemy as sa

# revision identifiers
revision = '001'
down_revision = None
branch_labels = None
depends_on = None

def upgrade() -> None:
    op.create_table(
        'history',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('timestamp', sa.DateTime(timezone=True), nullable=False),
        sa.Column('song_name', sa.String(), nullable=False),
        sa.Column('artist', sa.String(), nullable=False),
        sa.Column('album_name', sa.String()),
        sa.Column('played_ms', sa.Integer()),
        sa.Column('platform', sa.String()),
        sa.UniqueConstraint('user_id', 'song_name', 'artist', 'timestamp', name='uq_history_listen'),
    )
    op.create_index('idx_history_user_timestamp', 'history', ['user_id', sa.text('timestamp DESC')])
    op.create_index('idx_history_user_artist', 'history', ['user_id', 'artist'])
    op.create_index('idx_history_user_song', 'history', ['user_id', 'song_name'])

def downgrade() -> None:
    op.drop_index('idx_history_user_song', table_name='history')
    op.drop_index('idx_history_user_artist', table_name='history')
    op.drop_index('idx_history_user_timestamp', table_name='history')
    op.drop_table('history')
