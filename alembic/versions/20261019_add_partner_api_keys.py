"""Add partner API keys.

Revision ID: add_partner_api_keys
Revises: add_referral_ledger_tables
Create Date: 2026-10-19

Only the sha256 of each key is stored. Revoked keys stay in the table.
"""

from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = 'add_partner_api_keys'
down_revision: Union[str, None] = 'add_referral_ledger_tables'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create partner_api_keys."""

    conn = op.get_bind()
    inspector = sa.inspect(conn)
    if 'partner_api_keys' in inspector.get_table_names():
        print("partner_api_keys already exists, skipping...")
        return

    op.create_table(
        'partner_api_keys',
        sa.Column('id', sa.Uuid, primary_key=True),
        sa.Column('partner_id', sa.Uuid,
                  sa.ForeignKey('referral_partners.id', ondelete='RESTRICT'), nullable=False),
        sa.Column('key_hash', sa.String(64), nullable=False, unique=True),
        sa.Column('key_prefix', sa.String(12), nullable=False,
                  comment='First characters of the raw key, for identification'),
        sa.Column('key_type', sa.String(20), nullable=False, server_default='partner'),
        sa.Column('permissions', sa.JSON, nullable=False),
        sa.Column('rate_limit', sa.Integer, nullable=False, server_default='100',
                  comment='Requests per minute'),
        sa.Column('status', sa.String(20), nullable=False, server_default='ACTIVE',
                  comment='ACTIVE, REVOKED'),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('last_used_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('revoked_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_partner_api_keys_partner_status', 'partner_api_keys', ['partner_id', 'status'])

    print("Created partner_api_keys table")


def downgrade() -> None:
    """Drop partner_api_keys."""
    op.drop_index('ix_partner_api_keys_partner_status', table_name='partner_api_keys')
    op.drop_table('partner_api_keys')
