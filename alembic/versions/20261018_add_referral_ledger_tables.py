"""Add referral attribution and payout ledger tables.

Revision ID: add_referral_ledger_tables
Revises:
Create Date: 2026-10-18

Tables:
- referral_partners, referral_cafes, referral_links, referral_conversions
- payout_ledger (one PAYOUT row per partner and period, enforced by a
  partial unique index; ADJUSTMENT/CLAWBACK rows are unrestricted)
- audit_logs
"""

from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = 'add_referral_ledger_tables'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps():
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    ]


def upgrade() -> None:
    """Create referral ledger tables."""

    # Check if tables already exist
    conn = op.get_bind()
    inspector = sa.inspect(conn)
    if 'payout_ledger' in inspector.get_table_names():
        print("Referral ledger tables already exist, skipping...")
        return

    # ==================== PARTNERS ====================
    op.create_table(
        'referral_partners',
        sa.Column('id', sa.Uuid, primary_key=True),
        sa.Column('org_id', sa.String(100), nullable=False),
        sa.Column('org_name', sa.String(200), nullable=False),
        sa.Column('business_number', sa.String(12), nullable=False, unique=True,
                  comment='Business registration number (NNN-NN-NNNNN)'),
        sa.Column('contact_email', sa.String(255), nullable=False),
        sa.Column('contact_name', sa.String(100), nullable=True),
        sa.Column('status', sa.String(20), nullable=False, server_default='ACTIVE',
                  comment='ACTIVE, INACTIVE, SUSPENDED'),
        *_timestamps(),
    )
    op.create_index('ix_referral_partners_org_id', 'referral_partners', ['org_id'])
    op.create_index('ix_referral_partners_status', 'referral_partners', ['status'])

    # ==================== CAFES ====================
    op.create_table(
        'referral_cafes',
        sa.Column('id', sa.Uuid, primary_key=True),
        sa.Column('partner_id', sa.Uuid,
                  sa.ForeignKey('referral_partners.id', ondelete='RESTRICT'), nullable=False),
        sa.Column('cafe_name', sa.String(200), nullable=False),
        sa.Column('commission_rate', sa.Numeric(5, 4), nullable=False,
                  comment='Commission rate as a fraction in [0, 1]'),
        sa.Column('status', sa.String(20), nullable=False, server_default='ACTIVE',
                  comment='ACTIVE, INACTIVE'),
        *_timestamps(),
        sa.CheckConstraint('commission_rate >= 0 AND commission_rate <= 1',
                           name='ck_referral_cafes_commission_rate'),
    )
    op.create_index('ix_referral_cafes_partner_id', 'referral_cafes', ['partner_id'])
    op.create_index('ix_referral_cafes_partner_status', 'referral_cafes', ['partner_id', 'status'])

    # ==================== LINKS ====================
    op.create_table(
        'referral_links',
        sa.Column('id', sa.Uuid, primary_key=True),
        sa.Column('cafe_id', sa.Uuid,
                  sa.ForeignKey('referral_cafes.id', ondelete='RESTRICT'), nullable=False),
        sa.Column('short_code', sa.String(16), nullable=False),
        sa.Column('full_url', sa.String(500), nullable=False),
        sa.Column('utm_source', sa.String(100), nullable=True),
        sa.Column('utm_medium', sa.String(100), nullable=True),
        sa.Column('utm_campaign', sa.String(100), nullable=True),
        sa.Column('clicks', sa.Integer, nullable=False, server_default='0'),
        sa.Column('status', sa.String(20), nullable=False, server_default='ACTIVE',
                  comment='ACTIVE, EXPIRED, REVOKED'),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        *_timestamps(),
    )
    op.create_index('ix_referral_links_short_code', 'referral_links', ['short_code'], unique=True)
    op.create_index('ix_referral_links_cafe_status', 'referral_links', ['cafe_id', 'status'])
    op.create_index('ix_referral_links_expires_at', 'referral_links', ['expires_at'])

    # ==================== CONVERSIONS ====================
    op.create_table(
        'referral_conversions',
        sa.Column('id', sa.Uuid, primary_key=True),
        sa.Column('user_id', sa.String(100), nullable=False, unique=True,
                  comment='First-touch: one conversion per user'),
        sa.Column('link_id', sa.Uuid,
                  sa.ForeignKey('referral_links.id', ondelete='RESTRICT'), nullable=False),
        sa.Column('ip_hash', sa.String(64), nullable=False),
        sa.Column('user_agent_hash', sa.String(64), nullable=False),
        sa.Column('attributed_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('subscription_id', sa.String(100), nullable=True),
        sa.Column('plan_type', sa.String(50), nullable=True),
        sa.Column('amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('commission_rate', sa.Numeric(5, 4), nullable=False),
        sa.Column('commission_amount', sa.Numeric(18, 6), nullable=False),
    )
    op.create_index('ix_referral_conversions_attributed_at', 'referral_conversions', ['attributed_at'])
    op.create_index('ix_referral_conversions_link_attributed', 'referral_conversions',
                    ['link_id', 'attributed_at'])
    op.create_index('ix_referral_conversions_client', 'referral_conversions',
                    ['ip_hash', 'user_agent_hash'])

    # ==================== PAYOUT LEDGER ====================
    op.create_table(
        'payout_ledger',
        sa.Column('id', sa.Uuid, primary_key=True),
        sa.Column('partner_id', sa.Uuid,
                  sa.ForeignKey('referral_partners.id', ondelete='RESTRICT'), nullable=False),
        sa.Column('period_start', sa.DateTime(timezone=True), nullable=False),
        sa.Column('period_end', sa.DateTime(timezone=True), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='DRAFT',
                  comment='DRAFT, APPROVED, PROCESSING, PAID, ADJUSTED'),
        sa.Column('ledger_type', sa.String(20), nullable=False, server_default='PAYOUT',
                  comment='PAYOUT, ADJUSTMENT, CLAWBACK'),
        sa.Column('snapshot_fingerprint', sa.String(64), nullable=False, server_default=''),
        sa.Column('conversion_ids', sa.JSON, nullable=False),
        sa.Column('total_conversions', sa.Integer, nullable=False, server_default='0'),
        sa.Column('total_revenue', sa.Numeric(14, 2), nullable=False, server_default='0'),
        sa.Column('total_commission', sa.Numeric(18, 6), nullable=False, server_default='0'),
        sa.Column('approved_by', sa.String(100), nullable=True),
        sa.Column('approved_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('payment_method', sa.String(50), nullable=True),
        sa.Column('payment_reference', sa.String(100), nullable=True),
        sa.Column('paid_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('reference_ledger_id', sa.Uuid,
                  sa.ForeignKey('payout_ledger.id', ondelete='RESTRICT'), nullable=True),
        sa.Column('adjustment_reason', sa.Text, nullable=True),
        *_timestamps(),
    )
    op.create_index(
        'uq_payout_ledger_partner_period',
        'payout_ledger',
        ['partner_id', 'period_start', 'period_end'],
        unique=True,
        postgresql_where=sa.text("ledger_type = 'PAYOUT'"),
        sqlite_where=sa.text("ledger_type = 'PAYOUT'"),
    )
    op.create_index('ix_payout_ledger_partner_status', 'payout_ledger', ['partner_id', 'status'])
    op.create_index('ix_payout_ledger_reference', 'payout_ledger', ['reference_ledger_id'])

    # ==================== AUDIT LOGS ====================
    op.create_table(
        'audit_logs',
        sa.Column('id', sa.Uuid, primary_key=True),
        sa.Column('entity_type', sa.String(50), nullable=False),
        sa.Column('entity_id', sa.String(64), nullable=False),
        sa.Column('action', sa.String(50), nullable=False),
        sa.Column('actor_id', sa.String(100), nullable=False),
        sa.Column('actor_email', sa.String(255), nullable=False),
        sa.Column('before_state', sa.JSON, nullable=True),
        sa.Column('after_state', sa.JSON, nullable=True),
        sa.Column('metadata', sa.JSON, nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_audit_logs_entity_type', 'audit_logs', ['entity_type'])
    op.create_index('ix_audit_logs_action', 'audit_logs', ['action'])
    op.create_index('ix_audit_logs_created_at', 'audit_logs', ['created_at'])
    op.create_index('ix_audit_logs_entity', 'audit_logs', ['entity_type', 'entity_id'])

    print("Created referral ledger tables")


def downgrade() -> None:
    """Drop referral ledger tables."""
    op.drop_table('audit_logs')
    op.drop_index('uq_payout_ledger_partner_period', table_name='payout_ledger')
    op.drop_table('payout_ledger')
    op.drop_table('referral_conversions')
    op.drop_table('referral_links')
    op.drop_table('referral_cafes')
    op.drop_table('referral_partners')
