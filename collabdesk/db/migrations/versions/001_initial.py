"""initial schema

Revision ID: 001_initial
Revises:
Create Date: 2026-10-19

Creators, deals, brand reply links + audit ledger, signatures, OTPs,
contract analysis, analytics and invoices.
"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '001_initial'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table('creators',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('email', sa.String(255), unique=True, index=True),
        sa.Column('first_name', sa.String(255)),
        sa.Column('last_name', sa.String(255)),
        sa.Column('business_name', sa.String(255)),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table('analysis_reports',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('analysis_json', sa.JSON()),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table('protection_issues',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('report_id', sa.String(36), sa.ForeignKey('analysis_reports.id'), nullable=False, index=True),
        sa.Column('title', sa.String(500), nullable=False),
        sa.Column('severity', sa.String(20), nullable=False),
        sa.Column('category', sa.String(100)),
        sa.Column('description', sa.Text()),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table('deals',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('creator_id', sa.String(36), sa.ForeignKey('creators.id'), nullable=False, index=True),
        sa.Column('brand_name', sa.String(255)),
        sa.Column('brand_email', sa.String(255)),
        sa.Column('brand_phone', sa.String(50)),
        sa.Column('brand_address', sa.Text()),
        sa.Column('brand_team_name', sa.String(255)),
        sa.Column('brand_response_status', sa.String(32), server_default='pending'),
        sa.Column('brand_response_message', sa.Text()),
        sa.Column('brand_response_at', sa.DateTime(timezone=True)),
        sa.Column('brand_response_ip', sa.String(64)),
        sa.Column('status', sa.String(50)),
        sa.Column('deal_execution_status', sa.String(50)),
        sa.Column('contract_status', sa.String(50)),
        sa.Column('creator_requested_clarifications', sa.Boolean(), server_default=sa.false()),
        sa.Column('deal_amount', sa.Float()),
        sa.Column('deal_type', sa.String(20), server_default='paid'),
        sa.Column('deliverables', sa.Text()),
        sa.Column('due_date', sa.String(20)),
        sa.Column('deal_schema', sa.JSON()),
        sa.Column('analysis_report_id', sa.String(36), sa.ForeignKey('analysis_reports.id'), nullable=True),
        sa.Column('contract_file_url', sa.Text()),
        sa.Column('signed_contract_url', sa.Text()),
        sa.Column('contract_version', sa.String(50)),
        sa.Column('invoice_number', sa.String(50)),
        sa.Column('created_via', sa.String(50)),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True)),
    )

    op.create_table('deal_submissions',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('creator_id', sa.String(36), sa.ForeignKey('creators.id'), nullable=False),
        sa.Column('form_data', sa.JSON(), nullable=False),
        sa.Column('deal_id', sa.String(36), sa.ForeignKey('deals.id'), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table('brand_reply_tokens',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('deal_id', sa.String(36), sa.ForeignKey('deals.id'), nullable=False, index=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('revoked_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table('brand_reply_audit_log',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('reply_token_id', sa.String(36), sa.ForeignKey('brand_reply_tokens.id'), nullable=False),
        sa.Column('deal_id', sa.String(36), sa.ForeignKey('deals.id'), nullable=False),
        sa.Column('action_type', sa.String(32), nullable=False),
        sa.Column('action_timestamp', sa.DateTime(timezone=True), nullable=False),
        sa.Column('action_source', sa.String(50), nullable=False),
        sa.Column('user_agent', sa.Text()),
        sa.Column('ip_address_hash', sa.String(16)),
        sa.Column('ip_address_partial', sa.String(32)),
        sa.Column('optional_comment', sa.Text()),
        sa.Column('response_status', sa.String(32)),
        sa.Column('brand_team_name', sa.String(255)),
        sa.Column('decision_version', sa.Integer(), nullable=True),
        sa.UniqueConstraint('deal_id', 'decision_version', name='uq_audit_deal_decision_version'),
    )
    op.create_index('ix_audit_token_action_ts', 'brand_reply_audit_log',
                    ['reply_token_id', 'action_type', 'action_timestamp'])

    op.create_table('contract_signatures',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('deal_id', sa.String(36), sa.ForeignKey('deals.id'), nullable=False),
        sa.Column('signer_role', sa.String(20), nullable=False),
        sa.Column('signer_name', sa.String(255)),
        sa.Column('signer_email', sa.String(255)),
        sa.Column('signer_phone', sa.String(50)),
        sa.Column('ip_address', sa.String(64)),
        sa.Column('user_agent', sa.Text()),
        sa.Column('device_info', sa.JSON()),
        sa.Column('otp_verified', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('otp_verified_at', sa.DateTime(timezone=True)),
        sa.Column('signed', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('signed_at', sa.DateTime(timezone=True)),
        sa.Column('contract_version_id', sa.String(50)),
        sa.Column('contract_snapshot_html', sa.Text()),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True)),
        sa.UniqueConstraint('deal_id', 'signer_role', name='uq_signature_deal_role'),
    )

    op.create_table('signing_otps',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('deal_id', sa.String(36), sa.ForeignKey('deals.id'), nullable=False),
        sa.Column('signer_role', sa.String(20), nullable=False),
        sa.Column('email', sa.String(255), nullable=False),
        sa.Column('otp_hash', sa.String(64), nullable=False),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('verified_at', sa.DateTime(timezone=True)),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index('ix_signing_otps_deal_role_created', 'signing_otps',
                    ['deal_id', 'signer_role', 'created_at'])

    op.create_table('analytics_events',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('event_type', sa.String(100), nullable=False, index=True),
        sa.Column('deal_id', sa.String(36), index=True),
        sa.Column('creator_id', sa.String(36)),
        sa.Column('meta_data', sa.JSON()),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table('invoices',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('deal_id', sa.String(36), sa.ForeignKey('deals.id'), nullable=False, unique=True),
        sa.Column('invoice_number', sa.String(50), nullable=False),
        sa.Column('amount', sa.Float()),
        sa.Column('html', sa.Text()),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )


def downgrade() -> None:
    op.drop_table('invoices')
    op.drop_table('analytics_events')
    op.drop_index('ix_signing_otps_deal_role_created', table_name='signing_otps')
    op.drop_table('signing_otps')
    op.drop_table('contract_signatures')
    op.drop_index('ix_audit_token_action_ts', table_name='brand_reply_audit_log')
    op.drop_table('brand_reply_audit_log')
    op.drop_table('brand_reply_tokens')
    op.drop_table('deal_submissions')
    op.drop_table('deals')
    op.drop_table('protection_issues')
    op.drop_table('analysis_reports')
    op.drop_table('creators')
