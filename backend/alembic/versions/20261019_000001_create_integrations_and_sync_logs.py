"""Create integrations and sync_logs tables.

Revision ID: 20261019_000001
Revises:
Create Date: 2026-10-19 09:00:00.000000

WHAT:
    Creates the two tables the delivery workers use:
    - integrations: per-organization ad platform account + encrypted credentials
    - sync_logs: one audit row per delivery job (RUNNING -> COMPLETED/FAILED)

WHY:
    Workers resolve credentials per delivery and record health (status,
    last_error) where operators can see it without reading worker logs.

REFERENCES:
    - backend/conversion_relay/models.py
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision = '20261019_000001'
down_revision = None
branch_labels = None
depends_on = None


integration_type = sa.Enum('META_CAPI', 'GOOGLE_ADS', name='integrationtypeenum')
integration_status = sa.Enum('PENDING', 'ACTIVE', 'PAUSED', 'ERROR', name='integrationstatusenum')
sync_status = sa.Enum('RUNNING', 'COMPLETED', 'FAILED', name='syncstatusenum')


def upgrade() -> None:
    op.create_table(
        'integrations',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('organization_id', sa.String(), nullable=False),
        sa.Column('type', integration_type, nullable=False),
        sa.Column('name', sa.String(), nullable=True),
        sa.Column('status', integration_status, nullable=False, server_default='PENDING'),
        sa.Column('credentials', sa.LargeBinary(), nullable=False),
        sa.Column('settings', sa.JSON(), nullable=True),
        sa.Column('last_sync_at', sa.DateTime(), nullable=True),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_integrations_organization_id', 'integrations', ['organization_id'])
    # Workers look up the ACTIVE integration by org + type on every delivery
    op.create_index('ix_integrations_org_type_status', 'integrations', ['organization_id', 'type', 'status'])
    op.create_index(
        'uq_integrations_active_per_org_type',
        'integrations',
        ['organization_id', 'type'],
        unique=True,
        postgresql_where=sa.text("status = 'ACTIVE'"),
    )

    op.create_table(
        'sync_logs',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            'integration_id',
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey('integrations.id'),
            nullable=False,
        ),
        sa.Column('job_id', sa.String(), nullable=True),
        sa.Column('status', sync_status, nullable=False),
        sa.Column('started_at', sa.DateTime(), nullable=False),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.Column('records_processed', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('records_failed', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('error', sa.Text(), nullable=True),
        sa.Column('metadata', sa.JSON(), nullable=True),
    )
    op.create_index('ix_sync_logs_integration_id', 'sync_logs', ['integration_id'])
    op.create_index('ix_sync_logs_job_id', 'sync_logs', ['job_id'])


def downgrade() -> None:
    op.drop_index('ix_sync_logs_job_id', table_name='sync_logs')
    op.drop_index('ix_sync_logs_integration_id', table_name='sync_logs')
    op.drop_table('sync_logs')
    op.drop_index('uq_integrations_active_per_org_type', table_name='integrations')
    op.drop_index('ix_integrations_org_type_status', table_name='integrations')
    op.drop_index('ix_integrations_organization_id', table_name='integrations')
    op.drop_table('integrations')

    sync_status.drop(op.get_bind(), checkfirst=True)
    integration_status.drop(op.get_bind(), checkfirst=True)
    integration_type.drop(op.get_bind(), checkfirst=True)
