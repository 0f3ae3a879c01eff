"""create_sync_tables

Revision ID: core_001
Revises:
Create Date: 2026-01-05 00:00:00.000000

"""

from __future__ import annotations

from alembic import op

# revision identifiers, used by Alembic.
revision = "core_001"
down_revision = None
branch_labels = ("core",)
depends_on = None


def upgrade() -> None:
    op.execute("""
        CREATE TABLE IF NOT EXISTS google_connections (
            workspace_id UUID PRIMARY KEY,
            refresh_token_encrypted TEXT,
            calendar_id TEXT,
            is_valid BOOLEAN NOT NULL DEFAULT true,
            last_error TEXT,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS sync_outbox (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            workspace_id UUID NOT NULL,
            operation TEXT NOT NULL
                CHECK (operation IN ('UPSERT_EVENT', 'CANCEL_EVENT', 'REBUILD_ALL')),
            payload JSONB NOT NULL,
            status TEXT NOT NULL DEFAULT 'PENDING'
                CHECK (status IN ('PENDING', 'PROCESSING', 'COMPLETED', 'FAILED', 'DEAD_LETTER')),
            attempts INTEGER NOT NULL DEFAULT 0,
            max_attempts INTEGER NOT NULL DEFAULT 5 CHECK (max_attempts >= 1),
            next_attempt_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            last_error TEXT,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            processed_at TIMESTAMPTZ,
            CONSTRAINT sync_outbox_attempts_range CHECK (attempts >= 0 AND attempts <= max_attempts)
        )
    """)

    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_sync_outbox_ready
        ON sync_outbox (next_attempt_at, created_at)
        WHERE status IN ('PENDING', 'FAILED')
    """)

    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_sync_outbox_processing
        ON sync_outbox (updated_at)
        WHERE status = 'PROCESSING'
    """)

    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_sync_outbox_terminal
        ON sync_outbox (updated_at)
        WHERE status IN ('COMPLETED', 'DEAD_LETTER')
    """)

    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_sync_outbox_workspace
        ON sync_outbox (workspace_id, status)
    """)

    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_sync_outbox_open_source
        ON sync_outbox (workspace_id, (payload->>'sourceType'), (payload->>'sourceId'), created_at)
        WHERE status IN ('PENDING', 'PROCESSING', 'FAILED')
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS calendar_event_bindings (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            workspace_id UUID NOT NULL,
            source_type TEXT NOT NULL
                CHECK (source_type IN ('task', 'milestone', 'gate_run', 'project_review')),
            source_id UUID NOT NULL,
            external_event_id TEXT NOT NULL,
            calendar_id TEXT NOT NULL,
            event_type TEXT NOT NULL,
            event_title TEXT NOT NULL,
            event_start TIMESTAMPTZ NOT NULL,
            event_end TIMESTAMPTZ NOT NULL,
            last_synced_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            sync_version INTEGER NOT NULL DEFAULT 1,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            CONSTRAINT uq_calendar_event_bindings_source
                UNIQUE (workspace_id, source_type, source_id)
        )
    """)

    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_calendar_event_bindings_external
        ON calendar_event_bindings (workspace_id, external_event_id)
    """)


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS calendar_event_bindings")
    op.execute("DROP TABLE IF EXISTS sync_outbox")
    op.execute("DROP TABLE IF EXISTS google_connections")
