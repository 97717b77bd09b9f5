"""Create batch_jobs, documents, analyses and queue_jobs with RLS.

Revision ID: 001
Create Date: 2026-10-19

Owner-scoped tables (batch_jobs, documents, analyses) carry RLS policies
keyed on ``app.user_id``. queue_jobs is shared by all worker processes and
has no RLS.
"""

from alembic import op

revision = "001"
down_revision = None
branch_labels = None
depends_on = None

_OWNER = "user_id = current_setting('app.user_id', true)"

_OWNED_DOCUMENT = """
    EXISTS (
        SELECT 1 FROM documents d
        WHERE d.id = analyses.document_id
          AND d.user_id = current_setting('app.user_id', true)
    )
"""


def upgrade() -> None:
    # -- Extensions -----------------------------------------------------------
    op.execute("CREATE EXTENSION IF NOT EXISTS pgcrypto")

    # -- batch_jobs -----------------------------------------------------------
    op.execute(
        """
        CREATE TABLE batch_jobs (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            user_id TEXT NOT NULL,
            name TEXT NOT NULL,

            total_documents INT NOT NULL CHECK (total_documents >= 0),
            processed_docs INT NOT NULL DEFAULT 0 CHECK (processed_docs >= 0),
            failed_docs INT NOT NULL DEFAULT 0 CHECK (failed_docs >= 0),
            status TEXT NOT NULL DEFAULT 'pending'
                CHECK (status IN ('pending', 'processing', 'completed', 'failed')),

            total_estimated_value NUMERIC(18, 2) NOT NULL DEFAULT 0,
            total_opportunities INT NOT NULL DEFAULT 0,
            consolidated_report JSONB,

            started_at TIMESTAMPTZ,
            completed_at TIMESTAMPTZ,
            created_at TIMESTAMPTZ NOT NULL DEFAULT clock_timestamp(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),

            CHECK (processed_docs + failed_docs <= total_documents)
        )
    """
    )
    op.execute("CREATE INDEX ix_batch_jobs_user_created ON batch_jobs (user_id, created_at DESC)")
    op.execute("CREATE INDEX ix_batch_jobs_user_status ON batch_jobs (user_id, status)")

    # -- documents ------------------------------------------------------------
    # created_at uses clock_timestamp() so rows inserted in one transaction
    # keep their upload order.
    op.execute(
        """
        CREATE TABLE documents (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            batch_job_id UUID REFERENCES batch_jobs(id) ON DELETE SET NULL,
            user_id TEXT NOT NULL,

            file_name TEXT NOT NULL,
            file_size BIGINT NOT NULL,
            mime_type TEXT NOT NULL,
            document_type TEXT NOT NULL,

            company_name TEXT,
            cnpj TEXT,
            regime TEXT,

            status TEXT NOT NULL DEFAULT 'pending'
                CHECK (status IN ('pending', 'processing', 'completed', 'failed')),
            processing_error TEXT,

            extracted_period TEXT,
            extracted_year INT,
            extracted_month INT CHECK (extracted_month BETWEEN 1 AND 12),
            extracted_quarter INT CHECK (extracted_quarter BETWEEN 1 AND 4),

            processed_at TIMESTAMPTZ,
            created_at TIMESTAMPTZ NOT NULL DEFAULT clock_timestamp()
        )
    """
    )
    op.execute("CREATE INDEX ix_documents_batch ON documents (batch_job_id, created_at)")
    op.execute("CREATE INDEX ix_documents_user ON documents (user_id)")

    # -- analyses -------------------------------------------------------------
    op.execute(
        """
        CREATE TABLE analyses (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            document_id UUID NOT NULL UNIQUE REFERENCES documents(id) ON DELETE CASCADE,

            opportunities JSONB NOT NULL DEFAULT '[]',
            total_estimated_value NUMERIC(18, 2) NOT NULL DEFAULT 0,
            recommendations JSONB NOT NULL DEFAULT '[]',
            alerts JSONB NOT NULL DEFAULT '[]',
            executive_summary TEXT,
            model_used TEXT,
            processing_time_ms INT,

            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
    """
    )

    # -- queue_jobs -----------------------------------------------------------
    op.execute(
        """
        CREATE TABLE queue_jobs (
            id UUID PRIMARY KEY,
            queue TEXT NOT NULL,
            data JSONB NOT NULL DEFAULT '{}',
            priority INT NOT NULL DEFAULT 0,
            state TEXT NOT NULL DEFAULT 'waiting'
                CHECK (state IN ('waiting', 'delayed', 'active', 'completed', 'failed')),

            attempts_made INT NOT NULL DEFAULT 0,
            max_attempts INT NOT NULL DEFAULT 1 CHECK (max_attempts >= 1),
            backoff_seconds DOUBLE PRECISION,
            timeout_seconds DOUBLE PRECISION,
            remove_on_complete BOOLEAN NOT NULL DEFAULT FALSE,

            available_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            stalled_count INT NOT NULL DEFAULT 0,
            locked_by TEXT,
            lock_expires_at TIMESTAMPTZ,

            last_error TEXT,
            result JSONB,

            created_at TIMESTAMPTZ NOT NULL DEFAULT clock_timestamp(),
            started_at TIMESTAMPTZ,
            finished_at TIMESTAMPTZ
        )
    """
    )

    # Claim path: runnable jobs of one queue in priority/FIFO order
    op.execute(
        """
        CREATE INDEX ix_queue_jobs_claim
        ON queue_jobs (queue, priority, available_at, created_at)
        WHERE state IN ('waiting', 'delayed')
    """
    )
    # Stall sweep
    op.execute(
        """
        CREATE INDEX ix_queue_jobs_active_lock
        ON queue_jobs (queue, lock_expires_at)
        WHERE state = 'active'
    """
    )
    # Retention sweep and stats
    op.execute("CREATE INDEX ix_queue_jobs_state_finished ON queue_jobs (queue, state, finished_at)")

    # -- Row-Level Security: batch_jobs, documents ----------------------------

    for table in ("batch_jobs", "documents"):
        op.execute(f"ALTER TABLE {table} ENABLE ROW LEVEL SECURITY")
        op.execute(f"ALTER TABLE {table} FORCE ROW LEVEL SECURITY")
        op.execute(f"CREATE POLICY {table}_select ON {table} FOR SELECT USING ({_OWNER})")
        op.execute(f"CREATE POLICY {table}_insert ON {table} FOR INSERT WITH CHECK ({_OWNER})")
        op.execute(
            f"CREATE POLICY {table}_update ON {table} FOR UPDATE "
            f"USING ({_OWNER}) WITH CHECK ({_OWNER})"
        )
        op.execute(f"CREATE POLICY {table}_delete ON {table} FOR DELETE USING ({_OWNER})")

    # -- Row-Level Security: analyses (owned through their document) ----------

    op.execute("ALTER TABLE analyses ENABLE ROW LEVEL SECURITY")
    op.execute("ALTER TABLE analyses FORCE ROW LEVEL SECURITY")
    op.execute(f"CREATE POLICY analyses_select ON analyses FOR SELECT USING ({_OWNED_DOCUMENT})")
    op.execute(f"CREATE POLICY analyses_insert ON analyses FOR INSERT WITH CHECK ({_OWNED_DOCUMENT})")
    op.execute(
        f"CREATE POLICY analyses_update ON analyses FOR UPDATE "
        f"USING ({_OWNED_DOCUMENT}) WITH CHECK ({_OWNED_DOCUMENT})"
    )
    op.execute(f"CREATE POLICY analyses_delete ON analyses FOR DELETE USING ({_OWNED_DOCUMENT})")


def downgrade() -> None:
    # -- Drop RLS policies (reverse order) ------------------------------------
    for table in ("analyses", "documents", "batch_jobs"):
        for action in ("delete", "update", "insert", "select"):
            op.execute(f"DROP POLICY IF EXISTS {table}_{action} ON {table}")
        op.execute(f"ALTER TABLE {table} DISABLE ROW LEVEL SECURITY")

    # -- Drop tables ----------------------------------------------------------
    op.execute("DROP TABLE IF EXISTS queue_jobs")
    op.execute("DROP TABLE IF EXISTS analyses")
    op.execute("DROP TABLE IF EXISTS documents")
    op.execute("DROP TABLE IF EXISTS batch_jobs")
