"""006: create generations table

Revision ID: 006
Revises: 005
Create Date: 2026-10-18
"""
from typing import Sequence, Union
from alembic import op

revision: str = "006"
down_revision: Union[str, None] = "005"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.execute("""
        CREATE TABLE generations (
            id                          UUID        PRIMARY KEY DEFAULT gen_random_uuid(),
            video_id                    VARCHAR(128) NOT NULL,
            kind                        VARCHAR(16) NOT NULL,
            user_id                     VARCHAR(64) NOT NULL,
            account_id                  UUID        NOT NULL REFERENCES accounts (id),
            hold_id                     UUID        REFERENCES credit_holds (id),
            model                       VARCHAR(64) NOT NULL,
            prompt                      TEXT,
            seconds                     INT,
            size                        VARCHAR(16),
            orientation                 VARCHAR(16),
            resolution                  VARCHAR(16),
            status                      VARCHAR(16) NOT NULL DEFAULT 'queued',
            progress                    INT         NOT NULL DEFAULT 0,
            credits_charged             BOOLEAN,
            charged_amount_microcredits BIGINT,
            error_code                  VARCHAR(64),
            error_message               TEXT,
            created_at                  TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            updated_at                  TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            completed_at                TIMESTAMPTZ,
            CONSTRAINT uq_generations_video_id  UNIQUE (video_id),
            CONSTRAINT ck_generations_kind      CHECK (kind IN ('video', 'lipsync')),
            CONSTRAINT ck_generations_status    CHECK (
                status IN ('queued', 'in_progress', 'completed', 'failed')
            ),
            CONSTRAINT ck_generations_progress  CHECK (progress BETWEEN 0 AND 100),
            CONSTRAINT ck_generations_charged_gte_0 CHECK (
                charged_amount_microcredits IS NULL OR charged_amount_microcredits >= 0
            )
        );
    """)
    op.execute("CREATE INDEX idx_generations_user_time ON generations (user_id, created_at DESC);")
    op.execute("""
        CREATE INDEX idx_generations_unfinalized
        ON generations (created_at)
        WHERE credits_charged IS NULL;
    """)
    op.execute("""
        CREATE TRIGGER trg_generations_updated_at
            BEFORE UPDATE ON generations
            FOR EACH ROW EXECUTE FUNCTION fn_update_timestamp();
    """)
    op.execute("COMMENT ON TABLE generations IS 'Async provider jobs; credits_charged IS NULL until finalized';")


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS generations CASCADE;")
