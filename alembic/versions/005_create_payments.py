"""005: create payments table

Revision ID: 005
Revises: 004
Create Date: 2026-10-18
"""
from typing import Sequence, Union
from alembic import op

revision: str = "005"
down_revision: Union[str, None] = "004"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.execute("""
        CREATE TABLE payments (
            id                      UUID        PRIMARY KEY DEFAULT gen_random_uuid(),
            user_id                 VARCHAR(64) NOT NULL,
            type                    VARCHAR(16) NOT NULL,
            status                  VARCHAR(16) NOT NULL DEFAULT 'pending',
            reference               VARCHAR(64),
            tx_signature            VARCHAR(128),
            mint                    VARCHAR(64),
            amount_usd_micros       BIGINT      NOT NULL,
            credited_microcredits   BIGINT,
            created_at              TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            confirmed_at            TIMESTAMPTZ,
            CONSTRAINT uq_payments_reference        UNIQUE (reference),
            CONSTRAINT uq_payments_tx_signature     UNIQUE (tx_signature),
            CONSTRAINT ck_payments_type             CHECK (type IN ('intent', 'manual')),
            CONSTRAINT ck_payments_status           CHECK (status IN ('pending', 'confirmed', 'failed')),
            CONSTRAINT ck_payments_amount_gt_0      CHECK (amount_usd_micros > 0),
            CONSTRAINT ck_payments_intent_reference CHECK (type <> 'intent' OR reference IS NOT NULL),
            CONSTRAINT ck_payments_confirmed        CHECK (
                status <> 'confirmed'
                OR (tx_signature IS NOT NULL AND credited_microcredits IS NOT NULL)
            )
        );
    """)
    op.execute("CREATE INDEX idx_payments_user_time ON payments (user_id, created_at DESC);")
    op.execute("COMMENT ON TABLE payments IS 'USDC payments, each tx_signature credited at most once';")


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS payments CASCADE;")
