"""003: create credit_holds table

Revision ID: 003
Revises: 002
Create Date: 2026-10-18
"""
from typing import Sequence, Union
from alembic import op

revision: str = "003"
down_revision: Union[str, None] = "002"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.execute("""
        CREATE TABLE credit_holds (
            id                                      UUID        PRIMARY KEY DEFAULT gen_random_uuid(),
            account_id                              UUID        NOT NULL REFERENCES accounts (id),
            amount_microcredits                     BIGINT      NOT NULL,
            credit_usd_per_credit_micros_at_hold    BIGINT      NOT NULL,
            idempotency_key                         VARCHAR(128) NOT NULL,
            status                                  VARCHAR(16) NOT NULL DEFAULT 'open',
            captured_microcredits                   BIGINT,
            written_off_microcredits                BIGINT      NOT NULL DEFAULT 0,
            increased_at                            TIMESTAMPTZ,
            created_at                              TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            resolved_at                             TIMESTAMPTZ,
            CONSTRAINT uq_holds_account_key         UNIQUE (account_id, idempotency_key),
            CONSTRAINT ck_holds_amount_gt_0         CHECK (amount_microcredits > 0),
            CONSTRAINT ck_holds_factor_gt_0         CHECK (credit_usd_per_credit_micros_at_hold > 0),
            CONSTRAINT ck_holds_status              CHECK (status IN ('open', 'captured', 'released')),
            CONSTRAINT ck_holds_captured_range      CHECK (
                captured_microcredits IS NULL
                OR (captured_microcredits >= 0 AND captured_microcredits <= amount_microcredits)
            ),
            CONSTRAINT ck_holds_written_off_gte_0   CHECK (written_off_microcredits >= 0),
            CONSTRAINT ck_holds_resolved_consistent CHECK (
                (status = 'open') = (resolved_at IS NULL)
            )
        );
    """)
    op.execute("""
        CREATE INDEX idx_holds_account_open
        ON credit_holds (account_id)
        WHERE status = 'open';
    """)
    op.execute("COMMENT ON TABLE credit_holds IS 'Pre-authorized reservations, resolved exactly once';")


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS credit_holds CASCADE;")
