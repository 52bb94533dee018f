"""004: create credit_ledger_entries table

Revision ID: 004
Revises: 003
Create Date: 2026-10-18
"""
from typing import Sequence, Union
from alembic import op

revision: str = "004"
down_revision: Union[str, None] = "003"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.execute("""
        CREATE TABLE credit_ledger_entries (
            id              BIGSERIAL       PRIMARY KEY,
            account_id      UUID            NOT NULL REFERENCES accounts (id),
            entry_type      VARCHAR(30)     NOT NULL,
            amount          BIGINT          NOT NULL,
            balance_after   BIGINT          NOT NULL,
            reference_type  VARCHAR(30),
            reference_id    VARCHAR(128),
            description     VARCHAR(500),
            created_at      TIMESTAMPTZ     NOT NULL DEFAULT NOW(),
            CONSTRAINT ck_credit_ledger_entry_type CHECK (
                entry_type IN (
                    'PAYMENT_CREDIT',
                    'HOLD_RESERVE', 'HOLD_INCREASE',
                    'HOLD_CAPTURE', 'HOLD_RELEASE'
                )
            ),
            CONSTRAINT ck_credit_ledger_balance_gte_0 CHECK (balance_after >= 0)
        );
    """)
    op.execute("CREATE INDEX idx_credit_ledger_account ON credit_ledger_entries (account_id, id DESC);")
    op.execute("""
        CREATE INDEX idx_credit_ledger_reference
        ON credit_ledger_entries (reference_type, reference_id)
        WHERE reference_id IS NOT NULL;
    """)
    op.execute("""
        CREATE TRIGGER trg_credit_ledger_append_only
            BEFORE UPDATE OR DELETE ON credit_ledger_entries
            FOR EACH ROW EXECUTE FUNCTION fn_reject_journal_mutation();
    """)
    op.execute("COMMENT ON TABLE credit_ledger_entries IS 'Balance journal, append-only, amounts in microcredits';")


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS credit_ledger_entries CASCADE;")
