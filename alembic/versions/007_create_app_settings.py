"""007: create app_settings table and seed the exchange factor

Revision ID: 007
Revises: 006
Create Date: 2026-10-18
"""
from typing import Sequence, Union
from alembic import op

revision: str = "007"
down_revision: Union[str, None] = "006"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.execute("""
        CREATE TABLE app_settings (
            key         VARCHAR(64)     PRIMARY KEY,
            value_text  VARCHAR(500)    NOT NULL,
            updated_at  TIMESTAMPTZ     NOT NULL DEFAULT NOW()
        );
    """)
    op.execute("""
        CREATE TRIGGER trg_app_settings_updated_at
            BEFORE UPDATE ON app_settings
            FOR EACH ROW EXECUTE FUNCTION fn_update_timestamp();
    """)
    # 1 credit = $0.70
    op.execute("""
        INSERT INTO app_settings (key, value_text)
        VALUES ('credit_usd_per_credit_micros', '700000');
    """)


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS app_settings CASCADE;")
