"""add unlock ledger reason

Revision ID: 2026_10_19_0001
Revises: 2026_10_19_0000
Create Date: 2026-10-19 12:00:00.000000

Content unlocks debit credits through the ledger with reason 'unlock'.
"""

from collections.abc import Sequence

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "2026_10_19_0001"
down_revision: str | None = "2026_10_19_0000"
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    op.drop_constraint("ck_ledger_reason", "ledger_entries", type_="check")
    op.create_check_constraint(
        "ck_ledger_reason",
        "ledger_entries",
        "reason IN ('purchase', 'vote-cast', 'vote-package', 'unlock', 'admin-grant', 'admin-correction')",
    )
    op.create_index(
        "idx_ledger_entries_user_reason", "ledger_entries", ["user_id", "reason", "created_at"]
    )


def downgrade() -> None:
    op.drop_index("idx_ledger_entries_user_reason", table_name="ledger_entries")
    op.drop_constraint("ck_ledger_reason", "ledger_entries", type_="check")
    op.create_check_constraint(
        "ck_ledger_reason",
        "ledger_entries",
        "reason IN ('purchase', 'vote-cast', 'vote-package', 'admin-grant', 'admin-correction')",
    )
