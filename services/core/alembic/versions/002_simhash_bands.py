"""SimHash band columns

Revision ID: 002
Revises: 001
Create Date: 2026-10-19

Splits each submission's simhash into eight indexed one-byte bands so
near-duplicate lookup can find neighbours that differ in any bit,
including the high bits a range scan on simhash64 misses. Existing rows
are backfilled from simhash64.
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "002"
down_revision: Union[str, None] = "001"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

BANDS = 8


def upgrade() -> None:
    for i in range(BANDS):
        op.add_column("submissions", sa.Column(f"simhash_band{i}", sa.SmallInteger, nullable=True))
        op.create_index(f"idx_sub_simhash_band{i}", "submissions", [f"simhash_band{i}"])

    submissions = sa.table(
        "submissions",
        sa.column("id", sa.String),
        sa.column("simhash64", sa.BigInteger),
        *(sa.column(f"simhash_band{i}", sa.SmallInteger) for i in range(BANDS)),
    )
    bind = op.get_bind()
    rows = bind.execute(
        sa.select(submissions.c.id, submissions.c.simhash64).where(
            submissions.c.simhash64.is_not(None)
        )
    ).all()
    for row in rows:
        unsigned = row.simhash64 & ((1 << 64) - 1)
        bind.execute(
            submissions.update()
            .where(submissions.c.id == row.id)
            .values({f"simhash_band{i}": (unsigned >> (8 * i)) & 0xFF for i in range(BANDS)})
        )


def downgrade() -> None:
    for i in range(BANDS):
        op.drop_index(f"idx_sub_simhash_band{i}", table_name="submissions")
        op.drop_column("submissions", f"simhash_band{i}")
