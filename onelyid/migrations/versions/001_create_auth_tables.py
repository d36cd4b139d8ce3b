"""Create auth tables

Revision ID: 001
Revises: None
Create Date: 2025-03-02 00:00:00.000000+00:00

What:  Creates cookie_secret, auth_state and auth_session.
How:   Plain SQLite types; timestamps default to CURRENT_TIMESTAMP.

Rollback: downgrade() drops all three tables (signed-in users are logged out
and a new cookie secret is generated on the next start).
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "cookie_secret",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("secret", sa.String(128), nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("CURRENT_TIMESTAMP"),
            nullable=False,
        ),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "auth_state",
        sa.Column("key", sa.String(255), nullable=False),
        sa.Column("value", sa.Text(), nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("CURRENT_TIMESTAMP"),
            nullable=False,
        ),
        sa.PrimaryKeyConstraint("key"),
    )

    op.create_table(
        "auth_session",
        sa.Column("key", sa.String(2048), nullable=False),
        sa.Column("value", sa.Text(), nullable=False),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("CURRENT_TIMESTAMP"),
            nullable=False,
        ),
        sa.PrimaryKeyConstraint("key"),
    )

    # Stale authorization requests are swept by creation time
    op.create_index("idx_auth_state_created_at", "auth_state", ["created_at"])


def downgrade() -> None:
    op.drop_index("idx_auth_state_created_at", table_name="auth_state")
    op.drop_table("auth_session")
    op.drop_table("auth_state")
    op.drop_table("cookie_secret")
