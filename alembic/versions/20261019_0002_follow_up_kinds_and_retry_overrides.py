"""Track success and failure follow-ups separately; add per-task retry overrides."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261019_0002"
down_revision = "20261019_0001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.add_column("tasks", sa.Column("spawned_success_id", sa.String(), nullable=True))
    op.add_column("tasks", sa.Column("spawned_failure_id", sa.String(), nullable=True))
    op.add_column("tasks", sa.Column("retry_strategy", sa.String(), nullable=True))
    op.add_column("tasks", sa.Column("retry_base_delay_seconds", sa.Float(), nullable=True))
    # Only a succeeded task can have spawned from on_success; anything else
    # that spawned must have done so from on_failure.
    op.execute(
        sa.text(
            """
            UPDATE tasks
            SET spawned_success_id = spawned_follow_up_id
            WHERE spawned_follow_up_id IS NOT NULL AND status = 'succeeded'
            """,
        ),
    )
    op.execute(
        sa.text(
            """
            UPDATE tasks
            SET spawned_failure_id = spawned_follow_up_id
            WHERE spawned_follow_up_id IS NOT NULL AND status != 'succeeded'
            """,
        ),
    )
    op.drop_column("tasks", "spawned_follow_up_id")


def downgrade() -> None:
    op.add_column("tasks", sa.Column("spawned_follow_up_id", sa.String(), nullable=True))
    op.execute(
        sa.text(
            """
            UPDATE tasks
            SET spawned_follow_up_id = COALESCE(spawned_failure_id, spawned_success_id)
            """,
        ),
    )
    op.drop_column("tasks", "retry_base_delay_seconds")
    op.drop_column("tasks", "retry_strategy")
    op.drop_column("tasks", "spawned_failure_id")
    op.drop_column("tasks", "spawned_success_id")
