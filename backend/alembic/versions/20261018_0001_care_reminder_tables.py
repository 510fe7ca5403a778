"""Create care reminder, plant, push user, delivery log, and lease tables."""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "20261018_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "care_reminders",
        sa.Column("id", sa.String(length=64), nullable=False),
        sa.Column("user_plant_id", sa.String(length=64), nullable=False),
        sa.Column("reminder_type", sa.String(length=32), nullable=False),
        sa.Column("frequency", sa.String(length=16), nullable=False),
        sa.Column("reminder_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_notification_sent", sa.DateTime(timezone=True), nullable=True),
        sa.Column("message", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_care_reminders_user_plant_id", "care_reminders", ["user_plant_id"], unique=False)

    op.create_table(
        "user_plants",
        sa.Column("id", sa.String(length=64), nullable=False),
        sa.Column("user_id", sa.String(length=128), nullable=False),
        sa.Column("nickname", sa.String(length=256), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_user_plants_user_id", "user_plants", ["user_id"], unique=False)

    op.create_table(
        "notification_users",
        sa.Column("user_id", sa.String(length=128), nullable=False),
        sa.Column("push_token", sa.String(length=256), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("user_id"),
    )

    op.create_table(
        "notification_logs",
        sa.Column("id", sa.BigInteger().with_variant(sa.Integer(), "sqlite"), nullable=False, autoincrement=True),
        sa.Column("type", sa.String(length=32), nullable=False),
        sa.Column("title", sa.String(length=256), nullable=False),
        sa.Column("body", sa.Text(), nullable=False),
        sa.Column("data_json", sa.Text(), nullable=False, server_default="{}"),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("recipients", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("user_ids_json", sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_notification_logs_sent_at", "notification_logs", ["sent_at"], unique=False)

    op.create_table(
        "reminder_leases",
        sa.Column("reminder_id", sa.String(length=64), nullable=False),
        sa.Column("owner", sa.String(length=64), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("reminder_id"),
    )
    op.create_index("ix_reminder_leases_expires_at", "reminder_leases", ["expires_at"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_reminder_leases_expires_at", table_name="reminder_leases")
    op.drop_table("reminder_leases")
    op.drop_index("ix_notification_logs_sent_at", table_name="notification_logs")
    op.drop_table("notification_logs")
    op.drop_table("notification_users")
    op.drop_index("ix_user_plants_user_id", table_name="user_plants")
    op.drop_table("user_plants")
    op.drop_index("ix_care_reminders_user_plant_id", table_name="care_reminders")
    op.drop_table("care_reminders")
