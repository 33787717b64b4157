"""Initial timesheet schema

Revision ID: 0001_initial
Revises:
Create Date: 2025-03-01 00:00:00
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "0001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

reminder_kind = postgresql.ENUM(
    "first",
    "second",
    "final",
    name="reminder_kind",
    create_type=False,
)


def upgrade() -> None:
    bind = op.get_bind()
    reminder_kind.create(bind, checkfirst=True)

    op.create_table(
        "employees",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("firstname", sa.String(length=255), nullable=False),
        sa.Column("lastname", sa.String(length=255), nullable=False),
        sa.Column("email", sa.String(length=320), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
    )
    op.create_index("ix_employees_email", "employees", ["email"], unique=True)

    op.create_table(
        "timesheet_uploads",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("employee_id", sa.Integer(), nullable=False),
        sa.Column("month", sa.Integer(), nullable=False),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column("filename", sa.String(length=255), nullable=False),
        sa.Column("filepath", sa.String(length=500), nullable=False),
        sa.Column("original_filename", sa.String(length=255), nullable=True),
        sa.Column("content_type", sa.String(length=100), nullable=True),
        sa.Column("size_bytes", sa.Integer(), nullable=True),
        sa.Column(
            "uploaded_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.ForeignKeyConstraint(["employee_id"], ["employees.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("employee_id", "month", "year", name="uq_timesheet_uploads_employee_period"),
        sa.CheckConstraint("month BETWEEN 1 AND 12", name="ck_timesheet_uploads_month"),
    )
    op.create_index("ix_timesheet_uploads_employee_id", "timesheet_uploads", ["employee_id"])

    op.create_table(
        "reminder_logs",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("employee_id", sa.Integer(), nullable=False),
        sa.Column("month", sa.Integer(), nullable=False),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column("kind", reminder_kind, nullable=False),
        sa.Column("manual", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column(
            "sent_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.ForeignKeyConstraint(["employee_id"], ["employees.id"], ondelete="CASCADE"),
    )
    op.create_index("ix_reminder_logs_employee_id", "reminder_logs", ["employee_id"])
    op.create_index("ix_reminder_logs_period_kind", "reminder_logs", ["month", "year", "kind"])

    op.create_table(
        "admin_notification_emails",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("email", sa.String(length=320), nullable=False),
        sa.Column("label", sa.String(length=100), nullable=False, server_default=sa.text("''")),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.UniqueConstraint("email", name="uq_admin_notification_emails_email"),
    )

    op.create_table(
        "admin_password",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("password_hash", sa.String(length=255), nullable=False),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.CheckConstraint("id = 1", name="ck_admin_password_single_row"),
    )


def downgrade() -> None:
    op.drop_table("admin_password")
    op.drop_table("admin_notification_emails")
    op.drop_index("ix_reminder_logs_period_kind", table_name="reminder_logs")
    op.drop_index("ix_reminder_logs_employee_id", table_name="reminder_logs")
    op.drop_table("reminder_logs")
    op.drop_index("ix_timesheet_uploads_employee_id", table_name="timesheet_uploads")
    op.drop_table("timesheet_uploads")
    op.drop_index("ix_employees_email", table_name="employees")
    op.drop_table("employees")

    bind = op.get_bind()
    reminder_kind.drop(bind, checkfirst=True)
