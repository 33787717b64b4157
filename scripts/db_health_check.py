#!/usr/bin/env python
from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.engine import Engine, make_url

from zeitnachweis.settings import get_database_url, get_settings

EXPECTED_HEAD = "0001_initial"
REQUIRED_TABLES = (
    "employees",
    "timesheet_uploads",
    "reminder_logs",
    "admin_notification_emails",
    "admin_password",
)
SAMPLE_LIMIT = 20


def run(engine: Engine | None = None, upload_dir: str | Path | None = None) -> dict[str, Any]:
    settings = get_settings()
    database_url = make_url(get_database_url(settings)) if engine is None else engine.url
    engine = engine or create_engine(database_url)
    upload_root = Path(upload_dir if upload_dir is not None else settings.upload_dir)
    report: dict[str, Any] = {
        "generated_at_utc": datetime.now(timezone.utc).isoformat(),
        "database_url": database_url.render_as_string(hide_password=True),
        "upload_dir": str(upload_root),
        "checks": [],
    }

    def add(name: str, status: str, details: dict[str, Any]) -> None:
        report["checks"].append(
            {
                "name": name,
                "status": status,
                "details": details,
            }
        )

    tables = set(inspect(engine).get_table_names())
    with engine.connect() as conn:
        current_versions: list[str] = []
        if "alembic_version" in tables:
            current_versions = [
                row[0]
                for row in conn.execute(text("select version_num from alembic_version")).fetchall()
            ]
        add("alembic_version", "ok" if current_versions else "fail", {"current": current_versions})
        add(
            "migration_up_to_date",
            "ok" if EXPECTED_HEAD in current_versions else "warn",
            {"expected_head": EXPECTED_HEAD, "current": current_versions},
        )

        missing_tables = [table for table in REQUIRED_TABLES if table not in tables]
        add("missing_tables", "fail" if missing_tables else "ok", {"tables": missing_tables})

        referenced_files: set[str] = set()
        if "timesheet_uploads" in tables:
            duplicate_periods = conn.execute(
                text(
                    """
                    select employee_id, month, year, count(*)
                    from timesheet_uploads
                    group by employee_id, month, year
                    having count(*) > 1
                    """
                )
            ).fetchall()
            add(
                "duplicate_upload_period",
                "fail" if duplicate_periods else "ok",
                {"rows": [list(row) for row in duplicate_periods]},
            )

            orphan_uploads = conn.execute(
                text(
                    """
                    select u.id
                    from timesheet_uploads u
                    left join employees e on e.id = u.employee_id
                    where e.id is null
                    """
                )
            ).fetchall()
            add(
                "upload_orphan_employee",
                "fail" if orphan_uploads else "ok",
                {"sample_ids": [row[0] for row in orphan_uploads[:SAMPLE_LIMIT]]},
            )

            upload_rows = conn.execute(text("select id, filename, filepath from timesheet_uploads")).fetchall()
            missing_files: list[int] = []
            for upload_id, filename, filepath in upload_rows:
                referenced_files.add(str(filename))
                if not Path(filepath).is_file():
                    missing_files.append(upload_id)
            add(
                "upload_file_missing",
                "warn" if missing_files else "ok",
                {"count": len(missing_files), "sample_ids": missing_files[:SAMPLE_LIMIT]},
            )

        if "reminder_logs" in tables:
            orphan_reminders = conn.execute(
                text(
                    """
                    select r.id
                    from reminder_logs r
                    left join employees e on e.id = r.employee_id
                    where e.id is null
                    """
                )
            ).fetchall()
            add(
                "reminder_orphan_employee",
                "fail" if orphan_reminders else "ok",
                {"sample_ids": [row[0] for row in orphan_reminders[:SAMPLE_LIMIT]]},
            )

    if upload_root.is_dir():
        orphan_files = sorted(
            path.name for path in upload_root.iterdir() if path.is_file() and path.name not in referenced_files
        )
        add(
            "orphan_upload_files",
            "warn" if orphan_files else "ok",
            {"count": len(orphan_files), "sample": orphan_files[:SAMPLE_LIMIT]},
        )
    else:
        add("orphan_upload_files", "warn", {"reason": "UPLOAD_DIR_MISSING"})

    return report


if __name__ == "__main__":
    print(json.dumps(run(), ensure_ascii=False, indent=2))
