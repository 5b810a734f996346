#!/usr/bin/env python
from __future__ import annotations

import json
import os
from datetime import datetime, timezone
from pathlib import Path

from sqlalchemy import create_engine, text


EXPECTED_HEAD = "0001_initial"
REQUIRED_TABLES = ("users", "attendance_sessions", "audit_logs")


def load_env_if_exists() -> None:
    env_file = Path(".env")
    if not env_file.exists():
        return
    for raw_line in env_file.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        os.environ.setdefault(key.strip(), value.strip())


def run() -> dict:
    load_env_if_exists()
    database_url = os.environ.get("DATABASE_URL")
    if not database_url:
        raise RuntimeError("DATABASE_URL not found (.env or env vars).")

    engine = create_engine(database_url)
    report: dict = {
        "generated_at_utc": datetime.now(timezone.utc).isoformat(),
        "checks": [],
    }

    def add(name: str, status: str, details: dict) -> None:
        report["checks"].append(
            {
                "name": name,
                "status": status,
                "details": details,
            }
        )

    with engine.connect() as conn:
        tables = set(
            conn.execute(
                text(
                    """
                    select table_name
                    from information_schema.tables
                    where table_schema='public'
                    """
                )
            ).scalars()
        )

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

        missing = [name for name in REQUIRED_TABLES if name not in tables]
        add("missing_tables", "fail" if missing else "ok", {"missing": missing})

        if "attendance_sessions" in tables:
            duplicate_absences = conn.execute(
                text(
                    """
                    select user_id, local_date, count(*)
                    from attendance_sessions
                    where is_absence = true
                    group by user_id, local_date
                    having count(*) > 1
                    """
                )
            ).fetchall()
            add(
                "duplicate_absence_placeholders",
                "fail" if duplicate_absences else "ok",
                {"rows": [[row[0], str(row[1]), row[2]] for row in duplicate_absences]},
            )

            inverted_sessions = conn.execute(
                text(
                    """
                    select id
                    from attendance_sessions
                    where signed_in_at is not null
                      and signed_out_at is not null
                      and signed_out_at < signed_in_at
                    limit 20
                    """
                )
            ).fetchall()
            add(
                "sign_out_before_sign_in",
                "fail" if inverted_sessions else "ok",
                {"sample_ids": [row[0] for row in inverted_sessions]},
            )

            stale_open_sessions = conn.execute(
                text(
                    """
                    select id
                    from attendance_sessions
                    where is_absence = false
                      and signed_in_at is not null
                      and signed_out_at is null
                      and signed_in_at < now() - interval '2 days'
                    limit 20
                    """
                )
            ).fetchall()
            add(
                "stale_open_sessions",
                "warn" if stale_open_sessions else "ok",
                {"sample_ids": [row[0] for row in stale_open_sessions]},
            )

        if "users" in tables:
            users_without_timezone = conn.execute(
                text("select count(*) from users where timezone is null or timezone = ''")
            ).scalar()
            add(
                "users_without_timezone",
                "warn" if users_without_timezone else "ok",
                {"count": int(users_without_timezone or 0)},
            )

    return report


if __name__ == "__main__":
    print(json.dumps(run(), ensure_ascii=False, indent=2))
