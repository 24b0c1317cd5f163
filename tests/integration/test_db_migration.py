from __future__ import annotations

import os
import sqlite3
import subprocess
import sys
from pathlib import Path


def test_alembic_upgrade_and_downgrade_initial_schema(tmp_path: Path) -> None:
    repo_root = Path(__file__).resolve().parents[2]
    db_path = tmp_path / "migration_test.db"
    env = os.environ.copy()
    env["DATABASE_URL"] = f"sqlite:///{db_path}"

    subprocess.run(
        [sys.executable, "-m", "alembic", "-c", "alembic.ini", "upgrade", "head"],
        cwd=repo_root,
        env=env,
        check=True,
    )

    conn = sqlite3.connect(db_path)
    cur = conn.cursor()
    cur.execute("SELECT name FROM sqlite_master WHERE type='table'")
    tables = {row[0] for row in cur.fetchall()}
    assert {"generated_letters", "letter_sequences", "letter_status_history", "bulk_operation_items"} <= tables

    cur.execute("PRAGMA table_info(generated_letters)")
    letter_cols = {row[1] for row in cur.fetchall()}
    assert {"letter_number", "status", "retry_count", "bound_fields_json", "version"} <= letter_cols

    subprocess.run(
        [sys.executable, "-m", "alembic", "-c", "alembic.ini", "downgrade", "base"],
        cwd=repo_root,
        env=env,
        check=True,
    )

    cur.execute("SELECT name FROM sqlite_master WHERE type='table' AND name='generated_letters'")
    assert cur.fetchone() is None

    conn.close()
