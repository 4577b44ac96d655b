from __future__ import annotations

from pathlib import Path

import pytest
from sqlalchemy import create_engine, inspect

from roster.infra.migrate import run_upgrade_head

ROOT = Path(__file__).resolve().parents[1]


def test_upgrade_head_creates_roster_tables(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    db_url = f"sqlite:///{tmp_path / 'migrated.db'}"
    monkeypatch.setenv("DATABASE_URL", db_url)
    monkeypatch.chdir(ROOT)

    run_upgrade_head()

    inspector = inspect(create_engine(db_url))
    tables = set(inspector.get_table_names())
    assert {"events", "audit_logs", "user_accounts", "departments", "user_roles", "employees"} <= tables
    employee_columns = {item["name"] for item in inspector.get_columns("employees")}
    assert {"department_id", "department", "hire_date", "salary", "status", "avatar_url"} <= employee_columns
    unique_names = {item["name"] for item in inspector.get_unique_constraints("user_roles")}
    assert "uq_user_roles_user_role_department" in unique_names
