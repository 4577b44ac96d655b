from __future__ import annotations

from collections.abc import Generator
from pathlib import Path
from typing import Any

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import event
from sqlmodel import Session, SQLModel, col, create_engine, select

from roster import main as app_main
from roster.domain.models import AuditLog, EventRecord
from roster.infra import audit, db, events


@pytest.fixture()
def roster_client(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> Generator[TestClient, None, None]:
    db_path = tmp_path / "employees_test.db"
    test_engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={"check_same_thread": False},
    )

    @event.listens_for(test_engine, "connect")
    def _enable_foreign_keys(dbapi_connection: object, _connection_record: object) -> None:
        cursor = dbapi_connection.cursor()  # type: ignore[attr-defined]
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    SQLModel.metadata.create_all(test_engine)
    monkeypatch.setattr(db, "engine", test_engine)
    monkeypatch.setattr(audit, "engine", test_engine)
    monkeypatch.setattr(events, "engine", test_engine)
    client = TestClient(app_main.app)
    yield client
    client.close()


def _auth_header(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def _login(client: TestClient, email: str, password: str) -> str:
    response = client.post("/api/identity/dev-login", json={"email": email, "password": password})
    assert response.status_code == 200
    return response.json()["access_token"]


def _setup_org(client: TestClient) -> dict[str, Any]:
    response = client.post(
        "/api/identity/bootstrap-admin",
        json={"email": "admin@example.com", "password": "admin-pass"},
    )
    assert response.status_code == 201
    admin_token = _login(client, "admin@example.com", "admin-pass")

    departments: dict[str, str] = {}
    for name in ("Engineering", "Sales"):
        created = client.post("/api/departments", json={"name": name}, headers=_auth_header(admin_token))
        assert created.status_code == 201
        departments[name] = created.json()["id"]

    tokens = {"admin": admin_token}
    for key, email, roles in (
        ("manager", "manager@example.com", [{"role": "manager", "department_id": departments["Engineering"]}]),
        ("staff", "staff@example.com", []),
    ):
        signed_up = client.post("/api/identity/sign-up", json={"email": email, "password": "pass-1234"})
        assert signed_up.status_code == 201
        granted = client.put(
            f"/api/identity/users/{signed_up.json()['id']}/roles",
            json={"roles": roles},
            headers=_auth_header(admin_token),
        )
        assert granted.status_code == 200
        tokens[key] = _login(client, email, "pass-1234")
    return {"tokens": tokens, "departments": departments}


def _create_employee(client: TestClient, token: str, **fields: Any) -> dict[str, Any]:
    payload = {"email": f"{fields['name'].split()[0].lower()}@example.com", "position": "Engineer", **fields}
    response = client.post("/api/employees", json=payload, headers=_auth_header(token))
    assert response.status_code == 201, response.text
    return response.json()


def test_manager_roster_is_scoped_to_managed_department(roster_client: TestClient) -> None:
    org = _setup_org(roster_client)
    admin, manager = org["tokens"]["admin"], org["tokens"]["manager"]
    engineering, sales = org["departments"]["Engineering"], org["departments"]["Sales"]
    _create_employee(roster_client, admin, name="Ada Lovelace", department_id=engineering)
    _create_employee(roster_client, admin, name="Grace Hopper", department_id=engineering)
    hidden = _create_employee(roster_client, admin, name="Sam Seller", department_id=sales)
    _create_employee(roster_client, admin, name="Una Assigned")

    scoped = roster_client.get("/api/employees", headers=_auth_header(manager))
    assert scoped.status_code == 200
    assert scoped.json()["total_count"] == 2
    assert [item["name"] for item in scoped.json()["rows"]] == ["Ada Lovelace", "Grace Hopper"]
    assert {item["department"] for item in scoped.json()["rows"]} == {"Engineering"}

    narrowed = roster_client.get(
        "/api/employees",
        params={"department_id": sales},
        headers=_auth_header(manager),
    )
    assert narrowed.json()["total_count"] == 0

    full = roster_client.get("/api/employees", headers=_auth_header(admin))
    assert full.json()["total_count"] == 4

    assert roster_client.get(f"/api/employees/{hidden['id']}", headers=_auth_header(manager)).status_code == 404
    assert roster_client.get(f"/api/employees/{hidden['id']}", headers=_auth_header(admin)).status_code == 200


def test_roster_search_sort_and_pagination(roster_client: TestClient) -> None:
    org = _setup_org(roster_client)
    admin = org["tokens"]["admin"]
    for name, salary in (("Ada King", 90.0), ("Bo Lee", 70.0), ("Cy Adams", 80.0), ("Di Park", 60.0)):
        _create_employee(roster_client, admin, name=name, salary=salary)

    searched = roster_client.get("/api/employees", params={"search": "ad"}, headers=_auth_header(admin))
    assert [item["name"] for item in searched.json()["rows"]] == ["Ada King", "Cy Adams"]

    page = roster_client.get(
        "/api/employees",
        params={"sort": "salary", "direction": "desc", "offset": 1, "limit": 2},
        headers=_auth_header(admin),
    )
    assert page.json()["total_count"] == 4
    assert [item["name"] for item in page.json()["rows"]] == ["Cy Adams", "Bo Lee"]

    literal = roster_client.get("/api/employees", params={"search": "%"}, headers=_auth_header(admin))
    assert literal.json()["total_count"] == 0

    bad_sort = roster_client.get("/api/employees", params={"sort": "password"}, headers=_auth_header(admin))
    assert bad_sort.status_code == 409


def test_employee_role_cannot_reach_roster(roster_client: TestClient) -> None:
    org = _setup_org(roster_client)
    response = roster_client.get("/api/employees", headers=_auth_header(org["tokens"]["staff"]))
    assert response.status_code == 403
    assert response.json()["detail"] == "Requires role: manager"


def test_manager_writes_stay_inside_scope(roster_client: TestClient) -> None:
    org = _setup_org(roster_client)
    manager = org["tokens"]["manager"]
    engineering, sales = org["departments"]["Engineering"], org["departments"]["Sales"]

    outside = roster_client.post(
        "/api/employees",
        json={"name": "Out Side", "email": "out@example.com", "position": "Rep", "department_id": sales},
        headers=_auth_header(manager),
    )
    assert outside.status_code == 403

    unassigned = roster_client.post(
        "/api/employees",
        json={"name": "No Dept", "email": "nodept@example.com", "position": "Rep"},
        headers=_auth_header(manager),
    )
    assert unassigned.status_code == 403

    created = _create_employee(roster_client, manager, name="In Side", department_id=engineering)
    moved = roster_client.patch(
        f"/api/employees/{created['id']}",
        json={"department_id": sales},
        headers=_auth_header(manager),
    )
    assert moved.status_code == 403


def test_create_rejects_blank_required_fields(roster_client: TestClient) -> None:
    org = _setup_org(roster_client)
    response = roster_client.post(
        "/api/employees",
        json={"name": "   ", "email": "blank@example.com", "position": "Clerk"},
        headers=_auth_header(org["tokens"]["admin"]),
    )
    assert response.status_code == 422


def test_update_and_delete_employee(roster_client: TestClient) -> None:
    org = _setup_org(roster_client)
    admin = org["tokens"]["admin"]
    created = _create_employee(roster_client, admin, name="Eve Evans", department_id=org["departments"]["Sales"])

    updated = roster_client.patch(
        f"/api/employees/{created['id']}",
        json={"status": "on_leave", "phone": "555-0101"},
        headers=_auth_header(admin),
    )
    assert updated.status_code == 200
    assert updated.json()["status"] == "on_leave"
    assert updated.json()["department"] == "Sales"

    blank = roster_client.patch(
        f"/api/employees/{created['id']}",
        json={"email": " "},
        headers=_auth_header(admin),
    )
    assert blank.status_code == 409

    deleted = roster_client.delete(f"/api/employees/{created['id']}", headers=_auth_header(admin))
    assert deleted.status_code == 204
    missing = roster_client.get(f"/api/employees/{created['id']}", headers=_auth_header(admin))
    assert missing.status_code == 404

    with Session(db.get_engine()) as session:
        records = session.exec(
            select(EventRecord).where(col(EventRecord.event_type).startswith("employee."))
        ).all()
        types = [item.event_type for item in records]
    assert sorted(types) == ["employee.created", "employee.deleted", "employee.status_changed"]


def test_bulk_delete_reports_out_of_scope_ids(roster_client: TestClient) -> None:
    org = _setup_org(roster_client)
    admin, manager = org["tokens"]["admin"], org["tokens"]["manager"]
    engineering, sales = org["departments"]["Engineering"], org["departments"]["Sales"]
    own = _create_employee(roster_client, admin, name="Own One", department_id=engineering)
    other = _create_employee(roster_client, admin, name="Other One", department_id=sales)

    response = roster_client.post(
        "/api/employees/bulk-delete",
        json={"ids": [own["id"], other["id"], "missing"]},
        headers=_auth_header(manager),
    )
    assert response.status_code == 200
    assert response.json() == {"requested_count": 3, "applied_count": 1, "failed_ids": [other["id"], "missing"]}

    remaining = roster_client.get("/api/employees", headers=_auth_header(admin)).json()
    assert [item["id"] for item in remaining["rows"]] == [other["id"]]

    with Session(db.get_engine()) as session:
        log = session.exec(select(AuditLog).where(AuditLog.action == "employee.bulk_delete")).one()
    assert log.detail["failed_ids"] == [other["id"], "missing"]

    empty = roster_client.post("/api/employees/bulk-delete", json={"ids": []}, headers=_auth_header(manager))
    assert empty.status_code == 422


def test_bulk_status_update(roster_client: TestClient) -> None:
    org = _setup_org(roster_client)
    admin = org["tokens"]["admin"]
    ids = [_create_employee(roster_client, admin, name=f"Worker {index}")["id"] for index in range(3)]

    response = roster_client.post(
        "/api/employees/bulk-status",
        json={"ids": ids[:2], "status": "on_leave"},
        headers=_auth_header(admin),
    )
    assert response.status_code == 200
    assert response.json() == {"requested_count": 2, "applied_count": 2, "failed_ids": []}

    rows = roster_client.get("/api/employees", headers=_auth_header(admin)).json()["rows"]
    assert {item["id"]: item["status"] for item in rows} == {
        ids[0]: "on_leave",
        ids[1]: "on_leave",
        ids[2]: "active",
    }
