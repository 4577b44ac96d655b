from __future__ import annotations

import asyncio
import threading
from collections.abc import Generator
from pathlib import Path
from typing import Any

import httpx
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import event
from sqlmodel import Session, SQLModel, create_engine, select

from roster import main as app_main
from roster.domain.errors import Outcome, StoreError
from roster.domain.models import EmployeeCreate, EmployeeStatus, EmployeeUpdate, EventRecord
from roster.domain.permissions import Resolved
from roster.infra import audit, db, events
from roster.services.console import RosterConsole
from roster.services.employee_service import EmployeeService
from roster.services.local_store import LocalIdentityProvider, LocalRosterStore
from roster.services.remote_store import HttpIdentityProvider, HttpRosterStore, RosterApiClient
from roster.services.store import RosterFilter, RosterSort


@pytest.fixture()
def store_client(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> Generator[TestClient, None, None]:
    db_path = tmp_path / "stores_test.db"
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


def _seed(client: TestClient) -> dict[str, str]:
    assert (
        client.post(
            "/api/identity/bootstrap-admin",
            json={"email": "admin@example.com", "password": "admin-pass"},
        ).status_code
        == 201
    )
    token = client.post(
        "/api/identity/dev-login",
        json={"email": "admin@example.com", "password": "admin-pass"},
    ).json()["access_token"]
    headers = _auth_header(token)
    engineering = client.post("/api/departments", json={"name": "Engineering"}, headers=headers).json()["id"]
    sales = client.post("/api/departments", json={"name": "Sales"}, headers=headers).json()["id"]
    lead = client.post("/api/identity/sign-up", json={"email": "lead@example.com", "password": "lead-pass"}).json()
    granted = client.put(
        f"/api/identity/users/{lead['id']}/roles",
        json={"roles": [{"role": "manager", "department_id": engineering}]},
        headers=headers,
    )
    assert granted.status_code == 200
    for index in range(12):
        created = client.post(
            "/api/employees",
            json={
                "name": f"Engineer {index:02d}",
                "email": f"eng{index:02d}@example.com",
                "position": "Engineer",
                "department_id": engineering,
            },
            headers=headers,
        )
        assert created.status_code == 201
    outsider = client.post(
        "/api/employees",
        json={"name": "Seller", "email": "seller@example.com", "position": "Rep", "department_id": sales},
        headers=headers,
    ).json()
    return {"engineering": engineering, "sales": sales, "outsider": outsider["id"]}


def _api_client() -> RosterApiClient:
    transport = httpx.ASGITransport(app=app_main.app)
    return RosterApiClient(httpx.AsyncClient(transport=transport, base_url="http://test"))


def test_http_console_drives_scoped_roster(store_client: TestClient) -> None:
    seeded = _seed(store_client)

    async def _run() -> dict[str, Any]:
        api = _api_client()
        provider = HttpIdentityProvider(api)
        console = RosterConsole(provider, HttpRosterStore(api), page_size=5)
        results: dict[str, Any] = {}
        try:
            await provider.sign_in("lead@example.com", "lead-pass")
            await console.settled()
            results["scope"] = console.engine.department_ids
            results["total"] = console.total_count
            await console.set_page(3)
            results["last_page"] = [item.name for item in console.rows]
            console.select_all(True)
            results["deleted"] = await console.bulk_delete()
            results["after_delete"] = (console.query.page, console.total_count, len(console.rows))
            first_id = console.rows[0].id
            results["partial"] = await console.bulk_set_status([first_id, seeded["outsider"]], "on_leave")
            results["first_status"] = next(item.status for item in console.rows if item.id == first_id)
            await provider.refresh()
            await console.settled()
            results["after_refresh"] = console.auth_state
            provider.sign_out()
            await console.settled()
            results["after_sign_out"] = (console.rows, console.total_count)
        finally:
            console.close()
            await api.aclose()
        return results

    results = asyncio.run(_run())
    assert results["scope"] == frozenset({seeded["engineering"]})
    assert results["total"] == 12
    assert results["last_page"] == ["Engineer 10", "Engineer 11"]
    assert results["deleted"] == Outcome.success("2 employees deleted successfully")
    assert results["after_delete"] == (2, 10, 5)
    assert not results["partial"].ok
    assert results["partial"].message == "Failed to update employees: failed to update 1 of 2 employees"
    assert results["first_status"] == EmployeeStatus.ON_LEAVE
    assert isinstance(results["after_refresh"], Resolved)
    assert results["after_sign_out"] == ((), 0)


def test_http_store_maps_errors(store_client: TestClient) -> None:
    _seed(store_client)

    async def _run() -> list[str]:
        api = _api_client()
        store = HttpRosterStore(api)
        messages: list[str] = []
        try:
            try:
                await store.delete_by_id("missing")
            except StoreError as exc:
                messages.append(str(exc))
            provider = HttpIdentityProvider(api)
            await provider.sign_in("admin@example.com", "admin-pass")
            try:
                await store.delete_by_id("missing")
            except StoreError as exc:
                messages.append(str(exc))
            try:
                await store.update_by_ids(["x"], EmployeeUpdate(phone="555"))
            except StoreError as exc:
                messages.append(str(exc))
        finally:
            await api.aclose()
        return messages

    assert asyncio.run(_run()) == [
        "DELETE /api/employees/missing returned 401: Not authenticated",
        "DELETE /api/employees/missing returned 404: employee not found",
        "bulk update supports status changes only",
    ]


def test_local_store_backs_console_without_http(store_client: TestClient) -> None:
    seeded = _seed(store_client)

    async def _run() -> tuple[Outcome, Outcome, int, list[str]]:
        provider = LocalIdentityProvider()
        console = RosterConsole(provider, LocalRosterStore(), page_size=20)
        await provider.sign_in("admin@example.com", "admin-pass")
        await console.settled()
        created = await console.create(
            {"name": "Local Hire", "email": "local@example.com", "position": "Analyst"}
        )
        total = console.total_count
        partial = await console.bulk_delete([seeded["outsider"], "missing"])
        names = [item.name for item in console.rows]
        console.close()
        return created, partial, total, names

    created, partial, total, names = asyncio.run(_run())
    assert created == Outcome.success("Employee added successfully")
    assert total == 14
    assert not partial.ok
    assert partial.message == "Failed to delete employees: failed to delete 1 of 2 employees"
    assert "Seller" not in names
    assert "Local Hire" in names


def test_local_store_wraps_service_errors(store_client: TestClient) -> None:
    _seed(store_client)
    store = LocalRosterStore()

    async def _run() -> list[str]:
        messages: list[str] = []
        for call in (
            store.insert(EmployeeCreate(name="Nope", email="nope@example.com", position="Clerk")),
            store.update_by_id("missing", EmployeeUpdate(position="Lead")),
            store.query(RosterFilter(), RosterSort(column="password"), 0, 10),
        ):
            try:
                await call
            except StoreError as exc:
                messages.append(str(exc))
        return messages

    assert asyncio.run(_run()) == [
        "department is required for scoped managers",
        "employee not found",
        "unsupported sort column: password",
    ]


def test_local_store_limits_manager_writes_to_managed_departments(store_client: TestClient) -> None:
    seeded = _seed(store_client)
    outsider = seeded["outsider"]

    async def _run() -> dict[str, Any]:
        provider = LocalIdentityProvider()
        console = RosterConsole(provider, LocalRosterStore(), page_size=20)
        results: dict[str, Any] = {}
        try:
            lead = await provider.sign_in("lead@example.com", "lead-pass")
            await console.settled()
            results["lead_id"] = lead.id
            results["visible"] = {item.id for item in console.rows}
            results["update"] = await console.update(outsider, {"position": "Hacked"})
            results["delete"] = await console.delete(outsider)
            results["bulk"] = await console.bulk_set_status([outsider], "on_leave")
            results["own"] = await console.update(console.rows[0].id, {"position": "Staff Engineer"})
        finally:
            console.close()
        return results

    results = asyncio.run(_run())
    assert outsider not in results["visible"]
    assert results["update"] == Outcome.failure("Operation failed: employee not found")
    assert results["delete"] == Outcome.failure("Failed to delete employee: employee not found")
    assert results["bulk"] == Outcome.failure("Failed to update employees: failed to update 1 of 1 employees")
    assert results["own"] == Outcome.success("Employee updated successfully")

    token = store_client.post(
        "/api/identity/dev-login",
        json={"email": "admin@example.com", "password": "admin-pass"},
    ).json()["access_token"]
    untouched = store_client.get(f"/api/employees/{outsider}", headers=_auth_header(token))
    assert untouched.status_code == 200
    assert untouched.json()["position"] == "Rep"
    assert untouched.json()["status"] == "active"

    with Session(db.engine) as session:
        actors = {item.actor_id for item in session.exec(select(EventRecord)).all()}
    assert results["lead_id"] in actors


class _HeldEmployeeService(EmployeeService):
    def __init__(self, held_text: str) -> None:
        super().__init__()
        self.held_text = held_text
        self.entered = threading.Event()
        self.release = threading.Event()

    def query_page(self, **kwargs: Any) -> Any:
        if kwargs.get("search_text") == self.held_text:
            self.entered.set()
            self.release.wait(timeout=5)
        return super().query_page(**kwargs)


def test_local_fetch_is_superseded_by_newer_query(store_client: TestClient) -> None:
    _seed(store_client)
    service = _HeldEmployeeService("Engineer 0")

    async def _run() -> tuple[bool, Outcome, Outcome, list[str], str]:
        provider = LocalIdentityProvider()
        console = RosterConsole(provider, LocalRosterStore(employee_service=service), page_size=20)
        try:
            await provider.sign_in("admin@example.com", "admin-pass")
            await console.settled()
            first = asyncio.create_task(console.set_filter("Engineer 0"))
            entered = await asyncio.to_thread(service.entered.wait, 5)
            second = await console.set_filter("Seller")
            service.release.set()
            superseded = await first
            return entered, superseded, second, [item.name for item in console.rows], console.query.search_text
        finally:
            service.release.set()
            console.close()

    entered, superseded, second, names, search_text = asyncio.run(_run())
    assert entered
    assert superseded == Outcome.stale()
    assert second == Outcome.success()
    assert names == ["Seller"]
    assert search_text == "Seller"
