from __future__ import annotations

import os
from typing import Any

import httpx

from roster.domain.errors import PartialFailureError, StoreError
from roster.domain.models import (
    BulkResultRead,
    EmployeeCreate,
    EmployeeRead,
    EmployeeUpdate,
    Identity,
    RoleAssignment,
    RosterPageRead,
    TokenResponse,
)
from roster.domain.state_machine import AuthEvent
from roster.services.store import AuthEventEmitter, RosterFilter, RosterPage, RosterSort

ROSTER_API_URL = os.getenv("ROSTER_API_URL", "http://localhost:8000")
ROSTER_HTTP_TIMEOUT = float(os.getenv("ROSTER_HTTP_TIMEOUT", "10"))


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text or response.reason_phrase
    if isinstance(body, dict) and "detail" in body:
        return str(body["detail"])
    return str(body)


class RosterApiClient:
    """Thin authenticated wrapper over ``httpx.AsyncClient`` for the roster API."""

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        *,
        base_url: str | None = None,
        timeout: float | None = None,
    ) -> None:
        self._client = client or httpx.AsyncClient(
            base_url=base_url or ROSTER_API_URL,
            timeout=timeout or ROSTER_HTTP_TIMEOUT,
        )
        self._token: str | None = None

    @property
    def token(self) -> str | None:
        return self._token

    def set_token(self, token: str | None) -> None:
        self._token = token

    async def aclose(self) -> None:
        await self._client.aclose()

    async def request(
        self,
        method: str,
        path: str,
        *,
        expected: int | tuple[int, ...] = 200,
        **kwargs: Any,
    ) -> httpx.Response:
        headers = dict(kwargs.pop("headers", {}) or {})
        if self._token is not None:
            headers["Authorization"] = f"Bearer {self._token}"
        try:
            response = await self._client.request(method, path, headers=headers, **kwargs)
        except httpx.HTTPError as exc:
            raise StoreError(f"{method} {path} failed: {exc}") from exc
        expected_codes = (expected,) if isinstance(expected, int) else expected
        if response.status_code not in expected_codes:
            raise StoreError(f"{method} {path} returned {response.status_code}: {_error_detail(response)}")
        return response


class HttpRosterStore:
    def __init__(self, api: RosterApiClient) -> None:
        self._api = api

    def bind_session(self, scope: frozenset[str] | None, actor_id: str | None) -> None:
        # the service derives scope and actor from the bearer token
        return None

    async def query(
        self,
        criteria: RosterFilter,
        order: RosterSort,
        offset: int,
        limit: int,
    ) -> RosterPage:
        params: list[tuple[str, str | int]] = [
            ("search", criteria.search_text),
            ("sort", order.column),
            ("direction", order.direction.value),
            ("offset", offset),
            ("limit", limit),
        ]
        if criteria.department_ids is not None:
            params.extend(("department_id", item) for item in sorted(criteria.department_ids))
        response = await self._api.request("GET", "/api/employees", params=params)
        page = RosterPageRead.model_validate(response.json())
        return RosterPage(rows=tuple(page.rows), total_count=page.total_count)

    async def insert(self, record: EmployeeCreate) -> str:
        response = await self._api.request(
            "POST",
            "/api/employees",
            json=record.model_dump(mode="json"),
            expected=201,
        )
        return EmployeeRead.model_validate(response.json()).id

    async def update_by_id(self, employee_id: str, partial: EmployeeUpdate) -> None:
        await self._api.request(
            "PATCH",
            f"/api/employees/{employee_id}",
            json=partial.model_dump(mode="json", exclude_unset=True),
        )

    async def delete_by_id(self, employee_id: str) -> None:
        await self._api.request("DELETE", f"/api/employees/{employee_id}", expected=204)

    async def delete_by_ids(self, ids: list[str]) -> None:
        response = await self._api.request("POST", "/api/employees/bulk-delete", json={"ids": ids})
        self._raise_on_partial(BulkResultRead.model_validate(response.json()), "delete")

    async def update_by_ids(self, ids: list[str], partial: EmployeeUpdate) -> None:
        if partial.status is None:
            raise StoreError("bulk update supports status changes only")
        response = await self._api.request(
            "POST",
            "/api/employees/bulk-status",
            json={"ids": ids, "status": partial.status.value},
        )
        self._raise_on_partial(BulkResultRead.model_validate(response.json()), "update")

    async def fetch_role_assignments(self, user_id: str) -> list[RoleAssignment]:
        response = await self._api.request("GET", f"/api/identity/users/{user_id}/roles")
        return [RoleAssignment.model_validate(item) for item in response.json()]

    @staticmethod
    def _raise_on_partial(result: BulkResultRead, verb: str) -> None:
        if result.failed_ids:
            raise PartialFailureError(
                f"failed to {verb} {len(result.failed_ids)} of {result.requested_count} employees",
                result.failed_ids,
            )


class HttpIdentityProvider(AuthEventEmitter):
    def __init__(self, api: RosterApiClient) -> None:
        super().__init__()
        self._api = api

    async def sign_in(self, email: str, password: str) -> Identity:
        response = await self._api.request(
            "POST",
            "/api/identity/dev-login",
            json={"email": email, "password": password},
        )
        token = TokenResponse.model_validate(response.json())
        self._api.set_token(token.access_token)
        identity = Identity(id=token.user_id, email=token.email)
        self.emit(AuthEvent.SIGNED_IN, identity)
        return identity

    async def refresh(self) -> None:
        if self._api.token is None:
            return
        response = await self._api.request("POST", "/api/identity/refresh")
        token = TokenResponse.model_validate(response.json())
        self._api.set_token(token.access_token)
        self.emit(AuthEvent.TOKEN_REFRESHED, Identity(id=token.user_id, email=token.email))

    def sign_out(self) -> None:
        self._api.set_token(None)
        self.emit(AuthEvent.SIGNED_OUT, None)

    async def resolve_roles(self, identity_id: str) -> list[RoleAssignment]:
        response = await self._api.request("GET", f"/api/identity/users/{identity_id}/roles")
        return [RoleAssignment.model_validate(item) for item in response.json()]
