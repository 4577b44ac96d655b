from __future__ import annotations

import hashlib
import os

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from roster.domain.models import (
    BootstrapAdminRequest,
    Department,
    Role,
    RoleAssignment,
    RoleAssignmentUpdate,
    SignUpRequest,
    UserAccount,
    UserRoleAssignment,
    UserWithRolesRead,
)
from roster.domain.permissions import normalize_assignments
from roster.infra.db import get_engine
from roster.infra.events import USER_ROLES_REPLACED, event_bus


class IdentityError(Exception):
    pass


class NotFoundError(IdentityError):
    pass


class ConflictError(IdentityError):
    pass


class AuthError(IdentityError):
    pass


class IdentityService:
    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def _hash_password(self, raw_password: str) -> str:
        salt = os.getenv("PASSWORD_SALT", "roster-dev-salt")
        return hashlib.sha256(f"{salt}:{raw_password}".encode()).hexdigest()

    def _normalize_email(self, email: str) -> str:
        normalized = email.strip().lower()
        if not normalized or "@" not in normalized:
            raise ConflictError("invalid email")
        return normalized

    def _create_account(self, session: Session, email: str, password: str, full_name: str | None) -> UserAccount:
        if not password:
            raise ConflictError("password must not be empty")
        user = UserAccount(
            email=self._normalize_email(email),
            full_name=full_name,
            password_hash=self._hash_password(password),
        )
        session.add(user)
        try:
            session.flush()
        except IntegrityError as exc:
            session.rollback()
            raise ConflictError("email already registered") from exc
        return user

    def sign_up(self, payload: SignUpRequest) -> UserAccount:
        with self._session() as session:
            user = self._create_account(session, payload.email, payload.password, payload.full_name)
            session.commit()
            session.refresh(user)
            return user

    def bootstrap_admin(self, payload: BootstrapAdminRequest) -> UserAccount:
        with self._session() as session:
            existing_admin = session.exec(
                select(UserRoleAssignment).where(UserRoleAssignment.role == Role.ADMIN)
            ).first()
            if existing_admin is not None:
                raise ConflictError("admin already bootstrapped")
            user = self._create_account(session, payload.email, payload.password, payload.full_name)
            session.add(UserRoleAssignment(user_id=user.id, role=Role.ADMIN))
            session.commit()
            session.refresh(user)
            return user

    def dev_login(self, email: str, password: str) -> UserAccount:
        with self._session() as session:
            user = session.exec(
                select(UserAccount).where(UserAccount.email == email.strip().lower())
            ).first()
            if user is None or user.password_hash != self._hash_password(password):
                raise AuthError("invalid credentials")
            return user

    def get_user(self, user_id: str) -> UserAccount:
        with self._session() as session:
            user = session.get(UserAccount, user_id)
            if user is None:
                raise NotFoundError("user not found")
            return user

    def _stored_assignments(self, session: Session, user_ids: list[str]) -> dict[str, list[RoleAssignment]]:
        if not user_ids:
            return {}
        rows = session.exec(
            select(UserRoleAssignment, Department)
            .join(
                Department,
                col(UserRoleAssignment.department_id) == col(Department.id),
                isouter=True,
            )
            .where(col(UserRoleAssignment.user_id).in_(user_ids))
        ).all()
        grouped: dict[str, list[RoleAssignment]] = {}
        for assignment, department in rows:
            grouped.setdefault(assignment.user_id, []).append(
                RoleAssignment(
                    role=assignment.role,
                    department_id=assignment.department_id,
                    department_name=department.name if department is not None else None,
                )
            )
        return grouped

    def list_role_assignments(self, user_id: str) -> list[RoleAssignment]:
        """Stored assignments for ``user_id``; empty when none are stored."""
        with self._session() as session:
            return self._stored_assignments(session, [user_id]).get(user_id, [])

    def effective_role_assignments(self, user_id: str) -> frozenset[RoleAssignment]:
        return normalize_assignments(self.list_role_assignments(user_id))

    def list_users_with_roles(self) -> list[UserWithRolesRead]:
        with self._session() as session:
            users = list(
                session.exec(select(UserAccount).order_by(col(UserAccount.created_at).desc())).all()
            )
            grouped = self._stored_assignments(session, [item.id for item in users])
        return [
            UserWithRolesRead(
                id=item.id,
                email=item.email,
                full_name=item.full_name,
                created_at=item.created_at,
                roles=sorted(
                    normalize_assignments(grouped.get(item.id, [])),
                    key=lambda assignment: (assignment.role.value, assignment.department_id or ""),
                ),
            )
            for item in users
        ]

    def replace_user_roles(
        self,
        user_id: str,
        roles: list[RoleAssignmentUpdate],
        *,
        actor_id: str | None = None,
    ) -> list[RoleAssignment]:
        unique = list(dict.fromkeys((item.role, item.department_id) for item in roles))
        with self._session() as session:
            if session.get(UserAccount, user_id) is None:
                raise NotFoundError("user not found")
            department_ids = {department_id for _, department_id in unique if department_id is not None}
            if department_ids:
                found = set(
                    session.exec(select(Department.id).where(col(Department.id).in_(department_ids))).all()
                )
                missing = department_ids - found
                if missing:
                    raise NotFoundError(f"department not found: {sorted(missing)[0]}")
            if actor_id == user_id and not any(role == Role.ADMIN for role, _ in unique):
                raise ConflictError("admins cannot remove their own admin role")

            existing = session.exec(select(UserRoleAssignment).where(UserRoleAssignment.user_id == user_id)).all()
            for item in existing:
                session.delete(item)
            session.flush()
            for role, department_id in unique:
                session.add(UserRoleAssignment(user_id=user_id, role=role, department_id=department_id))
            session.commit()
            assignments = self._stored_assignments(session, [user_id]).get(user_id, [])

        event_bus.publish_dict(
            USER_ROLES_REPLACED,
            {
                "user_id": user_id,
                "roles": [
                    {"role": item.role.value, "department_id": item.department_id} for item in assignments
                ],
            },
            actor_id=actor_id,
        )
        return assignments
