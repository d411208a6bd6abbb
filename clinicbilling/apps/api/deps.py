from __future__ import annotations

from typing import AsyncGenerator

from fastapi import Depends, HTTPException, Request, status
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from clinicbilling.persistence.db import get_session


# Clinic staff read, clinic admins manage billing settings, platform operators run admin routes.
ROLE_ORDER: dict[str, int] = {
    "member": 1,
    "admin": 2,
    "operator": 3,
}


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; context manager ensures close on success/error.
    async with get_session() as session:
        yield session


class Principal(BaseModel):
    # Identity is authenticated upstream; only tenant and role reach this service.
    subject_id: str
    tenant_id: str | None
    role: str


def normalize_role(role: str) -> str:
    normalized = role.strip().lower()
    if normalized not in ROLE_ORDER:
        raise ValueError(f"Unsupported role: {role}")
    return normalized


def role_allows(*, role: str, minimum_role: str) -> bool:
    return ROLE_ORDER.get(role, 0) >= ROLE_ORDER.get(minimum_role, 0)


def _auth_error(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": "AUTH_UNAUTHORIZED", "message": message},
    )


def _forbidden_error(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail={"code": "AUTH_FORBIDDEN", "message": message},
    )


async def get_current_principal(request: Request) -> Principal:
    role_header = request.headers.get("X-Role", "member")
    try:
        role = normalize_role(role_header)
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "AUTH_INVALID_ROLE", "message": str(exc)},
        ) from exc
    tenant_id = (request.headers.get("X-Tenant-Id") or "").strip() or None
    # Operators act across clinics; everyone else is scoped to one.
    if tenant_id is None and role != "operator":
        raise _auth_error("X-Tenant-Id header is required")
    subject = request.headers.get("X-Subject-Id") or f"{role}-{tenant_id or 'platform'}"
    return Principal(subject_id=subject, tenant_id=tenant_id, role=role)


def require_role(minimum_role: str):
    # Dependency factory to enforce RBAC at the route level.
    async def _dependency(principal: Principal = Depends(get_current_principal)) -> Principal:
        if not role_allows(role=principal.role, minimum_role=minimum_role):
            raise _forbidden_error("Insufficient role for this operation")
        return principal

    return _dependency


def require_tenant_role(minimum_role: str):
    # Tenant-scoped routes need a clinic even when an operator is calling.
    role_dependency = require_role(minimum_role)

    async def _dependency(principal: Principal = Depends(role_dependency)) -> Principal:
        if principal.tenant_id is None:
            raise _auth_error("X-Tenant-Id header is required")
        return principal

    return _dependency
