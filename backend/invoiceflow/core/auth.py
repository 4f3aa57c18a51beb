"""Operator identity and role flag dependency for API routes."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Tuple

from fastapi import Depends, Header, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from invoiceflow.core.config import get_settings
from invoiceflow.core.logging import logger


security = HTTPBearer(auto_error=False)


@dataclass
class OperatorContext:
    operator: str
    role: str
    authenticated: bool

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


SUPPORTED_ROLES = {"operator", "admin"}


def _normalize_role(value: str | None) -> str:
    role = (value or "").strip().lower()
    if not role:
        return "operator"
    if role not in SUPPORTED_ROLES:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Unsupported role '{value}'. Expected one of: {sorted(SUPPORTED_ROLES)}",
        )
    return role


def _parse_operator_tokens(raw: str) -> Dict[str, Tuple[str, str]]:
    """Parse `token:operator:role` comma-separated values from env."""
    mapping: Dict[str, Tuple[str, str]] = {}
    if not raw.strip():
        return mapping

    for segment in raw.split(","):
        item = segment.strip()
        if not item:
            continue
        parts = [part.strip() for part in item.split(":")]
        if len(parts) < 2 or not parts[0] or not parts[1]:
            logger.warning("Ignoring malformed operator token mapping entry", entry=item)
            continue
        role = parts[2] if len(parts) > 2 and parts[2] else "operator"
        mapping[parts[0]] = (parts[1], role)
    return mapping


def get_operator_context(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
    x_operator: str | None = Header(default=None, alias="X-Operator"),
    x_actor_role: str | None = Header(default=None, alias="X-Actor-Role"),
) -> OperatorContext:
    """Resolve the acting operator from a bearer token or plain headers."""
    settings = get_settings()

    if not settings.auth_enabled:
        operator = (x_operator or settings.default_operator or "operator").strip() or "operator"
        return OperatorContext(
            operator=operator,
            role=_normalize_role(x_actor_role),
            authenticated=False,
        )

    if not credentials or not credentials.credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Bearer token required",
        )

    token_map = _parse_operator_tokens(settings.operator_tokens)
    resolved = token_map.get(credentials.credentials.strip())
    if not resolved:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid bearer token",
        )

    operator, role = resolved
    return OperatorContext(
        operator=operator,
        role=_normalize_role(role),
        authenticated=True,
    )


def require_roles(*allowed_roles: str):
    """Dependency factory that enforces the role flag."""
    allowed = {role.strip().lower() for role in allowed_roles if role.strip()}
    if not allowed:
        raise ValueError("At least one role is required")

    def _guard(context: OperatorContext = Depends(get_operator_context)) -> OperatorContext:
        if context.role not in allowed:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Role '{context.role}' not permitted for this operation",
            )
        return context

    return _guard
