# ridemarket/deps.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Header, HTTPException, status

from .utils.security import decode_jwt


@dataclass(frozen=True)
class Principal:
    """Аутентифицированный пользователь запроса. Передаётся в каждый вызов ядра явно."""
    user_id: int
    role: str = "user"

    @property
    def is_admin(self) -> bool:
        return (self.role or "").lower() == "admin"


# ------------------ Bearer token ------------------

def get_current_principal(
    authorization: Optional[str] = Header(None, alias="Authorization"),
) -> Principal:
    if not authorization or not authorization.lower().startswith("bearer "):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized",
            headers={"WWW-Authenticate": "Bearer"},
        )

    token = authorization[7:].strip()
    data = decode_jwt(token)
    if not data or "sub" not in data:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    try:
        user_id = int(data["sub"])
    except (TypeError, ValueError):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")

    return Principal(user_id=user_id, role=str(data.get("role") or "user"))


# ------------------ Admin guard ------------------

def require_admin(principal: Principal = Depends(get_current_principal)) -> Principal:
    if principal.is_admin:
        return principal
    raise HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail="Admin access required",
    )
