from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.orm import Session

from ..errors import NotFound, ValidationError
from ..models.user import User


def get_user(db: Session, user_id: int) -> User:
    u = db.get(User, user_id)
    if not u:
        raise NotFound("Пользователь не найден")
    return u


def ensure_user(db: Session, phone: str, full_name: str | None = None, role: str = "user") -> User:
    """Пользователь по телефону: находим или создаём, имя обновляем мягко."""
    phone = (phone or "").strip()
    if not phone:
        raise ValidationError("Укажите телефон")
    name = (full_name or "").strip() or None

    u = db.execute(select(User).where(User.phone == phone)).scalar_one_or_none()
    if u:
        if name and u.full_name != name:
            u.full_name = name
            db.commit()
            db.refresh(u)
        return u

    u = User(phone=phone, full_name=name, role=role if role in ("user", "admin") else "user")
    db.add(u)
    db.commit()
    db.refresh(u)
    return u


def set_push_token(db: Session, user_id: int, token: str | None) -> User:
    u = get_user(db, user_id)
    u.push_token = (token or "").strip()[:400] or None
    db.commit()
    db.refresh(u)
    return u


def admin_set_verified(db: Session, user_id: int, value: bool) -> User:
    u = get_user(db, user_id)
    u.is_verified = bool(value)
    db.commit()
    db.refresh(u)
    return u
