from __future__ import annotations

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from .config import settings
from .models.base import Base


# ---------- Engine / Session ----------
def build_engine(url: str) -> Engine:
    # Поддержка SQLite и PostgreSQL (или любой другой, поддерживаемый SQLAlchemy)
    if url.startswith("sqlite"):
        # для sqlite нужен check_same_thread=False: сессии живут в разных потоках
        return create_engine(
            url,
            connect_args={"check_same_thread": False},
            future=True,
        )
    return create_engine(
        url,
        pool_pre_ping=True,
        future=True,
    )


def build_sessionmaker(bind: Engine) -> sessionmaker:
    return sessionmaker(
        bind=bind,
        autoflush=False,
        autocommit=False,
        expire_on_commit=False,
        future=True,
    )


DATABASE_URL = settings.DATABASE_URL

engine = build_engine(DATABASE_URL)
SessionLocal = build_sessionmaker(engine)


def init_db(bind: Engine | None = None) -> None:
    # импорт моделей, чтобы create_all увидел все таблицы
    from .models import user, provider, ride, parcel, service, city, rating  # noqa: F401

    Base.metadata.create_all(bind=bind or engine)


# ---------- Dependency ----------
def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
