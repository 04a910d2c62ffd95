from sqlalchemy import Column, Integer, String, Boolean, DateTime
from sqlalchemy.sql import func
from .base import Base


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True)
    phone = Column(String(32), unique=True, index=True, nullable=True)
    full_name = Column(String(200), nullable=True)
    role = Column(String(20), nullable=False, default="user")   # 'admin'/'user'

    # верификация личности (нужна для city-to-city)
    is_verified = Column(Boolean, nullable=False, default=False)
    push_token = Column(String(400), nullable=True)

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    # Удобное отображаемое имя
    @property
    def display_name(self) -> str:
        return self.full_name or (self.phone if self.phone else f"ID {self.id}")
