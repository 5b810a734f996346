from __future__ import annotations

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from markme.db import Base
from markme.models import User, UserRole


def make_sqlite_session_factory() -> tuple[Engine, sessionmaker[Session]]:
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    return engine, sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def add_user(
    db: Session,
    *,
    name: str,
    email: str,
    timezone_name: str | None = None,
    role: UserRole = UserRole.STAFF,
) -> User:
    user = User(
        name=name,
        email=email,
        password_hash="not-a-real-hash",
        role=role,
        working_hours="09:00",
        timezone=timezone_name,
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    return user
