from datetime import datetime
from typing import Optional

import pytest

pytest.importorskip("sqlmodel")
from sqlmodel import SQLModel

from famledger.clock import set_time_provider
from famledger.models import Actor, UserRole
from famledger.security import hash_password
from famledger.webapp import persistence
from famledger.webapp.persistence import Family, User, configure_engine, open_session

FIXED_NOW = datetime(2024, 1, 5, 12, 0)


@pytest.fixture()
def db(tmp_path):
    configure_engine(f"sqlite:///{tmp_path / 'famledger.db'}")
    SQLModel.metadata.drop_all(persistence.engine)
    SQLModel.metadata.create_all(persistence.engine)
    with open_session() as session:
        yield session


@pytest.fixture()
def frozen_clock():
    set_time_provider(lambda: FIXED_NOW)
    yield FIXED_NOW
    set_time_provider(None)


def make_user(
    db,
    username: str = "alice",
    email: Optional[str] = None,
    *,
    family_id: Optional[int] = None,
    role: UserRole = UserRole.ADMIN,
    password: str = "secret-pass",
) -> Actor:
    user = User(
        username=username,
        email=email or f"{username}@example.com",
        password_hash=hash_password(password),
        role=role.value,
        family_id=family_id,
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    return Actor(user_id=user.id, family_id=family_id, role=role, username=user.username, email=user.email)


def make_family(db, name: str = "Smith") -> Family:
    family = Family(name=name)
    db.add(family)
    db.commit()
    db.refresh(family)
    return family


@pytest.fixture()
def family(db) -> Family:
    return make_family(db)


@pytest.fixture()
def actor(db, family) -> Actor:
    return make_user(db, "alice", family_id=family.id)
