"""Shared fixtures: a file-backed SQLite database and a fake organization."""

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from request_routing.models import Base

from .fakes import ORG, Directory, person


@pytest.fixture
def org_id() -> str:
    return ORG


@pytest.fixture
async def db_engine(tmp_path):
    """Fresh SQLite database per test. File-backed so sessions can run concurrently."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'routing.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def staff():
    """A small organization with finance and IT teams and a reporting line.

    - alice: finance billing expert, backup bob, manager maria
    - bob: finance accountant
    - carol / dave: IT, both know SQL
    - maria: manager; lena: team lead; henry: department head
    """
    return [
        person(
            "alice",
            team="finance",
            skills=[("billing", 5, 0.9), ("invoicing", 4, 0.9)],
            manager_id="maria",
            backup_person_id="bob",
            workload=30,
        ),
        person(
            "bob",
            team="finance",
            skills=[("accounting", 4, 0.8), ("billing", 3, 0.8)],
            manager_id="maria",
            workload=50,
        ),
        person(
            "carol",
            team="it",
            skills=[("SQL", 5, 0.9), ("infrastructure", 4, 0.8)],
            manager_id="maria",
            workload=20,
        ),
        person("dave", team="it", skills=[("SQL", 4, 0.9)], workload=10),
        person("maria", team="management", roles=["manager"], workload=40),
        person("lena", team="it", roles=["team_lead"], workload=30),
        person("henry", team="management", roles=["department_head"], workload=60),
    ]


@pytest.fixture
def directory(staff) -> Directory:
    return Directory(staff)
