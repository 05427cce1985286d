from __future__ import annotations

from contextlib import contextmanager
from types import SimpleNamespace

import pytest
from sqlalchemy import func, select, text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.pool import QueuePool, StaticPool

from ormkit.core.config import settings
from ormkit.core.logging import get_unit_of_work_id
from ormkit.core.metrics import get_counters, get_metrics
from ormkit.db import database as database_module
from ormkit.db.database import DatabaseGateway, build_engine, get_session, seed_database, transactional_session
from ormkit.migrations.configuration import MigrationConfiguration
from tests.models import Author, Book, BookTag


def test_get_session_executes_query():
    with get_session() as db:
        scalar = db.execute(text("SELECT 1")).scalar()
        assert scalar == 1


def test_get_session_closes_context(monkeypatch):
    events: list[str] = []

    @contextmanager
    def fake_session():
        events.append("enter")
        yield object()
        events.append("exit")

    monkeypatch.setattr(database_module, "database_gateway", SimpleNamespace(session=fake_session))

    with get_session() as db:
        assert db is not None

    assert events == ["enter", "exit"]


def test_table_names_follow_class_names():
    assert Author.__table__.name == "Author"
    assert Book.__table__.name == "Book"
    assert BookTag.__table__.name == "BookTag"


def test_memory_database_uses_static_pool():
    engine = build_engine("sqlite+pysqlite:///:memory:")
    assert isinstance(engine.pool, StaticPool)
    engine.dispose()


def test_file_database_uses_tuned_queue_pool(tmp_path):
    engine = build_engine(f"sqlite+pysqlite:///{tmp_path / 'pool.db'}")
    try:
        assert isinstance(engine.pool, QueuePool)
        assert engine.pool.size() == settings.db_pool_size
        with engine.connect() as connection:
            assert connection.execute(text("SELECT 1")).scalar() == 1
    finally:
        engine.dispose()


def test_transactional_commits_and_tracks_unit_of_work(engine, session_factory):
    gateway = DatabaseGateway(engine=engine, session_factory=session_factory)
    seen: list[str | None] = []

    with gateway.transactional(flush_before_commit=True) as db:
        db.add(Author(id=1, name="Ann Lee"))
        seen.append(get_unit_of_work_id())

    assert seen[0] is not None
    assert get_unit_of_work_id() is None
    with session_factory() as fresh:
        assert fresh.scalar(select(func.count()).select_from(Author)) == 1
    assert get_counters()["db.transaction.commits"] == 1.0
    assert get_metrics()["db.transaction.duration"]["count"] == 1.0


def test_transactional_rolls_back_on_database_error(engine, session_factory):
    gateway = DatabaseGateway(engine=engine, session_factory=session_factory)
    with gateway.transactional() as db:
        db.add(Author(id=1, name="Ann Lee"))

    with pytest.raises(IntegrityError):
        with gateway.transactional() as db:
            db.add(Author(id=2, name="Bob Stone"))
            db.add(Author(id=1, name="Duplicate"))

    with session_factory() as fresh:
        assert fresh.scalars(select(Author.id)).all() == [1]
    assert get_counters()["db.transaction.rollbacks"] == 1.0


class _AuthorSeed(MigrationConfiguration):
    def add_db_objects(self, session):
        session.add(Author(id=50, name="Startup Author"))


def test_seed_database_requires_flag_or_force(engine, session_factory):
    configuration = _AuthorSeed(database_module.Base.metadata)
    assert seed_database(configuration, engine) is False
    assert seed_database(configuration, engine, force=True) is True
    with session_factory() as fresh:
        assert fresh.get(Author, 50).name == "Startup Author"


def test_transactional_session_flushes_and_commits(engine, session_factory, monkeypatch):
    gateway = DatabaseGateway(engine=engine, session_factory=session_factory)
    monkeypatch.setattr(database_module, "database_gateway", gateway)

    with transactional_session() as db:
        db.add(Author(id=1, name="Ann Lee"))

    with pytest.raises(IntegrityError):
        with transactional_session() as db:
            db.add(Author(id=2, name="Bob Stone"))
            db.add(Author(id=1, name="Duplicate"))

    with session_factory() as fresh:
        assert fresh.scalars(select(Author.name)).all() == ["Ann Lee"]
    counters = get_counters()
    assert counters["db.transaction.commits"] == 1.0
    assert counters["db.transaction.rollbacks"] == 1.0
