import os

# Point the module-level engine at an in-memory database before ormkit is imported
os.environ.setdefault("DATABASE_URL", "sqlite+pysqlite:///:memory:")
os.environ.setdefault("ENVIRONMENT", "test")

import pytest
from sqlalchemy.orm import Session

from ormkit.core.metrics import metrics_registry
from ormkit.db.database import Base, build_engine, build_session_factory
from ormkit.migrations.defaults import install_default_values
from tests.models import Author, Book, BookTag, Genre


@pytest.fixture()
def engine():
    engine = build_engine("sqlite+pysqlite:///:memory:")
    install_default_values(Base.metadata)
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture()
def db_session(session_factory):
    with session_factory() as session:
        yield session


@pytest.fixture()
def library(db_session: Session):
    """Three authors, five books and a few tags, committed and expunged."""
    ann = Author(id=1, name="Ann Lee", country="NO")
    bob = Author(id=2, name="Bob Stone", country="US")
    cid = Author(id=3, name="Cid Marsh", country=None)
    db_session.add_all([ann, bob, cid])
    db_session.add_all(
        [
            Book(id=1, title="Python Tricks", isbn="1001", pages=300, position=1, author=ann),
            Book(id=2, title="Dune", isbn="1002", pages=600, position=2, author=bob, genre=Genre.fiction),
            Book(id=3, title="Learning SQL", isbn="1003", pages=350, position=3, author=cid, genre=Genre.science),
            Book(id=4, title="The Hobbit", isbn="1004", pages=310, position=4, author=bob),
            Book(id=5, title="Fluent Python", isbn="1005", pages=800, position=5, author=ann, genre=Genre.science),
        ]
    )
    db_session.add_all(
        [
            BookTag(book_id=2, label="space", weight=3),
            BookTag(book_id=1, label="tips", weight=2),
            BookTag(book_id=1, label="beginner", weight=1),
            BookTag(book_id=3, label="database", weight=5),
        ]
    )
    db_session.commit()
    db_session.expunge_all()
    return db_session


@pytest.fixture(autouse=True)
def _reset_metrics():
    metrics_registry.clear()
    yield
