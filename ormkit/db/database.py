from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from typing import TYPE_CHECKING, Iterator, Optional

from sqlalchemy import Engine, MetaData, create_engine
from sqlalchemy.engine import make_url, URL
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Session, declared_attr, has_inherited_table, sessionmaker
from sqlalchemy.pool import QueuePool, StaticPool

from ormkit.core.config import settings
from ormkit.core.logging import get_logger, unit_of_work_context
from ormkit.core.metrics import inc_counter, timer

if TYPE_CHECKING:
    from ormkit.migrations.configuration import MigrationConfiguration

logger = get_logger(__name__, component="database")


class Base(DeclarativeBase):
    """Declarative base for mapped entities.

    Tables are named after the class, without pluralization. Subclasses that
    inherit a table share it unless they declare ``__tablename__`` themselves.
    """

    @declared_attr.directive
    def __tablename__(cls) -> Optional[str]:
        if has_inherited_table(cls):
            return None
        return cls.__name__


@dataclass(frozen=True, slots=True)
class DatabaseGateway:
    """Engine plus session factory; hands out plain and transactional sessions."""

    engine: Engine
    session_factory: sessionmaker[Session]

    @contextmanager
    def session(self) -> Iterator[Session]:
        inc_counter("db.session.opens")
        with timer("db.session.duration"), self.session_factory() as session:
            yield session

    @contextmanager
    def transactional(self, *, flush_before_commit: bool = False) -> Iterator[Session]:
        """Commit when the block exits cleanly, roll back on ``SQLAlchemyError``.

        Log records emitted inside the block carry a fresh unit-of-work id.
        """
        inc_counter("db.transaction.opens")
        with unit_of_work_context() as unit_of_work_id, timer("db.transaction.duration"):
            with self.session_factory() as session:
                try:
                    yield session
                    if flush_before_commit:
                        session.flush()
                    session.commit()
                except SQLAlchemyError as exc:
                    session.rollback()
                    inc_counter("db.transaction.rollbacks")
                    logger.error(
                        "transaction_rollback",
                        extra={"structured_data": {"error": str(exc), "unit_of_work_id": unit_of_work_id}},
                    )
                    raise
                inc_counter("db.transaction.commits")


def build_engine(database_url: str | None = None) -> Engine:
    """Create an engine for ``database_url`` with pooling tuned from settings."""
    url: URL = make_url(database_url or settings.database_url)
    kwargs: dict[str, object] = {"echo": settings.db_echo}
    pool_kwargs: dict[str, object] = {
        "pool_size": settings.db_pool_size,
        "max_overflow": settings.db_max_overflow,
        "pool_timeout": settings.db_pool_timeout,
        "pool_recycle": settings.db_pool_recycle,
        "pool_pre_ping": settings.db_pool_pre_ping,
    }

    if url.get_backend_name() == "sqlite":
        connect_args: dict[str, object] = {"check_same_thread": False}
        database = url.database or ""
        if database.startswith("file:"):
            connect_args["uri"] = True
        kwargs["connect_args"] = connect_args

        if database in ("", ":memory:", "file::memory:"):
            kwargs["poolclass"] = StaticPool
        else:
            kwargs["poolclass"] = QueuePool
            kwargs.update(pool_kwargs)
    else:
        kwargs.update(pool_kwargs)

    return create_engine(url, **kwargs)


def build_session_factory(bind: Engine) -> sessionmaker[Session]:
    """Sessions never flush implicitly and keep loaded state after commit."""
    return sessionmaker(bind=bind, autoflush=False, autocommit=False, expire_on_commit=False)


engine: Engine = build_engine()
SessionLocal: sessionmaker[Session] = build_session_factory(engine)
database_gateway = DatabaseGateway(engine=engine, session_factory=SessionLocal)


@contextmanager
def get_session() -> Iterator[Session]:
    with database_gateway.session() as session:
        yield session


@contextmanager
def transactional_session() -> Iterator[Session]:
    """Context manager that manages commit/rollback for explicit transactions."""

    with database_gateway.transactional(flush_before_commit=True) as session:
        yield session


def create_schema(bind: Engine | None = None, *, metadata: MetaData | None = None, force: bool = False) -> bool:
    """Create all tables when startup DDL is enabled (or ``force`` is set).

    Column-name server defaults are installed on the metadata first so
    ``create_all`` emits the same defaults as the migrations do.
    """
    from ormkit.migrations.defaults import install_default_values

    if not (force or settings.run_startup_ddl):
        return False
    target = metadata if metadata is not None else Base.metadata
    install_default_values(target)
    logger.info("startup_execute_ddl", extra={"structured_data": {"tables": len(target.tables)}})
    target.create_all(bind=bind or engine)
    return True


def seed_database(
    configuration: MigrationConfiguration, bind: Engine | None = None, *, force: bool = False
) -> bool:
    """Run ``configuration.seed`` outside Alembic when startup seeding is enabled.

    Returns whatever ``seed`` returns, or False when seeding is switched off.
    """
    if not (force or settings.run_startup_seed):
        return False
    logger.info("startup_seed_data", extra={"structured_data": {"run_startup_seed": True}})
    factory = SessionLocal if bind is None else build_session_factory(bind)
    with factory() as session:
        return configuration.seed(session)


__all__ = [
    "Base",
    "DatabaseGateway",
    "build_engine",
    "build_session_factory",
    "database_gateway",
    "engine",
    "SessionLocal",
    "get_session",
    "transactional_session",
    "create_schema",
    "seed_database",
]
