from __future__ import annotations

from typing import Any, Optional

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import Connection, Engine, MetaData, engine_from_config, pool, text
from sqlalchemy.orm import Session

from ormkit.core.config import settings
from ormkit.core.errors import ConfigurationError, EntityValidationError
from ormkit.core.logging import get_logger, unit_of_work_context
from ormkit.core.metrics import inc_counter, timer
from ormkit.migrations.defaults import DefaultValueRewriter

logger = get_logger(__name__, component="migrations")

SEED_ATTRIBUTE = "ormkit.seed"


class MigrationConfiguration:
    """Drives an Alembic ``env.py`` and seeds the database after upgrades.

    ``env.py`` reduces to::

        from alembic import context
        from myapp.models import Base
        from ormkit.core.logging import configure_logging

        configure_logging()

        class AppConfiguration(MigrationConfiguration):
            def data_exist(self, session):
                return session.scalar(select(func.count()).select_from(Role)) > 0

            def add_db_objects(self, session):
                session.add_all([Role(name="admin"), Role(name="user")])

        AppConfiguration(Base.metadata).run(context)

    Seeding runs in four steps, each a hook for subclasses:

    0. ``data_exist`` -- when it returns true nothing else runs.
    1. ``change_database_structure`` -- triggers, functions, procedures;
       committed on its own.
    2. ``add_db_objects`` -- starter rows.
    3. ``execute_raw_queries`` -- anything else.

    Steps 2 and 3 share one transaction that is rolled back on any error.
    """

    def __init__(
        self,
        target_metadata: Optional[MetaData],
        *,
        seed_after_upgrade: bool = True,
        compare_type: bool = True,
    ) -> None:
        if target_metadata is None:
            raise ConfigurationError("A target MetaData is required to run migrations")
        self.target_metadata = target_metadata
        self.seed_after_upgrade = seed_after_upgrade
        self.compare_type = compare_type
        self.rewriter = DefaultValueRewriter()

    # --- alembic entry points ---

    def run(self, context: Any) -> None:
        if context.is_offline_mode():
            self.run_offline(context)
        else:
            self.run_online(context)

    def run_offline(self, context: Any) -> None:
        context.configure(
            url=self.database_url(context),
            target_metadata=self.target_metadata,
            literal_binds=True,
            dialect_opts={"paramstyle": "named"},
            process_revision_directives=self.rewriter,
            compare_type=self.compare_type,
        )
        with context.begin_transaction():
            context.run_migrations()

    def run_online(self, context: Any, connectable: Optional[Engine] = None) -> None:
        connectable = connectable or self.build_engine(context)
        with connectable.connect() as connection:
            self.configure_connection(context, connection)
            with context.begin_transaction():
                context.run_migrations()
            if self.should_seed(context):
                with Session(bind=connection, autoflush=False, expire_on_commit=False) as session:
                    self.seed(session)

    def configure_connection(self, context: Any, connection: Connection) -> None:
        context.configure(
            connection=connection,
            target_metadata=self.target_metadata,
            process_revision_directives=self.rewriter,
            compare_type=self.compare_type,
            render_as_batch=connection.dialect.name == "sqlite",
        )

    def database_url(self, context: Any) -> str:
        return context.config.get_main_option("sqlalchemy.url") or settings.database_url

    def build_engine(self, context: Any) -> Engine:
        section = dict(context.config.get_section(context.config.config_ini_section, {}) or {})
        section["sqlalchemy.url"] = self.database_url(context)
        return engine_from_config(section, prefix="sqlalchemy.", poolclass=pool.NullPool)

    def should_seed(self, context: Any) -> bool:
        """Seed after ``upgrade`` only; ``config.attributes['ormkit.seed']`` overrides.

        The command is read from the migration function Alembic hands to the
        environment: ``upgrade`` for upgrades, ``downgrade`` for downgrades,
        ``retrieve_migrations`` for autogenerate and ``check``.
        """
        if not self.seed_after_upgrade:
            return False
        attributes = context.config.attributes
        if SEED_ATTRIBUTE in attributes:
            return bool(attributes[SEED_ATTRIBUTE])
        fn = context.get_context().opts.get("fn")
        return getattr(fn, "__name__", None) == "upgrade"

    # --- seeding ---

    def seed(self, session: Session) -> bool:
        """Run the seeding steps; returns False when data already exists."""
        if self.data_exist(session):
            logger.info("seed_skipped", extra={"structured_data": {"reason": "data_exist"}})
            return False

        with unit_of_work_context(), timer("migrations.seed"):
            self.change_database_structure(session)
            if session.in_transaction():
                session.commit()

            try:
                self.add_db_objects(session)
                self.execute_raw_queries(session)
                session.flush()
                session.commit()
            except Exception as exc:
                session.rollback()
                inc_counter("migrations.seed.failures")
                self.report_failure(exc)
                raise

        inc_counter("migrations.seed.runs")
        logger.info("seed_completed")
        return True

    def report_failure(self, exc: BaseException) -> None:
        """Log every failing property of a validation error, or the error itself."""
        if isinstance(exc, EntityValidationError):
            for property_name, message in exc.errors:
                logger.error(
                    "seed_validation_error",
                    extra={"structured_data": {"property": property_name, "error": message}},
                )
            return
        if isinstance(exc, PydanticValidationError):
            for error in exc.errors():
                logger.error(
                    "seed_validation_error",
                    extra={
                        "structured_data": {
                            "property": ".".join(str(part) for part in error.get("loc", ())),
                            "error": error.get("msg"),
                        }
                    },
                )
            return
        logger.error("seed_failed", extra={"structured_data": {"error": str(exc)}})

    def execute_sql(self, session: Session, sql: str, **params: Any) -> Any:
        """Execute a raw SQL statement in the seeding session."""
        return session.execute(text(sql), params)

    # --- hooks ---

    def data_exist(self, session: Session) -> bool:
        return False

    def change_database_structure(self, session: Session) -> None:
        pass

    def add_db_objects(self, session: Session) -> None:
        pass

    def execute_raw_queries(self, session: Session) -> None:
        pass


__all__ = ["MigrationConfiguration", "SEED_ATTRIBUTE"]
