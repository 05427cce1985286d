"""Server-side default values chosen by column name.

Columns called ``position``, ``available``, ``secret``, ``created``,
``updated`` or ``publish`` (case-insensitive) get a dialect-specific
``DEFAULT`` clause whenever they are created, whether through an Alembic
autogenerated migration or ``MetaData.create_all``. The mapped model does
not need to declare the default itself.
"""

from __future__ import annotations

from typing import Any, Iterable, Mapping, Optional

from alembic.autogenerate.rewriter import Rewriter
from alembic.operations import ops
from sqlalchemy import Column, DefaultClause, MetaData, event, text

from ormkit.core.logging import get_logger

logger = get_logger(__name__, component="migrations")

_CURRENT_TIMESTAMP: Mapping[str, str] = {
    "mssql": "GETDATE()",
    "default": "CURRENT_TIMESTAMP",
}

DEFAULT_VALUE_SQL: Mapping[str, Mapping[str, str]] = {
    "position": {"default": "0"},
    "available": {"postgresql": "true", "default": "1"},
    "secret": {
        "mssql": "NEWID()",
        "postgresql": "gen_random_uuid()",
        "mysql": "(UUID())",
        "mariadb": "(UUID())",
        "default": "(lower(hex(randomblob(16))))",
    },
    "created": _CURRENT_TIMESTAMP,
    "updated": _CURRENT_TIMESTAMP,
    "publish": _CURRENT_TIMESTAMP,
}


def default_value_sql(column_name: str, dialect_name: str) -> Optional[str]:
    """SQL default expression for ``column_name`` on ``dialect_name``, or ``None``."""
    by_dialect = DEFAULT_VALUE_SQL.get(column_name.lower())
    if by_dialect is None:
        return None
    return by_dialect.get(dialect_name, by_dialect["default"])


def apply_default_values(columns: Iterable[Any], dialect_name: str) -> list[Column[Any]]:
    """Set the server default of every recognised column; returns the columns changed.

    Non-column items (constraints, indexes) are skipped so a create-table
    operation's element list can be passed as-is.
    """
    changed: list[Column[Any]] = []
    for column in columns:
        if not isinstance(column, Column) or column.name is None:
            continue
        sql = default_value_sql(column.name, dialect_name)
        if sql is None:
            continue
        column.server_default = DefaultClause(text(sql))
        changed.append(column)
    return changed


def _dialect_name(context: Any) -> str:
    dialect = getattr(context, "dialect", None)
    return getattr(dialect, "name", None) or "default"


def _defaulted_copies(elements: Iterable[Any], dialect_name: str) -> tuple[list[Any], list[Column[Any]]]:
    """Replace recognised columns with copies carrying the server default.

    Autogenerate hands over the application's own ``Column`` objects, which
    stay untouched.
    """
    result: list[Any] = []
    changed: list[Column[Any]] = []
    for element in elements:
        if isinstance(element, Column) and element.name is not None:
            sql = default_value_sql(element.name, dialect_name)
            if sql is not None:
                element = element._copy()
                element.server_default = DefaultClause(text(sql))
                changed.append(element)
        result.append(element)
    return result, changed


class DefaultValueRewriter(Rewriter):
    """Autogenerate hook adding column-name defaults to new tables and columns.

    Pass an instance as ``process_revision_directives`` to
    ``context.configure``; the defaults are written into the generated
    revision script.
    """

    def __init__(self) -> None:
        super().__init__()
        self.rewrites(ops.CreateTableOp)(self._create_table)
        self.rewrites(ops.AddColumnOp)(self._add_column)

    @staticmethod
    def _create_table(context: Any, revision: Any, op: ops.CreateTableOp) -> ops.CreateTableOp:
        op.columns, changed = _defaulted_copies(op.columns, _dialect_name(context))
        if changed:
            logger.debug(
                "migration_defaults_applied",
                extra={"structured_data": {"table": op.table_name, "columns": [c.name for c in changed]}},
            )
        return op

    @staticmethod
    def _add_column(context: Any, revision: Any, op: ops.AddColumnOp) -> ops.AddColumnOp:
        (op.column,), _ = _defaulted_copies([op.column], _dialect_name(context))
        return op


def _before_create(target: MetaData, connection: Any, **kw: Any) -> None:
    tables = kw.get("tables") or target.sorted_tables
    dialect_name = connection.dialect.name
    for table in tables:
        apply_default_values(table.columns, dialect_name)


def install_default_values(metadata: MetaData) -> None:
    """Apply column-name defaults whenever ``metadata.create_all`` runs."""
    if not event.contains(metadata, "before_create", _before_create):
        event.listen(metadata, "before_create", _before_create)


__all__ = [
    "DEFAULT_VALUE_SQL",
    "default_value_sql",
    "apply_default_values",
    "DefaultValueRewriter",
    "install_default_values",
]
