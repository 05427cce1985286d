from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, ClassVar, Generic, Iterator, Optional, Sequence, TypeVar

from sqlalchemy import Enum as SAEnum, Select, String, func, or_, select
from sqlalchemy.orm import Session, aliased, raiseload
from sqlalchemy.orm.util import identity_key
from sqlalchemy.sql.elements import ColumnElement

from ormkit.core.errors import ConfigurationError, EntityNotFoundError, InvalidFilterError, InvalidKeyError
from ormkit.core.logging import get_logger
from ormkit.core.metrics import inc_counter, timer
from ormkit.db.filters import BaseFilter, Order, Page
from ormkit.db.repositories.base import Repository, mapper_for

TEntity = TypeVar("TEntity")
TFilter = TypeVar("TFilter", bound=BaseFilter)

logger = get_logger(__name__, component="read_repository")


@dataclass
class ReadRepository(Repository[Session], Generic[TEntity, TFilter]):
    """Paged, sorted and searchable reads for one mapped entity.

    Subclasses set ``model`` (and ``filter_model`` when they use a richer
    filter) and override the ``apply_*`` hooks::

        @dataclass
        class BookRepository(ReadRepository[Book, BookFilter]):
            model = Book
            filter_model = BookFilter

            def apply_include(self, stmt):
                return stmt.options(selectinload(Book.author))

    Flags:

    ``cache``
        Key lookups check the session identity map before querying.
    ``include``
        Queries pass through ``apply_include``.
    ``tracking``
        Entities are loaded into the repository session. When off, they are
        loaded into a short-lived session on the same connection and come
        back detached, so changes to them are not tracked.
    ``lazy_loading``
        When off, relationships that ``apply_include`` did not load raise on
        access instead of emitting a lazy load.
    """

    model: ClassVar[type[Any]]
    filter_model: ClassVar[type[BaseFilter]] = BaseFilter

    cache: bool = False
    include: bool = True
    tracking: bool = False
    lazy_loading: bool = False

    _statements: dict[tuple[bool, bool, bool], Select[Any]] = field(
        default_factory=dict, init=False, repr=False, compare=False
    )

    def __post_init__(self) -> None:
        if getattr(type(self), "model", None) is None:
            raise ConfigurationError(f"{type(self).__name__} does not declare a mapped model")

    # --- query variants ---

    def _statement(self, *, include: bool, loader_options: bool = True) -> Select[Any]:
        cache_key = (include, loader_options, self.lazy_loading)
        stmt = self._statements.get(cache_key)
        if stmt is None:
            stmt = select(self.model)
            if loader_options and not self.lazy_loading:
                stmt = stmt.options(raiseload("*"))
            if include:
                stmt = self.apply_include(stmt)
            self._statements[cache_key] = stmt
        return stmt

    @property
    def base_query(self) -> Select[Any]:
        """Entity query honouring the ``include`` and ``lazy_loading`` flags."""
        return self._statement(include=self.include)

    @property
    def plain_query(self) -> Select[Any]:
        """Entity query without includes or loader options, for counts and existence checks."""
        return self._statement(include=False, loader_options=False)

    @contextmanager
    def _reader(self) -> Iterator[Session]:
        if self.tracking:
            yield self.db
            return
        connection = self.db.connection(bind_arguments={"mapper": mapper_for(self.model)})
        reader = Session(bind=connection, autoflush=False, expire_on_commit=False)
        try:
            yield reader
        finally:
            reader.close()

    # --- key helpers ---

    def _key_criteria(self, key: Sequence[Any]) -> list[ColumnElement[bool]]:
        primary_key = mapper_for(self.model).primary_key
        if len(key) != len(primary_key):
            raise InvalidKeyError(
                f"{self.model.__name__} key expects {len(primary_key)} value(s), got {len(key)}",
                detail={"key": list(key)},
            )
        return [column == value for column, value in zip(primary_key, key)]

    def _coerce_filter(self, filter: Optional[TFilter]) -> TFilter:
        if filter is None:
            return self.filter_model()  # type: ignore[return-value]
        if not isinstance(filter, BaseFilter):
            raise InvalidFilterError(
                f"Expected a {self.filter_model.__name__}, got {type(filter).__name__}"
            )
        return filter

    # --- operations ---

    def get(self, *key: Any) -> Optional[TEntity]:
        criteria = self._key_criteria(key)
        if self.cache:
            cached = self.db.identity_map.get(identity_key(self.model, key))
            if cached is not None:
                inc_counter("repository.cache.hits")
                return cached

        with timer("repository.query.get"), self._reader() as reader:
            item = reader.scalars(self.base_query.where(*criteria)).unique().first()
        if item is None:
            return None
        return self.apply_mapping([item])[0]

    def get_required(self, *key: Any) -> TEntity:
        item = self.get(*key)
        if item is None:
            raise EntityNotFoundError(
                f"{self.model.__name__} {list(key)!r} not found",
                detail={"entity": self.model.__name__, "key": list(key)},
            )
        return item

    def get_page(self, filter: Optional[TFilter] = None) -> Page[TEntity]:
        """Return one page of entities and the total matching the filter."""
        filter = self._coerce_filter(filter)
        query = self.apply_filter(self.base_query, filter)
        ordered = self.apply_sort(query, filter)
        paged = ordered.offset(filter.skip).limit(filter.take)
        counted = self.apply_filter(self.plain_query, filter)

        with timer("repository.query.get_page"), self._reader() as reader:
            total = reader.scalar(select(func.count()).select_from(counted.order_by(None).subquery()))
            items = list(reader.scalars(paged).unique().all())
        logger.debug(
            "repository_get_page",
            extra={
                "structured_data": {
                    "entity": self.model.__name__,
                    "skip": filter.skip,
                    "take": filter.take,
                    "total": total,
                }
            },
        )
        return Page(total=int(total or 0), data=self.apply_mapping(items))

    def get_all(self, filter: Optional[TFilter] = None) -> list[TEntity]:
        filter = self._coerce_filter(filter)
        query = self.apply_filter(self.base_query, filter)
        ordered = self.apply_sort(query, filter)
        with timer("repository.query.get_all"), self._reader() as reader:
            items = list(reader.scalars(ordered).unique().all())
        return self.apply_mapping(items)

    def exists(self, filter: Optional[TFilter] = None) -> bool:
        filter = self._coerce_filter(filter)
        query = self.apply_filter(self.plain_query, filter)
        with timer("repository.query.exists"), self._reader() as reader:
            return bool(reader.scalar(select(query.exists())))

    def exists_key(self, *key: Any) -> bool:
        query = self.plain_query.where(*self._key_criteria(key))
        with timer("repository.query.exists"), self._reader() as reader:
            return bool(reader.scalar(select(query.exists())))

    def count(self, filter: Optional[TFilter] = None) -> int:
        filter = self._coerce_filter(filter)
        query = self.apply_filter(self.plain_query, filter)
        with timer("repository.query.count"), self._reader() as reader:
            total = reader.scalar(select(func.count()).select_from(query.order_by(None).subquery()))
        return int(total or 0)

    async def get_async(self, *key: Any) -> Optional[TEntity]:
        return self.get(*key)

    async def get_page_async(self, filter: Optional[TFilter] = None) -> Page[TEntity]:
        return self.get_page(filter)

    async def get_all_async(self, filter: Optional[TFilter] = None) -> list[TEntity]:
        return self.get_all(filter)

    async def exists_async(self, filter: Optional[TFilter] = None) -> bool:
        return self.exists(filter)

    async def exists_key_async(self, *key: Any) -> bool:
        return self.exists_key(*key)

    async def count_async(self, filter: Optional[TFilter] = None) -> int:
        return self.count(filter)

    # --- hooks ---

    def apply_include(self, stmt: Select[Any]) -> Select[Any]:
        """Attach eager-loading options for related entities."""
        return stmt

    def apply_filter(self, stmt: Select[Any], filter: TFilter) -> Select[Any]:
        """Case-insensitive ``q`` search over every string column, OR-combined."""
        if not filter.q:
            return stmt
        clauses = [
            getattr(self.model, key).icontains(filter.q, autoescape=True)
            for key in self._string_attribute_keys()
        ]
        if not clauses:
            return stmt
        return stmt.where(or_(*clauses))

    def apply_sort(self, stmt: Select[Any], filter: TFilter) -> Select[Any]:
        """Order by ``filter.sort_by`` then by the remaining key columns.

        An unknown ``sort_by`` falls back to ``id`` or, when the entity has
        no ``id``, to its first column, and the filter is updated to match.
        Paging always runs against a deterministic order.
        """
        path = self._resolve_sort_path(filter.sort_by)
        if path is None:
            filter.sort_by = self._fallback_sort_key()
            path = [filter.sort_by]

        target: Any = self.model
        for segment in path[:-1]:
            relationship = getattr(target, segment)
            alias = aliased(relationship.property.mapper.class_)
            stmt = stmt.outerjoin(alias, relationship)
            target = alias

        descending = filter.order == Order.desc
        column = getattr(target, path[-1])
        stmt = stmt.order_by(column.desc() if descending else column.asc())

        mapper = mapper_for(self.model)
        for key_column in mapper.primary_key:
            key = mapper.get_property_by_column(key_column).key
            if key == filter.sort_by:
                continue
            attribute = getattr(self.model, key)
            stmt = stmt.order_by(attribute.desc() if descending else attribute.asc())
        return stmt

    def apply_mapping(self, items: list[TEntity]) -> list[TEntity]:
        """Post-process loaded entities before they are returned."""
        return items

    # --- reflection helpers ---

    def _string_attribute_keys(self) -> list[str]:
        keys: list[str] = []
        for attribute in mapper_for(self.model).column_attrs:
            column_type = attribute.columns[0].type
            if isinstance(column_type, String) and not isinstance(column_type, SAEnum):
                keys.append(attribute.key)
        return keys

    def _resolve_sort_path(self, sort_by: str) -> Optional[list[str]]:
        segments = sort_by.split(".")
        mapper = mapper_for(self.model)
        for segment in segments[:-1]:
            relationship = mapper.relationships.get(segment)
            if relationship is None or relationship.uselist:
                return None
            mapper = relationship.mapper
        if segments[-1] not in mapper.column_attrs:
            return None
        return segments

    def _fallback_sort_key(self) -> str:
        column_attrs = mapper_for(self.model).column_attrs
        if "id" in column_attrs:
            return "id"
        return next(iter(column_attrs)).key


__all__ = ["ReadRepository", "TEntity", "TFilter"]
