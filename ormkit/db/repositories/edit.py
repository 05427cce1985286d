from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Generic, TypeVar, Union

from sqlalchemy import inspect
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import InstanceState, QueryableAttribute, Session, make_transient, make_transient_to_detached
from sqlalchemy.orm.attributes import flag_modified, set_committed_value
from sqlalchemy.orm.util import identity_key

from ormkit.core.errors import InvalidKeyError, ValidationError
from ormkit.core.logging import get_logger
from ormkit.core.metrics import inc_counter, timer
from ormkit.db.repositories.base import Repository, primary_key_of

TEntity = TypeVar("TEntity")

AttributeRef = Union[str, QueryableAttribute[Any]]

logger = get_logger(__name__, component="edit_repository")


@dataclass
class EditRepository(Repository[Session], Generic[TEntity]):
    """Stages inserts, updates and deletes on the session and saves them.

    With ``autocommit`` (the default) ``save_changes`` commits; otherwise it
    only flushes and the surrounding transactional scope commits.
    """

    autocommit: bool = True

    def add(self, entity: TEntity) -> None:
        """Stage ``entity`` (and its cascaded graph) for insertion."""
        state = inspect(entity)
        if state.detached:
            make_transient(entity)
        if state.transient:
            self.db.add(entity)

    def modified(self, entity: TEntity, *attributes: AttributeRef) -> None:
        """Attach ``entity`` and mark only the given attributes as changed."""
        state = self._attach(entity)
        for attribute in attributes:
            key = attribute if isinstance(attribute, str) else attribute.key
            if key not in state.mapper.attrs:
                raise ValidationError(f"{state.class_.__name__} has no attribute {key!r}")
            if key not in state.dict:
                raise ValidationError(f"{state.class_.__name__}.{key} is not loaded and cannot be marked modified")
            flag_modified(entity, key)

    def update(self, entity: TEntity) -> None:
        """Attach ``entity`` and mark every loaded non-key column as changed."""
        state = self._attach(entity)
        primary_keys = set(state.mapper.primary_key)
        for attribute in state.mapper.column_attrs:
            if any(column in primary_keys for column in attribute.columns):
                continue
            if attribute.key in state.dict:
                flag_modified(entity, attribute.key)

    def remove(self, entity: TEntity) -> None:
        """Delete the row identified by ``entity``'s key.

        Only the key is used: an entity that the session does not track is
        replaced by a key-only stub, so the passed graph is neither loaded
        nor attached.
        """
        state = inspect(entity)
        if state.pending:
            self.db.expunge(entity)
            return
        if state.persistent and state.session_id == self.db.hash_key:
            self.db.delete(entity)
            return

        key = self._require_key(state, entity)
        tracked = self.db.identity_map.get(identity_key(state.class_, key))
        if tracked is not None:
            self.db.delete(tracked)
            return

        mapper = state.mapper
        stub = mapper.class_manager.new_instance()
        for column, value in zip(mapper.primary_key, key):
            setattr(stub, mapper.get_property_by_column(column).key, value)
        make_transient_to_detached(stub)
        self.db.add(stub)
        self.db.delete(stub)

    def save_changes(self) -> int:
        """Flush staged changes and return how many entities were written."""
        changed = (
            len(self.db.new)
            + len(self.db.deleted)
            + sum(1 for instance in self.db.dirty if self.db.is_modified(instance))
        )
        try:
            with timer("repository.save_changes"):
                self.db.flush()
                if self.autocommit:
                    self.db.commit()
        except SQLAlchemyError as exc:
            if self.autocommit:
                self.db.rollback()
            inc_counter("repository.save.failures")
            logger.error(
                "repository_save_changes_failed",
                extra={"structured_data": {"error": str(exc), "pending": changed}},
            )
            raise
        inc_counter("repository.save.entities", changed)
        logger.debug(
            "repository_save_changes",
            extra={"structured_data": {"entities": changed, "committed": self.autocommit}},
        )
        return changed

    async def save_changes_async(self) -> int:
        return self.save_changes()

    def _attach(self, entity: TEntity) -> InstanceState[Any]:
        state = inspect(entity)
        if state.transient:
            self._require_key(state, entity)
            make_transient_to_detached(entity)
        if state.detached:
            for key in list(state.committed_state):
                set_committed_value(entity, key, state.dict.get(key))
            self.db.add(entity)
        return state

    @staticmethod
    def _require_key(state: InstanceState[Any], entity: Any) -> tuple[Any, ...]:
        key = primary_key_of(entity)
        if any(value is None for value in key):
            raise InvalidKeyError(
                f"{state.class_.__name__} has an incomplete primary key",
                detail={"key": list(key)},
            )
        return key


__all__ = ["EditRepository", "AttributeRef"]
