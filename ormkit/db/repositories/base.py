from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Generic, TypeVar

from sqlalchemy import inspect
from sqlalchemy.orm import Mapper, Session


TSession = TypeVar("TSession", bound=Session)


@dataclass
class Repository(Generic[TSession]):
    """Lightweight base repository exposing a SQLAlchemy session."""

    db: TSession

    @property
    def session(self) -> TSession:
        """Expose the underlying SQLAlchemy session for advanced use cases."""
        return self.db


def mapper_for(model: type[Any]) -> Mapper[Any]:
    return inspect(model)


def primary_key_of(entity: Any) -> tuple[Any, ...]:
    """Primary key values of ``entity``, taken from its identity when it has one."""
    state = inspect(entity)
    if state.identity is not None:
        return tuple(state.identity)
    return tuple(state.mapper.primary_key_from_instance(entity))
