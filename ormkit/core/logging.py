"""JSON log records with a per-transaction unit-of-work id."""

from __future__ import annotations

import json
import logging
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, Mapping, MutableMapping
from uuid import uuid4


_UNIT_OF_WORK_ID: ContextVar[str | None] = ContextVar("unit_of_work_id", default=None)


class JsonFormatter(logging.Formatter):
    """One JSON object per line; ``structured_data`` fields sit at the top level."""

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        unit_of_work_id = _UNIT_OF_WORK_ID.get()
        if unit_of_work_id is not None:
            payload["unit_of_work_id"] = unit_of_work_id
        structured = getattr(record, "structured_data", None)
        if isinstance(structured, Mapping):
            payload.update(structured)
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        # Entity keys and enum values are not always JSON types
        return json.dumps(payload, ensure_ascii=True, default=str)


class StructuredAdapter(logging.LoggerAdapter):
    """Adds the adapter's default fields to each call's ``structured_data``."""

    def process(self, msg: str, kwargs: MutableMapping[str, Any]) -> tuple[str, MutableMapping[str, Any]]:
        extra = kwargs.get("extra")
        extra = dict(extra) if isinstance(extra, Mapping) else {}
        per_call = extra.get("structured_data")
        extra["structured_data"] = {**(self.extra or {}), **(per_call if isinstance(per_call, Mapping) else {})}
        kwargs["extra"] = extra
        return msg, kwargs


_STRUCTURED_ATTR = "_ormkit_structured_configured"


def configure_logging(*, level: int | str | None = None, environment: str | None = None) -> None:
    """Install the JSON handler on the root logger once.

    ``level`` and ``environment`` default to the values from settings. The
    ``dev`` and ``test`` environments drop to DEBUG when ``settings.debug`` is
    set and no explicit level was passed.
    """
    root = logging.getLogger()
    if bool(getattr(root, _STRUCTURED_ATTR, False)):
        return

    from ormkit.core.config import settings

    env = environment or settings.environment
    resolved = level if level is not None else settings.log_level
    if isinstance(resolved, str):
        resolved = logging.getLevelName(resolved.upper())
    effective_level = int(resolved)
    if env in ("dev", "test") and level is None and settings.debug:
        effective_level = logging.DEBUG
    elif env == "prod":
        effective_level = max(effective_level, logging.INFO)

    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter())
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(effective_level)
    setattr(root, _STRUCTURED_ATTR, True)


def get_logger(name: str, **defaults: Any) -> StructuredAdapter:
    """Return a structured logger adapter injecting default structured fields."""

    logger = logging.getLogger(name)
    return StructuredAdapter(logger, defaults)


def get_unit_of_work_id() -> str | None:
    """Return the id of the transactional scope currently executing, if any."""

    return _UNIT_OF_WORK_ID.get()


@contextmanager
def unit_of_work_context(unit_of_work_id: str | None = None) -> Iterator[str]:
    """Bind a unit-of-work id for log records emitted inside the block."""

    uid = unit_of_work_id or uuid4().hex
    token = _UNIT_OF_WORK_ID.set(uid)
    try:
        yield uid
    finally:
        _UNIT_OF_WORK_ID.reset(token)


__all__ = [
    "JsonFormatter",
    "StructuredAdapter",
    "configure_logging",
    "get_logger",
    "get_unit_of_work_id",
    "unit_of_work_context",
]
