from __future__ import annotations

import json
from typing import Any, Callable

from sqlalchemy import Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.types import TypeDecorator


class JSONList(TypeDecorator):
    """
    JSON array column: JSONB on PostgreSQL, serialized TEXT elsewhere.

    Reads never return None; a NULL or unparseable cell comes back as an empty list
    so callers can iterate keyword/control lists without guarding.
    """

    impl = Text
    cache_ok = True

    def __init__(self, item_cast: Callable[[Any], Any] = str, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.item_cast = item_cast

    def load_dialect_impl(self, dialect):  # type: ignore[override]
        if dialect.name == "postgresql":
            return dialect.type_descriptor(JSONB())
        return dialect.type_descriptor(Text())

    def _clean(self, value: Any) -> list[Any]:
        if value is None:
            return []
        if isinstance(value, (list, tuple, set)):
            return [self.item_cast(x) for x in value if x is not None]
        return [self.item_cast(value)]

    def process_bind_param(self, value: Any, dialect):  # type: ignore[override]
        rows = self._clean(value)
        if dialect.name == "postgresql":
            return rows
        return json.dumps(rows, ensure_ascii=False)

    def process_result_value(self, value: Any, dialect):  # type: ignore[override]
        if value is None:
            return []
        if isinstance(value, list):
            return value
        try:
            data = json.loads(value)
        except (TypeError, ValueError):
            return []
        return data if isinstance(data, list) else []
