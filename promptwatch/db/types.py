"""Column types shared by the models."""

from typing import Any

from pydantic import TypeAdapter
from sqlalchemy import JSON
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.types import TypeDecorator


class Document(TypeDecorator):
    """JSON column validated against a pydantic type on write and on read.

    Uses JSONB on PostgreSQL and plain JSON elsewhere (SQLite in tests).
    Values are stored in their camelCase wire form, so the API can return
    them unchanged.

        sources: Mapped[list[SourceRecord] | None] = mapped_column(Document(list[SourceRecord]))
    """

    impl = JSON(none_as_null=True)
    cache_ok = True

    def __init__(self, document_type: Any, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.document_type = document_type
        self._adapter = TypeAdapter(document_type)

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(JSONB(none_as_null=True))
        return dialect.type_descriptor(JSON(none_as_null=True))

    def process_bind_param(self, value, dialect):  # type: ignore[override]
        if value is None:
            return None
        validated = self._adapter.validate_python(value)
        return self._adapter.dump_python(validated, mode="json", by_alias=True)

    def process_result_value(self, value, dialect):  # type: ignore[override]
        if value is None:
            return None
        return self._adapter.validate_python(value)

    @property
    def python_type(self):
        return self.document_type

    def __repr__(self) -> str:
        return f"Document({self.document_type!r})"
